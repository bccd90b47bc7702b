import time
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from . import models as dbm
from .errors import NotFound
from .events import emit_event


def _clean(name: str) -> str:
    return " ".join(str(name or "").split())


def tag_to_dict(tag: dbm.Tag, usage: int = 0) -> Dict[str, Any]:
    return {"id": tag.id, "name": tag.name, "color": tag.color, "usage_count": usage, "created_at": tag.created_at}


def list_tags(db: Session, tenant_id: str) -> List[Dict[str, Any]]:
    tags = db.query(dbm.Tag).filter(dbm.Tag.tenant_id == tenant_id).order_by(dbm.Tag.name.asc()).all()
    counts: Dict[str, int] = {}
    for (lead_tags,) in db.query(dbm.Lead.tags).filter(dbm.Lead.tenant_id == tenant_id).all():
        for t in lead_tags or []:
            counts[t] = counts.get(t, 0) + 1
    return [tag_to_dict(t, counts.get(t.name, 0)) for t in tags]


def create_tag(db: Session, tenant_id: str, name: str, color: Optional[str] = None) -> dbm.Tag:
    name = _clean(name)
    if not name:
        raise ValueError("tag_name_required")
    existing = db.query(dbm.Tag).filter(dbm.Tag.tenant_id == tenant_id, dbm.Tag.name == name).first()
    if existing is not None:
        if color and existing.color != color:
            existing.color = color
            db.commit()
        return existing
    tag = dbm.Tag(tenant_id=tenant_id, name=name, color=color)
    db.add(tag)
    db.commit()
    db.refresh(tag)
    return tag


def ensure_tags(db: Session, tenant_id: str, names: Iterable[str]) -> None:
    have = {n for (n,) in db.query(dbm.Tag.name).filter(dbm.Tag.tenant_id == tenant_id).all()}
    added = False
    for n in names:
        n = _clean(n)
        if n and n not in have:
            db.add(dbm.Tag(tenant_id=tenant_id, name=n))
            have.add(n)
            added = True
    if added:
        db.commit()


def delete_tag(db: Session, tenant_id: str, tag_id: int) -> int:
    """Delete the tag and strip it from every lead that carries it. Returns leads touched."""
    tag = db.query(dbm.Tag).filter(dbm.Tag.tenant_id == tenant_id, dbm.Tag.id == tag_id).first()
    if tag is None:
        raise NotFound("tag_not_found")
    touched = 0
    now = int(time.time())
    for lead in db.query(dbm.Lead).filter(dbm.Lead.tenant_id == tenant_id).all():
        if tag.name in (lead.tags or []):
            lead.tags = [t for t in lead.tags if t != tag.name]
            lead.updated_at = now
            touched += 1
    db.delete(tag)
    db.commit()
    emit_event("TagDeleted", {"tenant_id": tenant_id, "tag": tag.name, "leads": touched})
    return touched


def _leads(db: Session, tenant_id: str, lead_ids: List[int]) -> List[dbm.Lead]:
    if not lead_ids:
        return []
    return db.query(dbm.Lead).filter(dbm.Lead.tenant_id == tenant_id, dbm.Lead.id.in_(lead_ids)).all()


def apply_tags(db: Session, tenant_id: str, lead_ids: List[int], names: List[str]) -> int:
    names = [n for n in (_clean(x) for x in names) if n]
    if not names:
        return 0
    ensure_tags(db, tenant_id, names)
    now = int(time.time())
    changed = 0
    for lead in _leads(db, tenant_id, lead_ids):
        current = list(lead.tags or [])
        merged = current + [n for n in names if n not in current]
        if merged != current:
            # reassign so the JSON column is flagged dirty
            lead.tags = merged
            lead.updated_at = now
            changed += 1
    db.commit()
    emit_event("TagsApplied", {"tenant_id": tenant_id, "tags": names, "leads": changed})
    return changed


def remove_tags(db: Session, tenant_id: str, lead_ids: List[int], names: List[str]) -> int:
    drop = {_clean(n) for n in names}
    now = int(time.time())
    changed = 0
    for lead in _leads(db, tenant_id, lead_ids):
        current = list(lead.tags or [])
        kept = [t for t in current if t not in drop]
        if kept != current:
            lead.tags = kept
            lead.updated_at = now
            changed += 1
    db.commit()
    return changed
