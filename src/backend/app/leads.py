import csv
import io
import re
import time
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from . import models as dbm
from .errors import NotFound
from .events import emit_event

logger = logging.getLogger(__name__)

DISPOSITIONS = ("new", "contacted", "qualified", "callback", "nurture", "sold", "not_interested")

# CSV header aliases -> Lead attribute
HEADER_ALIASES: Dict[str, str] = {
    "first_name": "first_name", "first name": "first_name", "firstname": "first_name", "first": "first_name",
    "last_name": "last_name", "last name": "last_name", "lastname": "last_name", "last": "last_name",
    "name": "full_name", "full name": "full_name", "full_name": "full_name",
    "phone": "phone", "phone number": "phone", "phone_number": "phone", "mobile": "phone", "cell": "phone",
    "email": "email", "email address": "email", "e-mail": "email",
    "state": "state", "st": "state",
    "zip": "zip_code", "zip code": "zip_code", "zip_code": "zip_code", "zipcode": "zip_code", "postal code": "zip_code",
    "tags": "tags", "tag": "tags",
    "notes": "notes", "note": "notes",
    "source": "source",
}

LEAD_FIELDS = ("first_name", "last_name", "phone", "email", "state", "zip_code", "notes", "source")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$")


def normalize_phone(raw: Optional[str], default_country: str = "1") -> Optional[str]:
    """E.164 with a US default; None when the input can not be a phone number."""
    if not raw:
        return None
    s = str(raw).strip()
    digits = re.sub(r"\D", "", s)
    if s.startswith("+"):
        return f"+{digits}" if 8 <= len(digits) <= 15 else None
    if len(digits) == 10:
        return f"+{default_country}{digits}"
    if len(digits) == 11 and digits.startswith(default_country):
        return f"+{digits}"
    return None


def normalize_email(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    e = str(raw).strip().lower()
    return e if _EMAIL_RE.match(e) else None


def merge_tags(existing: Iterable[str], extra: Iterable[str]) -> List[str]:
    """Set union that keeps first-seen order."""
    out: List[str] = []
    for t in list(existing or []) + list(extra or []):
        t = str(t).strip()
        if t and t not in out:
            out.append(t)
    return out


def split_tags(raw: Any) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return [str(t).strip() for t in raw if str(t).strip()]
    return [t.strip() for t in re.split(r"[;,|]", str(raw)) if t.strip()]


def lead_to_dict(lead: dbm.Lead) -> Dict[str, Any]:
    return {
        "id": lead.id,
        "first_name": lead.first_name,
        "last_name": lead.last_name,
        "phone": lead.phone,
        "email": lead.email,
        "state": lead.state,
        "zip_code": lead.zip_code,
        "tags": list(lead.tags or []),
        "status": lead.status,
        "disposition": lead.disposition,
        "is_client": bool(lead.is_client),
        "campaign_id": lead.campaign_id,
        "source": lead.source,
        "notes": lead.notes,
        "opted_out": bool(lead.opted_out),
        "ai_enabled": bool(lead.ai_enabled),
        "score": lead.score,
        "temperature": lead.temperature,
        "last_engaged_at": lead.last_engaged_at,
        "created_at": lead.created_at,
    }


def get_lead(db: Session, tenant_id: str, lead_id: int) -> dbm.Lead:
    lead = db.query(dbm.Lead).filter(dbm.Lead.tenant_id == tenant_id, dbm.Lead.id == lead_id).first()
    if lead is None:
        raise NotFound("lead_not_found")
    return lead


def find_by_phone(db: Session, tenant_id: str, phone: Optional[str]) -> Optional[dbm.Lead]:
    if not phone:
        return None
    return db.query(dbm.Lead).filter(dbm.Lead.tenant_id == tenant_id, dbm.Lead.phone == phone).first()


def find_existing(db: Session, tenant_id: str, phone: Optional[str], email: Optional[str]) -> Optional[dbm.Lead]:
    lead = find_by_phone(db, tenant_id, phone)
    if lead is None and email:
        lead = db.query(dbm.Lead).filter(dbm.Lead.tenant_id == tenant_id, dbm.Lead.email == email).first()
    return lead


def list_leads(
    db: Session,
    tenant_id: str,
    tag: Optional[str] = None,
    status: Optional[str] = None,
    campaign_id: Optional[int] = None,
    search: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Dict[str, Any]:
    q = db.query(dbm.Lead).filter(dbm.Lead.tenant_id == tenant_id)
    if status:
        q = q.filter(dbm.Lead.status == status)
    if campaign_id is not None:
        q = q.filter(dbm.Lead.campaign_id == campaign_id)
    if search:
        like = f"%{search.strip()}%"
        q = q.filter(
            or_(
                dbm.Lead.first_name.ilike(like),
                dbm.Lead.last_name.ilike(like),
                dbm.Lead.phone.ilike(like),
                dbm.Lead.email.ilike(like),
            )
        )
    rows = q.order_by(dbm.Lead.id.desc()).all()
    if tag:
        # JSON containment differs between SQLite and Postgres; filter in Python
        rows = [r for r in rows if tag in (r.tags or [])]
    total = len(rows)
    limit = max(1, min(int(limit), 500))
    page = rows[int(offset): int(offset) + limit]
    return {"items": [lead_to_dict(r) for r in page], "total": total, "limit": limit, "offset": int(offset)}


def _apply_fields(lead: dbm.Lead, data: Dict[str, Any]) -> None:
    for field in LEAD_FIELDS:
        if field in data and data[field] not in (None, ""):
            setattr(lead, field, data[field])


def create_lead(db: Session, tenant_id: str, data: Dict[str, Any]) -> dbm.Lead:
    phone = normalize_phone(data.get("phone"))
    email = normalize_email(data.get("email"))
    if not phone and not email:
        raise ValueError("phone_or_email_required")
    lead = dbm.Lead(tenant_id=tenant_id, tags=[], status="new")
    _apply_fields(lead, {**data, "phone": phone, "email": email})
    lead.tags = merge_tags([], split_tags(data.get("tags")))
    if data.get("campaign_id") is not None:
        lead.campaign_id = int(data["campaign_id"])
    db.add(lead)
    db.commit()
    db.refresh(lead)
    emit_event("LeadCreated", {"tenant_id": tenant_id, "lead_id": lead.id})
    return lead


def update_lead(db: Session, tenant_id: str, lead_id: int, data: Dict[str, Any]) -> dbm.Lead:
    lead = get_lead(db, tenant_id, lead_id)
    if "phone" in data and data["phone"]:
        phone = normalize_phone(data["phone"])
        if not phone:
            raise ValueError("invalid_phone")
        data = {**data, "phone": phone}
    if "email" in data and data["email"]:
        data = {**data, "email": normalize_email(data["email"])}
    _apply_fields(lead, data)
    if "tags" in data and data["tags"] is not None:
        lead.tags = merge_tags([], split_tags(data["tags"]))
    for flag in ("ai_enabled", "opted_out"):
        if data.get(flag) is not None:
            setattr(lead, flag, bool(data[flag]))
    if "campaign_id" in data:
        lead.campaign_id = data["campaign_id"]
    if data.get("status"):
        lead.status = str(data["status"])
    if data.get("disposition"):
        set_disposition(db, tenant_id, lead.id, str(data["disposition"]), commit=False)
    lead.updated_at = int(time.time())
    db.commit()
    db.refresh(lead)
    return lead


def delete_leads(db: Session, tenant_id: str, lead_ids: List[int]) -> int:
    if not lead_ids:
        return 0
    n = (
        db.query(dbm.Lead)
        .filter(dbm.Lead.tenant_id == tenant_id, dbm.Lead.id.in_(lead_ids))
        .delete(synchronize_session=False)
    )
    db.commit()
    if n:
        emit_event("LeadsDeleted", {"tenant_id": tenant_id, "count": int(n)})
    return int(n)


def bulk_update(db: Session, tenant_id: str, lead_ids: List[int], changes: Dict[str, Any]) -> int:
    rows = db.query(dbm.Lead).filter(dbm.Lead.tenant_id == tenant_id, dbm.Lead.id.in_(lead_ids or [])).all()
    now = int(time.time())
    for lead in rows:
        if changes.get("status"):
            lead.status = str(changes["status"])
        if changes.get("disposition"):
            set_disposition(db, tenant_id, lead.id, str(changes["disposition"]), commit=False)
        if changes.get("tags") is not None:
            lead.tags = merge_tags(lead.tags or [], split_tags(changes["tags"]))
        if "campaign_id" in changes:
            lead.campaign_id = changes["campaign_id"]
        lead.updated_at = now
    db.commit()
    return len(rows)


def set_disposition(db: Session, tenant_id: str, lead_id: int, disposition: str, commit: bool = True) -> dbm.Lead:
    disposition = disposition.strip().lower()
    if disposition not in DISPOSITIONS:
        raise ValueError("invalid_disposition")
    lead = get_lead(db, tenant_id, lead_id)
    lead.disposition = disposition
    lead.status = disposition
    if disposition == "sold":
        lead.is_client = True
    score = calculate_lead_score(
        disposition=disposition,
        last_engaged_at=lead.last_engaged_at,
        **_message_stats(db, tenant_id, lead),
    )
    lead.score, lead.temperature = score["score"], score["temperature"]
    lead.updated_at = int(time.time())
    if commit:
        db.commit()
        db.refresh(lead)
    emit_event("LeadDispositionChanged", {"tenant_id": tenant_id, "lead_id": lead.id, "disposition": disposition})
    return lead


# --- import / export -------------------------------------------------------

def _canonical_row(raw: Dict[str, Any]) -> Dict[str, Any]:
    row: Dict[str, Any] = {}
    for key, value in raw.items():
        if key is None:
            continue
        attr = HEADER_ALIASES.get(str(key).strip().lower().replace("-", " ").replace("  ", " "))
        if attr is None:
            attr = HEADER_ALIASES.get(str(key).strip().lower())
        if attr and value not in (None, ""):
            row[attr] = value.strip() if isinstance(value, str) else value
    if row.get("full_name") and not row.get("first_name"):
        parts = str(row.pop("full_name")).split(None, 1)
        row["first_name"] = parts[0]
        if len(parts) > 1:
            row.setdefault("last_name", parts[1])
    row.pop("full_name", None)
    return row


def upsert_leads(
    db: Session,
    tenant_id: str,
    rows: Iterable[Dict[str, Any]],
    tags: Optional[List[str]] = None,
    campaign_id: Optional[int] = None,
    source: str = "import",
) -> Dict[str, Any]:
    """Shared import path for CSV and JSON payloads. Dedupes by phone, then email."""
    imported = updated = skipped = 0
    errors: List[Dict[str, Any]] = []
    extra_tags = split_tags(tags)
    seen: Dict[str, dbm.Lead] = {}
    now = int(time.time())
    for i, raw in enumerate(rows, start=1):
        row = _canonical_row(raw)
        phone = normalize_phone(row.get("phone"))
        email = normalize_email(row.get("email"))
        if not phone and not email:
            skipped += 1
            errors.append({"row": i, "error": "missing_phone_or_email"})
            continue
        key = phone or email or ""
        lead = seen.get(key) or find_existing(db, tenant_id, phone, email)
        row_tags = merge_tags(split_tags(row.get("tags")), extra_tags)
        fields = {**row, "phone": phone, "email": email, "source": row.get("source") or source}
        if lead is None:
            lead = dbm.Lead(tenant_id=tenant_id, status="new", tags=row_tags, created_at=now)
            _apply_fields(lead, fields)
            db.add(lead)
            imported += 1
        else:
            _apply_fields(lead, {k: v for k, v in fields.items() if k != "source"})
            lead.tags = merge_tags(lead.tags or [], row_tags)
            lead.updated_at = now
            if key not in seen:
                updated += 1
        if campaign_id is not None:
            lead.campaign_id = campaign_id
        seen[key] = lead
    db.commit()
    if extra_tags:
        from .tags import ensure_tags

        ensure_tags(db, tenant_id, extra_tags)
    emit_event(
        "LeadImported",
        {"tenant_id": tenant_id, "imported": imported, "updated": updated, "skipped": skipped},
    )
    return {"imported": imported, "updated": updated, "skipped": skipped, "errors": errors}


def import_csv(
    db: Session,
    tenant_id: str,
    content: str,
    tags: Optional[List[str]] = None,
    campaign_id: Optional[int] = None,
) -> Dict[str, Any]:
    reader = csv.DictReader(io.StringIO(content.lstrip("﻿")))
    return upsert_leads(db, tenant_id, reader, tags=tags, campaign_id=campaign_id, source="csv")


EXPORT_COLUMNS = ["id", "first_name", "last_name", "phone", "email", "state", "zip_code", "tags", "status", "disposition", "score", "temperature"]


def export_csv(db: Session, tenant_id: str) -> Tuple[str, int]:
    rows = db.query(dbm.Lead).filter(dbm.Lead.tenant_id == tenant_id).order_by(dbm.Lead.id.asc()).all()
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(EXPORT_COLUMNS)
    for r in rows:
        d = lead_to_dict(r)
        d["tags"] = ";".join(d["tags"])
        writer.writerow(["" if d[c] is None else d[c] for c in EXPORT_COLUMNS])
    emit_event("EntityExported", {"tenant_id": tenant_id, "count": len(rows), "entity": "leads"})
    return buf.getvalue(), len(rows)


# --- scoring ---------------------------------------------------------------

DISPOSITION_POINTS = {"qualified": 20, "callback": 15, "nurture": 10, "sold": 0, "not_interested": -50}


def calculate_lead_score(
    disposition: Optional[str] = None,
    last_engaged_at: Optional[int] = None,
    total_sent: int = 0,
    total_received: int = 0,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    now = int(now or time.time())
    engagement = 0
    if last_engaged_at:
        hours = (now - int(last_engaged_at)) / 3600.0
        if hours < 24:
            engagement = 30
        elif hours < 168:
            engagement = 20
        elif hours < 720:
            engagement = 10
    response_rate = (total_received / total_sent) if total_sent else 0.0
    response_score = min(30.0, response_rate * 30)
    if total_received > 5:
        frequency = 20
    elif total_received > 2:
        frequency = 10
    elif total_received > 0:
        frequency = 5
    else:
        frequency = 0
    disposition_score = DISPOSITION_POINTS.get((disposition or "").lower(), 5)
    total = max(0.0, min(100.0, engagement + response_score + frequency + disposition_score))
    score = int(round(total))
    if score >= 70:
        temperature = "hot"
    elif score >= 40:
        temperature = "warm"
    else:
        temperature = "cold"
    return {
        "score": score,
        "temperature": temperature,
        "breakdown": {
            "engagement": engagement,
            "response_rate": response_score,
            "frequency": frequency,
            "disposition": disposition_score,
        },
    }


def _message_stats(db: Session, tenant_id: str, lead: dbm.Lead) -> Dict[str, int]:
    q = db.query(dbm.Message).filter(dbm.Message.tenant_id == tenant_id)
    if lead.phone:
        q = q.filter(or_(dbm.Message.lead_id == lead.id, dbm.Message.phone == lead.phone))
    else:
        q = q.filter(dbm.Message.lead_id == lead.id)
    sent = received = 0
    for m in q.all():
        if m.direction == "inbound":
            received += 1
        else:
            sent += 1
    return {"total_sent": sent, "total_received": received}


def recalculate_scores(db: Session, tenant_id: str, lead_ids: Optional[List[int]] = None) -> int:
    q = db.query(dbm.Lead).filter(dbm.Lead.tenant_id == tenant_id)
    if lead_ids:
        q = q.filter(dbm.Lead.id.in_(lead_ids))
    n = 0
    for lead in q.all():
        res = calculate_lead_score(
            disposition=lead.disposition,
            last_engaged_at=lead.last_engaged_at,
            **_message_stats(db, tenant_id, lead),
        )
        lead.score, lead.temperature = res["score"], res["temperature"]
        n += 1
    db.commit()
    return n
