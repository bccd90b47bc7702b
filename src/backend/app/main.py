from __future__ import annotations

from fastapi import FastAPI, Depends, Response, Request, HTTPException, Query, UploadFile, File, Form
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import PlainTextResponse, RedirectResponse, JSONResponse
from pydantic import BaseModel, Field
from typing import List, Dict, Optional, Any
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging
import os
import time as _time

import httpx
import sentry_sdk
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from sqlalchemy import text as _sql_text
from sqlalchemy.orm import Session

from . import models as dbm
from . import prompts
from .ai import AIClient
from .analytics import ph_capture
from .auth import get_user_context, require_cron_secret, UserContext
from .billing import construct_event, create_checkout, handle_event
from .calendar_slots import TenantCalendar, format_slot, offer_text, SLOT_MINUTES, NO_AVAILABILITY_TEXT
from .crypto import sign_state, verify_state
from .db import get_db, CURRENT_TENANT_ID
from .errors import DomainError
from .events import emit_event
from .flow_engine import FlowEngine, simple_flow_response
from .inbound import handle_inbound
from .metrics_counters import WEBHOOK_EVENTS
from .points import (
    POINT_COSTS,
    charge_action,
    estimate_campaign_cost,
    get_balance,
    get_or_create_user,
    list_packs,
    recent_transactions,
    spend_points,
)
from .quiet_hours import for_tenant
from .rate_limit import check_and_increment, get_bucket_status
from .scheduler import run_tick
from .spam import apply_guardrails, check_spam_risk
from .integrations import calendar_google as cal_google
from .integrations.sms_telnyx import parse_inbound, telnyx_verify_signature
from .integrations.sms_twilio import twilio_verify_signature
from . import campaigns as campaigns_svc
from . import conversations as conv_svc
from . import drips as drips_svc
from . import followups as followups_svc
from . import leads as leads_svc
from . import messaging as msg_svc
from . import tags as tags_svc


app = FastAPI(title="HyveWyre Backend", version="0.3.0")

tags_metadata = [
    {"name": "Health", "description": "Health checks and metrics."},
    {"name": "Leads", "description": "Leads, import/export, dispositions and scoring."},
    {"name": "Tags", "description": "Lead tags."},
    {"name": "Campaigns", "description": "Bulk SMS campaigns."},
    {"name": "Messaging", "description": "SMS sending, numbers, DNC and provider webhooks."},
    {"name": "Points", "description": "Points balance, packs and Stripe billing."},
    {"name": "AI", "description": "Spam checks, smart replies, follow-ups and sentiment."},
    {"name": "Calendar", "description": "Google Calendar OAuth, availability and booking."},
    {"name": "Flows", "description": "Conversational flows and sessions."},
    {"name": "FollowUps", "description": "Follow-ups and AI drips."},
    {"name": "Settings", "description": "Tenant settings."},
    {"name": "Cron", "description": "Scheduler entry points."},
]
app.openapi_tags = tags_metadata  # type: ignore[attr-defined]

logger = logging.getLogger(__name__)

cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=1000)

# error capture is on only when SENTRY_DSN is set
_sentry_dsn = os.getenv("SENTRY_DSN", "").strip()
if _sentry_dsn:
    sentry_sdk.init(
        dsn=_sentry_dsn,
        traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.05")),
        release=os.getenv("SENTRY_RELEASE") or None,
        environment=os.getenv("SENTRY_ENVIRONMENT", os.getenv("ENVIRONMENT")) or None,
    )


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    body: Dict[str, Any] = {"detail": exc.detail}
    if exc.info:
        body["info"] = {k: v for k, v in exc.info.items() if isinstance(v, (str, int, float, bool, dict, list))}
    return JSONResponse(body, status_code=exc.status_code)


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    # service functions raise ValueError("snake_case_reason") for caller mistakes
    return JSONResponse({"detail": str(exc)[:200] or "bad_request"}, status_code=400)


def _vendor_error(e: Exception) -> HTTPException:
    """RuntimeError('<provider> not configured') -> 500; HTTP failures -> 502."""
    if isinstance(e, RuntimeError) and str(e).endswith("not configured"):
        return HTTPException(status_code=500, detail=str(e).replace(" ", "_"))
    logger.warning("vendor_call_failed", extra={"error": str(e)[:200]})
    sentry_sdk.add_breadcrumb(category="vendor", message=str(e)[:200], level="warning")
    return HTTPException(status_code=502, detail="provider_error")


def get_ai() -> AIClient:
    return AIClient()


def _tenant(ctx: UserContext) -> str:
    CURRENT_TENANT_ID.set(ctx.tenant_id)
    return ctx.tenant_id


# per-minute ceilings before tier multipliers
RATE_LIMITS = {"sms_send": 60, "campaign_run": 5, "ai": 30}


def _tier(db: Session, tenant_id: str) -> str:
    user = db.query(dbm.User).filter(dbm.User.tenant_id == tenant_id).first()
    return (user.subscription_tier if user else None) or "unpaid"


def _rate_limit(db: Session, tenant_id: str, key: str) -> None:
    limit = RATE_LIMITS[key]
    ok, _ = check_and_increment(tenant_id, key, max_per_minute=limit, burst=limit // 2, tier=_tier(db, tenant_id))
    if not ok:
        raise HTTPException(status_code=429, detail="rate_limited")


def _require_writer(ctx: UserContext) -> None:
    if ctx.role == "viewer":
        raise HTTPException(status_code=403, detail="forbidden")


# --------------------------- Health ---------------------------
@app.get("/health", tags=["Health"])
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/ready", tags=["Health"])
def ready(db: Session = Depends(get_db)) -> Dict[str, str]:
    # minimal DB check
    try:
        db.execute(_sql_text("SELECT 1"))
        return {"status": "ready"}
    except Exception:
        raise HTTPException(status_code=503, detail="not_ready")


@app.get("/metrics", tags=["Health"])
def prometheus_metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/limits/status", tags=["Health"])
def limits_status(db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    tenant_id = _tenant(ctx)
    tier = _tier(db, tenant_id)
    return {
        "tier": tier,
        "items": {
            k: get_bucket_status(tenant_id, k, max_per_minute=v, burst=v // 2, tier=tier) for k, v in RATE_LIMITS.items()
        },
    }


# --------------------------- Leads ---------------------------
class LeadIn(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    tags: Optional[List[str]] = None
    notes: Optional[str] = None
    source: Optional[str] = None
    campaign_id: Optional[int] = None


class LeadPatch(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    tags: Optional[List[str]] = None
    notes: Optional[str] = None
    status: Optional[str] = None
    disposition: Optional[str] = None
    ai_enabled: Optional[bool] = None
    opted_out: Optional[bool] = None
    campaign_id: Optional[int] = None


class LeadImportRequest(BaseModel):
    leads: List[Dict[str, Any]]
    tags: Optional[List[str]] = None
    campaign_id: Optional[int] = None


class BulkUpdateRequest(BaseModel):
    lead_ids: List[int] = Field(..., min_length=1)
    status: Optional[str] = None
    disposition: Optional[str] = None
    tags: Optional[List[str]] = None
    campaign_id: Optional[int] = None


class LeadIdsRequest(BaseModel):
    lead_ids: List[int] = Field(default_factory=list)


class DispositionRequest(BaseModel):
    disposition: str


@app.get("/leads", tags=["Leads"])
def list_leads(
    tag: Optional[str] = None,
    status: Optional[str] = None,
    campaign_id: Optional[int] = None,
    search: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    ctx: UserContext = Depends(get_user_context),
):
    return leads_svc.list_leads(db, _tenant(ctx), tag=tag, status=status, campaign_id=campaign_id, search=search, limit=limit, offset=offset)


@app.post("/leads", tags=["Leads"])
def create_lead(req: LeadIn, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    lead = leads_svc.create_lead(db, _tenant(ctx), req.model_dump(exclude_none=True))
    return leads_svc.lead_to_dict(lead)


@app.get("/leads/export", response_class=PlainTextResponse, tags=["Leads"])
def export_leads(db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    content, count = leads_svc.export_csv(db, _tenant(ctx))
    return PlainTextResponse(
        content,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="leads.csv"', "X-Row-Count": str(count)},
    )


@app.post("/leads/import", tags=["Leads"])
def import_leads(req: LeadImportRequest, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    return leads_svc.upsert_leads(db, _tenant(ctx), req.leads, tags=req.tags, campaign_id=req.campaign_id, source="import")


@app.post("/leads/import-csv", tags=["Leads"])
async def import_leads_csv(
    file: UploadFile = File(...),
    tags: Optional[str] = Form(default=None),
    campaign_id: Optional[int] = Form(default=None),
    db: Session = Depends(get_db),
    ctx: UserContext = Depends(get_user_context),
):
    _require_writer(ctx)
    raw = await file.read()
    try:
        content = raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        content = raw.decode("latin-1")
    result = leads_svc.import_csv(db, _tenant(ctx), content, tags=leads_svc.split_tags(tags), campaign_id=campaign_id)
    ph_capture("leads.imported", tenant_id=ctx.tenant_id, properties={"imported": result["imported"], "source": "csv"})
    return result


@app.post("/leads/bulk-update", tags=["Leads"])
def bulk_update_leads(req: BulkUpdateRequest, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    changes = req.model_dump(exclude_none=True, exclude={"lead_ids"})
    return {"updated": leads_svc.bulk_update(db, _tenant(ctx), req.lead_ids, changes)}


@app.post("/leads/bulk-delete", tags=["Leads"])
def bulk_delete_leads(req: LeadIdsRequest, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    return {"deleted": leads_svc.delete_leads(db, _tenant(ctx), req.lead_ids)}


@app.post("/leads/recalculate-scores", tags=["Leads"])
def recalculate_scores(req: LeadIdsRequest, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    return {"updated": leads_svc.recalculate_scores(db, _tenant(ctx), req.lead_ids or None)}


@app.get("/leads/{lead_id}", tags=["Leads"])
def get_lead(lead_id: int, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    return leads_svc.lead_to_dict(leads_svc.get_lead(db, _tenant(ctx), lead_id))


@app.patch("/leads/{lead_id}", tags=["Leads"])
def update_lead(lead_id: int, req: LeadPatch, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    lead = leads_svc.update_lead(db, _tenant(ctx), lead_id, req.model_dump(exclude_unset=True))
    return leads_svc.lead_to_dict(lead)


@app.delete("/leads/{lead_id}", tags=["Leads"])
def delete_lead(lead_id: int, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    leads_svc.get_lead(db, _tenant(ctx), lead_id)
    leads_svc.delete_leads(db, ctx.tenant_id, [lead_id])
    return {"status": "deleted"}


@app.post("/leads/{lead_id}/disposition", tags=["Leads"])
def set_disposition(lead_id: int, req: DispositionRequest, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    lead = leads_svc.set_disposition(db, _tenant(ctx), lead_id, req.disposition)
    return leads_svc.lead_to_dict(lead)


# --------------------------- Tags ---------------------------
class TagIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    color: Optional[str] = None


class TagApplyRequest(BaseModel):
    lead_ids: List[int]
    tags: List[str]


@app.get("/tags", tags=["Tags"])
def list_tags(db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    return {"items": tags_svc.list_tags(db, _tenant(ctx))}


@app.post("/tags", tags=["Tags"])
def create_tag(req: TagIn, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    return tags_svc.tag_to_dict(tags_svc.create_tag(db, _tenant(ctx), req.name, req.color))


@app.delete("/tags/{tag_id}", tags=["Tags"])
def delete_tag(tag_id: int, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    return {"status": "deleted", "leads_updated": tags_svc.delete_tag(db, _tenant(ctx), tag_id)}


@app.post("/tags/apply", tags=["Tags"])
def apply_tags(req: TagApplyRequest, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    return {"updated": tags_svc.apply_tags(db, _tenant(ctx), req.lead_ids, req.tags)}


@app.post("/tags/remove", tags=["Tags"])
def remove_tags(req: TagApplyRequest, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    return {"updated": tags_svc.remove_tags(db, _tenant(ctx), req.lead_ids, req.tags)}


# --------------------------- Campaigns ---------------------------
class CampaignIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    description: Optional[str] = None
    flow_id: Optional[int] = None
    tag_filter: Optional[List[str]] = None
    message_template: Optional[str] = None


class CampaignRunRequest(BaseModel):
    message: Optional[str] = None


class CampaignScheduleRequest(BaseModel):
    scheduled_at: int


@app.get("/campaigns", tags=["Campaigns"])
def list_campaigns(db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    return {"items": campaigns_svc.list_campaigns(db, _tenant(ctx))}


@app.post("/campaigns", tags=["Campaigns"])
def create_campaign(req: CampaignIn, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    return campaigns_svc.campaign_to_dict(campaigns_svc.create_campaign(db, _tenant(ctx), req.model_dump()))


@app.delete("/campaigns/{campaign_id}", tags=["Campaigns"])
def delete_campaign(campaign_id: int, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    campaigns_svc.delete_campaign(db, _tenant(ctx), campaign_id)
    return {"status": "deleted"}


@app.post("/campaigns/{campaign_id}/run", tags=["Campaigns"])
def run_campaign(
    campaign_id: int,
    req: Optional[CampaignRunRequest] = None,
    db: Session = Depends(get_db),
    ctx: UserContext = Depends(get_user_context),
):
    _require_writer(ctx)
    tenant_id = _tenant(ctx)
    _rate_limit(db, tenant_id, "campaign_run")
    return campaigns_svc.run_campaign(db, tenant_id, campaign_id, message=(req.message if req else None))


@app.post("/campaigns/{campaign_id}/schedule", tags=["Campaigns"])
def schedule_campaign(campaign_id: int, req: CampaignScheduleRequest, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    c = campaigns_svc.schedule_campaign(db, _tenant(ctx), campaign_id, req.scheduled_at)
    return campaigns_svc.campaign_to_dict(c)


# --------------------------- Messaging ---------------------------
class SendSmsRequest(BaseModel):
    to: str
    body: str = ""
    lead_id: Optional[int] = None
    media_urls: Optional[List[str]] = None


@app.post("/sms/send", tags=["Messaging"])
def sms_send(req: SendSmsRequest, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    tenant_id = _tenant(ctx)
    _rate_limit(db, tenant_id, "sms_send")
    return msg_svc.send_sms(db, tenant_id, req.to, req.body, lead_id=req.lead_id, media_urls=req.media_urls)


@app.get("/messages/threads", tags=["Messaging"])
def message_threads(
    phone: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
    ctx: UserContext = Depends(get_user_context),
):
    tenant_id = _tenant(ctx)
    if phone:
        return {"phone": phone, "messages": msg_svc.thread_messages(db, tenant_id, phone, limit=limit)}
    return {"items": msg_svc.list_threads(db, tenant_id, limit=limit)}


def _public_url(request: Request) -> str:
    base = os.getenv("PUBLIC_BASE_URL", "").rstrip("/")
    return f"{base}{request.url.path}" if base else str(request.url)


@app.post("/webhooks/twilio/sms", tags=["Messaging"])
async def twilio_inbound(request: Request, db: Session = Depends(get_db), ai: AIClient = Depends(get_ai)):
    form = await request.form()
    params = {k: str(v) for k, v in form.items()}
    if os.getenv("TWILIO_AUTH_TOKEN"):
        sig = request.headers.get("X-Twilio-Signature", "")
        if not twilio_verify_signature(_public_url(request), params, sig):
            WEBHOOK_EVENTS.labels(provider="twilio", status="bad_signature").inc()
            raise HTTPException(status_code=403, detail="invalid_signature")
    media = [params[f"MediaUrl{i}"] for i in range(int(params.get("NumMedia") or 0)) if params.get(f"MediaUrl{i}")]
    res = await handle_inbound(
        db, "twilio", params.get("From"), params.get("To"), params.get("Body", ""), params.get("MessageSid"), media, ai=ai
    )
    WEBHOOK_EVENTS.labels(provider="twilio", status=res.get("status", "ok")).inc()
    # the reply, if any, went out through the API; Twilio gets an empty TwiML document
    return PlainTextResponse("<Response></Response>", media_type="application/xml")


@app.post("/webhooks/twilio/status", tags=["Messaging"])
async def twilio_status(request: Request, db: Session = Depends(get_db)):
    form = await request.form()
    params = {k: str(v) for k, v in form.items()}
    if os.getenv("TWILIO_AUTH_TOKEN"):
        sig = request.headers.get("X-Twilio-Signature", "")
        if not twilio_verify_signature(_public_url(request), params, sig):
            raise HTTPException(status_code=403, detail="invalid_signature")
    updated = msg_svc.update_status(db, params.get("MessageSid"), params.get("MessageStatus"))
    WEBHOOK_EVENTS.labels(provider="twilio", status="status").inc()
    return {"updated": updated}


@app.post("/webhooks/telnyx/sms", tags=["Messaging"])
async def telnyx_inbound(request: Request, db: Session = Depends(get_db), ai: AIClient = Depends(get_ai)):
    raw = await request.body()
    if os.getenv("TELNYX_PUBLIC_KEY"):
        sig = request.headers.get("telnyx-signature-ed25519", "")
        ts = request.headers.get("telnyx-timestamp", "")
        if not telnyx_verify_signature(raw, sig, ts):
            WEBHOOK_EVENTS.labels(provider="telnyx", status="bad_signature").inc()
            raise HTTPException(status_code=403, detail="invalid_signature")
    try:
        event = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid_json")
    data = event.get("data") or {}
    typ = data.get("event_type")
    if typ in ("message.sent", "message.finalized"):
        payload = data.get("payload") or {}
        to_list = payload.get("to") or [{}]
        updated = msg_svc.update_status(db, payload.get("id"), (to_list[0] or {}).get("status"))
        WEBHOOK_EVENTS.labels(provider="telnyx", status="status").inc()
        return {"status": "ok", "updated": updated}
    msg = parse_inbound(event)
    if msg is None:
        return {"status": "ignored"}
    res = await handle_inbound(db, "telnyx", msg["from"], msg["to"], msg["body"], msg["provider_id"], msg["media"], ai=ai)
    WEBHOOK_EVENTS.labels(provider="telnyx", status=res.get("status", "ok")).inc()
    return {"status": res.get("status", "ok")}


# --------------------------- Numbers ---------------------------
class NumberRequest(BaseModel):
    phone_number: str
    provider: Optional[str] = None


@app.get("/numbers", tags=["Messaging"])
def list_numbers(db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    return {"items": msg_svc.list_numbers(db, _tenant(ctx))}


@app.get("/numbers/search", tags=["Messaging"])
def search_numbers(
    area_code: Optional[str] = Query(default=None, min_length=3, max_length=3),
    provider: Optional[str] = None,
    limit: int = Query(20, ge=1, le=50),
    ctx: UserContext = Depends(get_user_context),
):
    try:
        return {"items": msg_svc.search_numbers(area_code=area_code, provider=provider, limit=limit)}
    except (RuntimeError, httpx.HTTPError) as e:
        raise _vendor_error(e)


@app.post("/numbers/purchase", tags=["Messaging"])
def purchase_number(req: NumberRequest, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    if ctx.role != "owner":
        raise HTTPException(status_code=403, detail="forbidden")
    try:
        return msg_svc.purchase_number(db, _tenant(ctx), req.phone_number, provider=req.provider)
    except (RuntimeError, httpx.HTTPError) as e:
        raise _vendor_error(e)


@app.post("/numbers/release", tags=["Messaging"])
def release_number(req: NumberRequest, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    if ctx.role != "owner":
        raise HTTPException(status_code=403, detail="forbidden")
    try:
        return msg_svc.release_number(db, _tenant(ctx), req.phone_number)
    except (RuntimeError, httpx.HTTPError) as e:
        raise _vendor_error(e)


# --------------------------- DNC ---------------------------
class DncIn(BaseModel):
    phone: str
    reason: Optional[str] = None


class DncBulkIn(BaseModel):
    phones: List[str]
    reason: Optional[str] = None


@app.get("/dnc", tags=["Messaging"])
def list_dnc(limit: int = Query(500, ge=1, le=5000), db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    return {"items": msg_svc.list_dnc(db, _tenant(ctx), limit=limit)}


@app.post("/dnc", tags=["Messaging"])
def add_dnc(req: DncIn, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    return {"added": msg_svc.add_dnc(db, _tenant(ctx), req.phone, reason=req.reason)}


@app.post("/dnc/bulk", tags=["Messaging"])
def add_dnc_bulk(req: DncBulkIn, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    return msg_svc.bulk_add_dnc(db, _tenant(ctx), req.phones, reason=req.reason)


@app.get("/dnc/check", tags=["Messaging"])
def check_dnc(phone: str, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    e164 = leads_svc.normalize_phone(phone)
    return {"phone": e164 or phone, "dnc": msg_svc.is_dnc(db, _tenant(ctx), e164)}


@app.delete("/dnc/{phone}", tags=["Messaging"])
def remove_dnc(phone: str, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    return {"removed": msg_svc.remove_dnc(db, _tenant(ctx), phone)}


# --------------------------- Points & billing ---------------------------
class SpendRequest(BaseModel):
    amount: int = Field(..., gt=0)
    description: Optional[str] = None
    action_type: str = "spend"


class EstimateRequest(BaseModel):
    message: str
    lead_count: int = Field(1, ge=0)
    media_count: int = Field(0, ge=0)


class CheckoutRequest(BaseModel):
    pack_id: str


@app.get("/points/balance", tags=["Points"])
def points_balance(db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    tenant_id = _tenant(ctx)
    user = get_or_create_user(db, tenant_id)
    db.commit()
    return {"balance": get_balance(db, tenant_id), "tier": user.subscription_tier}


@app.get("/points/transactions", tags=["Points"])
def points_transactions(limit: int = Query(50, ge=1, le=500), db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    return {"items": recent_transactions(db, _tenant(ctx), limit=limit)}


@app.post("/points/spend", tags=["Points"])
def points_spend(req: SpendRequest, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    balance = spend_points(db, _tenant(ctx), req.amount, req.description or "", action_type=req.action_type)
    return {"balance": balance}


@app.get("/points/packs", tags=["Points"])
def points_packs(db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    user = db.query(dbm.User).filter(dbm.User.tenant_id == _tenant(ctx)).first()
    tier = (user.subscription_tier if user else None) or "unpaid"
    return {"tier": tier, "packs": list_packs(tier), "costs": POINT_COSTS}


@app.post("/points/estimate", tags=["Points"])
def points_estimate(req: EstimateRequest, ctx: UserContext = Depends(get_user_context)):
    return estimate_campaign_cost(req.message, req.lead_count, req.media_count)


@app.post("/billing/checkout", tags=["Points"])
def billing_checkout(req: CheckoutRequest, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    try:
        return create_checkout(db, _tenant(ctx), req.pack_id)
    except RuntimeError as e:
        raise _vendor_error(e)


@app.post("/billing/webhook", tags=["Points"])
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    payload = await request.body()
    sig = request.headers.get("Stripe-Signature", "")
    try:
        event = construct_event(payload, sig)
    except RuntimeError as e:
        raise _vendor_error(e)
    except Exception:
        WEBHOOK_EVENTS.labels(provider="stripe", status="bad_signature").inc()
        raise HTTPException(status_code=400, detail="invalid_signature")
    res = handle_event(db, event)
    WEBHOOK_EVENTS.labels(provider="stripe", status=res.get("status", "ok")).inc()
    return JSONResponse(res)


# --------------------------- AI ---------------------------
class SpamCheckRequest(BaseModel):
    message: str
    recipient_count: int = Field(1, ge=1)
    rewrite: bool = True


class LeadRef(BaseModel):
    lead_id: int


class SentimentRequest(BaseModel):
    lead_id: Optional[int] = None
    messages: Optional[List[str]] = None


def _require_ai(ai: AIClient) -> None:
    if not ai.configured:
        raise HTTPException(status_code=500, detail="openai_not_configured")


@app.post("/ai/spam-check", tags=["AI"])
async def ai_spam_check(
    req: SpamCheckRequest,
    db: Session = Depends(get_db),
    ctx: UserContext = Depends(get_user_context),
    ai: AIClient = Depends(get_ai),
):
    tenant_id = _tenant(ctx)
    before = check_spam_risk(req.message, req.recipient_count)
    out: Dict[str, Any] = {"original": req.message, "before": before, "rewritten": None, "after": None}
    if not req.rewrite or before["level"] == "low" or not ai.configured:
        return out
    _rate_limit(db, tenant_id, "ai")
    charge_action(db, tenant_id, "ai_response", description="AI spam-safe rewrite")
    text = await ai.generate(
        prompts.AGENT_SYSTEM,
        [{"role": "user", "content": prompts.spam_rewrite_prompt(req.message, before["flags"])}],
        max_tokens=300,
        purpose="spam_rewrite",
    )
    if text:
        guarded = apply_guardrails(text.strip().strip('"'))
        out["rewritten"] = guarded["message"]
        out["guardrails"] = guarded
        out["after"] = check_spam_risk(guarded["message"], req.recipient_count)
    return out


def _lead_history(db: Session, tenant_id: str, lead: dbm.Lead, limit: int = 10) -> List[Dict[str, Any]]:
    msgs = msg_svc.thread_messages(db, tenant_id, lead.phone, limit=limit) if lead.phone else []
    return [{"role": "user" if m["direction"] == "inbound" else "assistant", "content": m["body"] or ""} for m in msgs]


@app.post("/ai/smart-replies", tags=["AI"])
async def ai_smart_replies(
    req: LeadRef,
    db: Session = Depends(get_db),
    ctx: UserContext = Depends(get_user_context),
    ai: AIClient = Depends(get_ai),
):
    tenant_id = _tenant(ctx)
    _require_ai(ai)
    _rate_limit(db, tenant_id, "ai")
    lead = leads_svc.get_lead(db, tenant_id, req.lead_id)
    user = db.query(dbm.User).filter(dbm.User.tenant_id == tenant_id).first()
    charge_action(db, tenant_id, "ai_response", description="AI smart replies")
    text = await ai.generate(
        prompts.AGENT_SYSTEM,
        [
            {
                "role": "user",
                "content": prompts.smart_replies_prompt(
                    leads_svc.lead_to_dict(lead), _lead_history(db, tenant_id, lead, limit=5), user.agent_name if user else None
                ),
            }
        ],
        max_tokens=300,
        temperature=0.8,
        purpose="smart_replies",
    )
    replies = [ln.strip().lstrip("-*0123456789.) ").strip() for ln in (text or "").splitlines() if ln.strip()]
    return {"replies": replies[:3]}


@app.post("/ai/generate-follow-up", tags=["AI"])
async def ai_generate_follow_up(
    req: LeadRef,
    db: Session = Depends(get_db),
    ctx: UserContext = Depends(get_user_context),
    ai: AIClient = Depends(get_ai),
):
    tenant_id = _tenant(ctx)
    _require_ai(ai)
    _rate_limit(db, tenant_id, "ai")
    return await followups_svc.generate_followup_text(db, tenant_id, req.lead_id, ai=ai)


@app.post("/ai/analyze-sentiment", tags=["AI"])
async def ai_analyze_sentiment(
    req: SentimentRequest,
    db: Session = Depends(get_db),
    ctx: UserContext = Depends(get_user_context),
    ai: AIClient = Depends(get_ai),
):
    tenant_id = _tenant(ctx)
    _require_ai(ai)
    texts = list(req.messages or [])
    if not texts and req.lead_id is not None:
        lead = leads_svc.get_lead(db, tenant_id, req.lead_id)
        texts = [t["content"] for t in _lead_history(db, tenant_id, lead, limit=20) if t["role"] == "user"]
    if not texts:
        raise HTTPException(status_code=400, detail="no_messages")
    _rate_limit(db, tenant_id, "ai")
    charge_action(db, tenant_id, "ai_response", description="AI sentiment analysis")
    data = await ai.generate_json(
        prompts.AGENT_SYSTEM,
        [{"role": "user", "content": prompts.sentiment_prompt(texts)}],
        purpose="sentiment",
    )
    if not isinstance(data, dict):
        raise HTTPException(status_code=502, detail="ai_unparseable")
    return {
        "sentiment": data.get("sentiment", "neutral"),
        "score": data.get("score", 0),
        "insights": data.get("insights") or [],
    }


# --------------------------- Calendar ---------------------------
class SlotsRequest(BaseModel):
    date_requested: Optional[str] = "next week"
    limit: int = Field(5, ge=1, le=20)


class BookRequest(BaseModel):
    start: str
    end: Optional[str] = None
    summary: Optional[str] = None
    description: Optional[str] = None
    lead_id: Optional[int] = None
    attendee_email: Optional[str] = None
    attendee_name: Optional[str] = None


@app.get("/calendar/oauth", tags=["Calendar"])
def calendar_oauth(ctx: UserContext = Depends(get_user_context)):
    try:
        return {"url": cal_google.authorization_url(sign_state(_tenant(ctx)))}
    except RuntimeError as e:
        raise _vendor_error(e)


@app.get("/calendar/oauth/callback", tags=["Calendar"])
def calendar_oauth_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    db: Session = Depends(get_db),
):
    origin = os.getenv("APP_ORIGIN", "http://localhost:3000").rstrip("/")
    if error or not code:
        return RedirectResponse(f"{origin}/settings?calendar=error")
    tenant_id = verify_state(state or "")
    if not tenant_id:
        raise HTTPException(status_code=400, detail="invalid_state")
    try:
        cal_google.exchange_code(db, tenant_id, code)
    except (RuntimeError, httpx.HTTPError) as e:
        logger.warning("calendar_oauth_exchange_failed", extra={"tenant_id": tenant_id, "error": str(e)[:200]})
        return RedirectResponse(f"{origin}/settings?calendar=error")
    emit_event("CalendarConnected", {"tenant_id": tenant_id, "provider": "google"})
    return RedirectResponse(f"{origin}/settings?calendar=connected")


@app.get("/calendar/status", tags=["Calendar"])
def calendar_status(db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    return TenantCalendar(db, _tenant(ctx)).status()


@app.post("/calendar/disconnect", tags=["Calendar"])
def calendar_disconnect(db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    removed = cal_google.disconnect(db, _tenant(ctx))
    return {"disconnected": bool(removed)}


@app.post("/calendar/slots", tags=["Calendar"])
def calendar_slots(req: SlotsRequest, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    cal = TenantCalendar(db, _tenant(ctx))
    if not cal.connected():
        raise HTTPException(status_code=400, detail="calendar_not_connected")
    try:
        slots = cal.available_slots(req.date_requested, limit=req.limit)
    except (RuntimeError, httpx.HTTPError) as e:
        raise _vendor_error(e)
    return {"slots": slots, "timezone": cal.tz}


@app.post("/calendar/book", tags=["Calendar"])
def calendar_book(req: BookRequest, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    cal = TenantCalendar(db, _tenant(ctx))
    if not cal.connected():
        raise HTTPException(status_code=400, detail="calendar_not_connected")
    try:
        start = datetime.fromisoformat(req.start)
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid_start")
    if start.tzinfo is None:
        start = start.replace(tzinfo=ZoneInfo(cal.tz))
    end = datetime.fromisoformat(req.end) if req.end else start + timedelta(minutes=SLOT_MINUTES)
    slot = {"start": start.isoformat(), "end": end.isoformat(), "formatted": format_slot(start)}
    res = cal.book_slot(
        slot,
        summary=req.summary or "Call with Client",
        description=req.description,
        lead_id=req.lead_id,
        attendee_email=req.attendee_email,
        attendee_name=req.attendee_name,
    )
    if res.get("status") == "slot_taken":
        return JSONResponse(res, status_code=409)
    if res.get("status") != "booked":
        raise HTTPException(status_code=502, detail=res.get("error") or "booking_failed")
    return res


# --------------------------- Flows & conversations ---------------------------
class FlowIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    description: Optional[str] = None
    steps: List[Dict[str, Any]] = Field(default_factory=list)
    required_questions: List[Dict[str, Any]] = Field(default_factory=list)
    requires_call: bool = False
    ai_enabled: bool = True


class FlowPatch(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    steps: Optional[List[Dict[str, Any]]] = None
    required_questions: Optional[List[Dict[str, Any]]] = None
    requires_call: Optional[bool] = None
    ai_enabled: Optional[bool] = None


class FlowTestRequest(BaseModel):
    message: str
    flow_id: Optional[int] = None
    steps: List[Dict[str, Any]] = Field(default_factory=list)
    required_questions: List[Dict[str, Any]] = Field(default_factory=list)
    requires_call: bool = False
    ai_enabled: bool = True
    status: str = "active"
    collected_info: Dict[str, Any] = Field(default_factory=dict)
    history: List[Dict[str, Any]] = Field(default_factory=list)
    offered_slots: List[Dict[str, Any]] = Field(default_factory=list)
    current_step_index: int = 0
    pending_field: Optional[str] = None


class SimpleFlowRequest(BaseModel):
    required_questions: List[Dict[str, Any]] = Field(default_factory=list)
    collected_info: Dict[str, Any] = Field(default_factory=dict)
    requires_call: bool = False


class CalendarTestRequest(BaseModel):
    date_requested: Optional[str] = "today"


class StartConversationRequest(BaseModel):
    flow_id: int
    lead_id: Optional[int] = None
    phone: Optional[str] = None
    send: bool = False


class ReplyRequest(BaseModel):
    message: str = Field(..., min_length=1)
    send: bool = False


@app.get("/flows", tags=["Flows"])
def list_flows(db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    return {"items": conv_svc.list_flows(db, _tenant(ctx))}


@app.post("/flows", tags=["Flows"])
def create_flow(req: FlowIn, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    return conv_svc.flow_to_dict(conv_svc.create_flow(db, _tenant(ctx), req.model_dump()))


@app.put("/flows/{flow_id}", tags=["Flows"])
def update_flow(flow_id: int, req: FlowPatch, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    return conv_svc.flow_to_dict(conv_svc.update_flow(db, _tenant(ctx), flow_id, req.model_dump(exclude_unset=True)))


@app.delete("/flows/{flow_id}", tags=["Flows"])
def delete_flow(flow_id: int, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    conv_svc.delete_flow(db, _tenant(ctx), flow_id)
    return {"status": "deleted"}


@app.post("/flows/test-response", tags=["Flows"])
async def flow_test_response(
    req: FlowTestRequest,
    db: Session = Depends(get_db),
    ctx: UserContext = Depends(get_user_context),
    ai: AIClient = Depends(get_ai),
):
    """Run one turn of the engine over caller-supplied state; nothing is sent or stored."""
    tenant_id = _tenant(ctx)
    if req.flow_id is not None:
        flow: Any = conv_svc.get_flow(db, tenant_id, req.flow_id)
    else:
        flow = SimpleNamespace(
            steps=req.steps,
            required_questions=req.required_questions,
            requires_call=req.requires_call,
            ai_enabled=req.ai_enabled,
        )
    session = SimpleNamespace(
        status=req.status,
        collected_info=dict(req.collected_info),
        history=list(req.history),
        offered_slots=list(req.offered_slots),
        current_step_index=req.current_step_index,
        pending_field=req.pending_field,
        appointment=None,
    )
    engine = conv_svc.build_engine(db, tenant_id, ai, dry_run=True)
    result = await engine.respond(session, flow, req.message)
    if result.get("ai_generated"):
        charge_action(db, tenant_id, "ai_response", description="AI flow test")
    return {**result, "history": session.history, "pending_field": session.pending_field}


@app.post("/flows/simple-response", tags=["Flows"])
def flow_simple_response(req: SimpleFlowRequest, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    cal = TenantCalendar(db, _tenant(ctx))
    return simple_flow_response(
        req.required_questions,
        req.collected_info,
        req.requires_call,
        calendar=cal if cal.connected() else None,
    )


@app.post("/flows/test-calendar", tags=["Flows"])
def flow_test_calendar(req: CalendarTestRequest, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    cal = TenantCalendar(db, _tenant(ctx))
    status = cal.status()
    if not status["connected"]:
        return {"calendar": status, "slots": [], "reply": NO_AVAILABILITY_TEXT}
    try:
        slots = cal.available_slots(req.date_requested, limit=3)
    except (RuntimeError, httpx.HTTPError) as e:
        return {"calendar": status, "slots": [], "reply": NO_AVAILABILITY_TEXT, "error": str(e)[:200]}
    return {"calendar": status, "slots": slots, "reply": offer_text(slots) if slots else NO_AVAILABILITY_TEXT}


@app.post("/conversations/start", tags=["Flows"])
def conversation_start(req: StartConversationRequest, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    session = conv_svc.start_session(db, _tenant(ctx), req.flow_id, lead_id=req.lead_id, phone=req.phone, send=req.send)
    return conv_svc.session_to_dict(session)


@app.post("/conversations/{session_id}/reply", tags=["Flows"])
async def conversation_reply(
    session_id: int,
    req: ReplyRequest,
    db: Session = Depends(get_db),
    ctx: UserContext = Depends(get_user_context),
    ai: AIClient = Depends(get_ai),
):
    tenant_id = _tenant(ctx)
    session = conv_svc.get_session(db, tenant_id, session_id)
    return await conv_svc.reply_to_session(db, tenant_id, session, req.message, ai=ai, send=req.send)


# --------------------------- Follow-ups & drips ---------------------------
class FollowUpIn(BaseModel):
    lead_id: int
    message: str = Field(..., min_length=1)
    due_at: int


class FollowUpBulkIn(BaseModel):
    lead_ids: List[int] = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    due_at: int


class FollowUpPatch(BaseModel):
    message: Optional[str] = None
    due_at: Optional[int] = None
    status: Optional[str] = None


class CalendarLinkRequest(BaseModel):
    lead_id: int
    follow_up_id: Optional[int] = None


class DripStartRequest(BaseModel):
    lead_id: int
    interval_hours: int = Field(drips_svc.DEFAULT_INTERVAL_HOURS, ge=1, le=720)
    max_messages: int = Field(drips_svc.DEFAULT_MAX_MESSAGES, ge=1, le=20)
    max_duration_hours: int = Field(drips_svc.DEFAULT_MAX_DURATION_HOURS, ge=1, le=24 * 90)
    messages: Optional[List[str]] = None


class DripStopRequest(BaseModel):
    drip_id: Optional[int] = None
    lead_id: Optional[int] = None


class DripMessagePatch(BaseModel):
    content: str = Field(..., min_length=1, max_length=drips_svc.MAX_DRIP_MESSAGE_LENGTH)


@app.get("/follow-ups", tags=["FollowUps"])
def list_follow_ups(
    status: Optional[str] = None,
    lead_id: Optional[int] = None,
    db: Session = Depends(get_db),
    ctx: UserContext = Depends(get_user_context),
):
    return {"items": followups_svc.list_followups(db, _tenant(ctx), status=status, lead_id=lead_id)}


@app.post("/follow-ups", tags=["FollowUps"])
def create_follow_up(req: FollowUpIn, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    f = followups_svc.create_followup(db, _tenant(ctx), req.lead_id, req.message, req.due_at)
    return followups_svc.followup_to_dict(f)


@app.post("/follow-ups/bulk", tags=["FollowUps"])
def bulk_follow_ups(req: FollowUpBulkIn, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    return followups_svc.bulk_create(db, _tenant(ctx), req.lead_ids, req.message, req.due_at)


@app.get("/follow-ups/suggestions", tags=["FollowUps"])
def follow_up_suggestions(db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    return {"items": followups_svc.suggestions(db, _tenant(ctx))}


@app.post("/follow-ups/send-calendar-link", tags=["FollowUps"])
def send_calendar_link(req: CalendarLinkRequest, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    return followups_svc.send_calendar_link(db, _tenant(ctx), req.lead_id, followup_id=req.follow_up_id)


@app.patch("/follow-ups/{follow_up_id}", tags=["FollowUps"])
def update_follow_up(follow_up_id: int, req: FollowUpPatch, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    f = followups_svc.update_followup(db, _tenant(ctx), follow_up_id, req.model_dump(exclude_none=True))
    return followups_svc.followup_to_dict(f)


@app.delete("/follow-ups/{follow_up_id}", tags=["FollowUps"])
def cancel_follow_up(follow_up_id: int, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    return followups_svc.followup_to_dict(followups_svc.cancel_followup(db, _tenant(ctx), follow_up_id))


@app.post("/drips/start", tags=["FollowUps"])
async def drip_start(
    req: DripStartRequest,
    db: Session = Depends(get_db),
    ctx: UserContext = Depends(get_user_context),
    ai: AIClient = Depends(get_ai),
):
    _require_writer(ctx)
    return await drips_svc.start_drip(
        db,
        _tenant(ctx),
        req.lead_id,
        ai=ai,
        interval_hours=req.interval_hours,
        max_messages=req.max_messages,
        max_duration_hours=req.max_duration_hours,
        messages=req.messages,
    )


@app.post("/drips/stop", tags=["FollowUps"])
def drip_stop(req: DripStopRequest, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    return drips_svc.stop_drip(db, _tenant(ctx), drip_id=req.drip_id, lead_id=req.lead_id)


@app.get("/drips/status", tags=["FollowUps"])
def drip_status(
    drip_id: Optional[int] = None,
    lead_id: Optional[int] = None,
    db: Session = Depends(get_db),
    ctx: UserContext = Depends(get_user_context),
):
    if drip_id is None and lead_id is None:
        raise HTTPException(status_code=400, detail="drip_id_or_lead_id_required")
    status = drips_svc.drip_status(db, _tenant(ctx), drip_id=drip_id, lead_id=lead_id)
    return {"drip": status}


@app.put("/drips/messages/{message_id}", tags=["FollowUps"])
def drip_message_edit(message_id: int, req: DripMessagePatch, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    return drips_svc.edit_drip_message(db, _tenant(ctx), message_id, req.content)


@app.delete("/drips/messages/{message_id}", tags=["FollowUps"])
def drip_message_delete(message_id: int, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    _require_writer(ctx)
    drips_svc.delete_drip_message(db, _tenant(ctx), message_id)
    return {"status": "cancelled"}


# --------------------------- Settings ---------------------------
class QuietHoursIn(BaseModel):
    enabled: Optional[bool] = None
    start: Optional[int] = Field(default=None, ge=0, le=23)
    end: Optional[int] = Field(default=None, ge=0, le=23)
    timezone: Optional[str] = None
    booking_link: Optional[str] = None
    agent_name: Optional[str] = None


def _quiet_hours_out(db: Session, tenant_id: str) -> Dict[str, Any]:
    qh = for_tenant(db, tenant_id)
    user = db.query(dbm.User).filter(dbm.User.tenant_id == tenant_id).first()
    return {
        "enabled": qh.enabled,
        "start": qh.start,
        "end": qh.end,
        "timezone": qh.tz,
        "booking_link": user.booking_link if user else None,
        "agent_name": user.agent_name if user else None,
    }


@app.get("/settings/quiet-hours", tags=["Settings"])
def get_quiet_hours(db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    return _quiet_hours_out(db, _tenant(ctx))


@app.post("/settings/quiet-hours", tags=["Settings"])
def set_quiet_hours(req: QuietHoursIn, db: Session = Depends(get_db), ctx: UserContext = Depends(get_user_context)):
    if ctx.role != "owner":
        raise HTTPException(status_code=403, detail="forbidden")
    tenant_id = _tenant(ctx)
    user = get_or_create_user(db, tenant_id)
    if req.timezone is not None:
        try:
            ZoneInfo(req.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise HTTPException(status_code=400, detail="invalid_timezone")
        user.timezone = req.timezone
    if req.enabled is not None:
        user.quiet_hours_enabled = req.enabled
    if req.start is not None:
        user.quiet_hours_start = req.start
    if req.end is not None:
        user.quiet_hours_end = req.end
    if req.booking_link is not None:
        user.booking_link = req.booking_link.strip() or None
    if req.agent_name is not None:
        user.agent_name = req.agent_name.strip() or None
    user.updated_at = int(_time.time())
    db.commit()
    emit_event("SettingsUpdated", {"tenant_id": tenant_id, "keys": sorted(req.model_dump(exclude_none=True))})
    return _quiet_hours_out(db, tenant_id)


# --------------------------- Cron ---------------------------
@app.post("/cron/tick", tags=["Cron"])
async def cron_tick(
    tenant_id: Optional[str] = None,
    db: Session = Depends(get_db),
    _: None = Depends(require_cron_secret),
    ai: AIClient = Depends(get_ai),
):
    return await run_tick(db, tenant_id=tenant_id, ai=ai)


@app.post("/cron/process-drips", tags=["Cron"])
async def cron_process_drips(
    limit: int = Query(20, ge=1, le=500),
    db: Session = Depends(get_db),
    _: None = Depends(require_cron_secret),
    ai: AIClient = Depends(get_ai),
):
    return await drips_svc.process_drips(db, ai=ai, limit=limit)
