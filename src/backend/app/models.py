from typing import Optional, List, Dict, Any
from sqlalchemy import String, Boolean, Integer, JSON, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from .db import Base
import time


def _now() -> int:
    return int(time.time())


class User(Base):
    """A tenant account. Every other row is owned by one via tenant_id."""

    __tablename__ = "users"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    full_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    credits: Mapped[int] = mapped_column(Integer, default=0)
    subscription_tier: Mapped[str] = mapped_column(String(16), default="unpaid")  # unpaid|growth|scale
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    timezone: Mapped[str] = mapped_column(String(64), default="America/New_York")
    quiet_hours_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    quiet_hours_start: Mapped[int] = mapped_column(Integer, default=21)  # local hour, 24h clock
    quiet_hours_end: Mapped[int] = mapped_column(Integer, default=9)
    booking_link: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    agent_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[int] = mapped_column(Integer, default=_now)
    updated_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class Lead(Base):
    __tablename__ = "leads"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(32), index=True, nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    state: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    zip_code: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    tags: Mapped[List[str]] = mapped_column(JSON, default=list)
    status: Mapped[str] = mapped_column(String(24), default="new")
    disposition: Mapped[Optional[str]] = mapped_column(String(24), nullable=True)
    is_client: Mapped[bool] = mapped_column(Boolean, default=False)
    campaign_id: Mapped[Optional[int]] = mapped_column(Integer, index=True, nullable=True)
    source: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    opted_out: Mapped[bool] = mapped_column(Boolean, default=False)
    ai_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    score: Mapped[int] = mapped_column(Integer, default=0)
    temperature: Mapped[str] = mapped_column(String(8), default="cold")
    last_engaged_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[int] = mapped_column(Integer, default=_now)
    updated_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class Tag(Base):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_tags_tenant_name"),)
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(64))
    color: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    created_at: Mapped[int] = mapped_column(Integer, default=_now)


class Campaign(Base):
    __tablename__ = "campaigns"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(128))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    flow_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    tag_filter: Mapped[List[str]] = mapped_column(JSON, default=list)
    message_template: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="draft")  # draft|scheduled|running|completed
    scheduled_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    last_run_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    sent_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[int] = mapped_column(Integer, default=_now)


class Flow(Base):
    __tablename__ = "flows"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(128))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    steps: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    required_questions: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    requires_call: Mapped[bool] = mapped_column(Boolean, default=False)
    ai_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[int] = mapped_column(Integer, default=_now)
    updated_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class ConversationSession(Base):
    __tablename__ = "conversation_sessions"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    flow_id: Mapped[int] = mapped_column(Integer, index=True)
    lead_id: Mapped[Optional[int]] = mapped_column(Integer, index=True, nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="active")  # active|awaiting_time|booked|completed
    current_step_index: Mapped[int] = mapped_column(Integer, default=0)
    pending_field: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    collected_info: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    history: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    offered_slots: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    appointment: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[int] = mapped_column(Integer, default=_now)
    updated_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class Message(Base):
    __tablename__ = "messages"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    lead_id: Mapped[Optional[int]] = mapped_column(Integer, index=True, nullable=True)
    phone: Mapped[str] = mapped_column(String(32), index=True)
    from_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    direction: Mapped[str] = mapped_column(String(16))  # inbound|outbound
    body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="queued")
    provider: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    provider_id: Mapped[Optional[str]] = mapped_column(String(128), index=True, nullable=True)
    is_automated: Mapped[bool] = mapped_column(Boolean, default=False)
    automation_source: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    credits: Mapped[int] = mapped_column(Integer, default=0)
    ts: Mapped[int] = mapped_column(Integer, default=_now)


class FollowUp(Base):
    __tablename__ = "follow_ups"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    lead_id: Mapped[int] = mapped_column(Integer, index=True)
    message: Mapped[str] = mapped_column(Text)
    due_at: Mapped[int] = mapped_column(Integer, index=True)
    status: Mapped[str] = mapped_column(String(16), default="pending")  # pending|sent|failed|cancelled
    sent_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[int] = mapped_column(Integer, default=_now)


class Drip(Base):
    __tablename__ = "drips"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    lead_id: Mapped[int] = mapped_column(Integer, index=True)
    phone: Mapped[str] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(String(16), default="active")  # active|completed|stopped
    interval_hours: Mapped[int] = mapped_column(Integer, default=24)
    max_messages: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    messages_sent: Mapped[int] = mapped_column(Integer, default=0)
    started_at: Mapped[int] = mapped_column(Integer, default=_now)
    next_send_at: Mapped[Optional[int]] = mapped_column(Integer, index=True, nullable=True)
    expires_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class DripMessage(Base):
    __tablename__ = "drip_messages"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    drip_id: Mapped[int] = mapped_column(Integer, index=True)
    message_number: Mapped[int] = mapped_column(Integer)
    content: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(16), default="scheduled")  # scheduled|sent|cancelled
    scheduled_for: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    sent_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    message_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class PointTransaction(Base):
    __tablename__ = "point_transactions"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    action_type: Mapped[str] = mapped_column(String(24))  # spend|purchase|earn|refund|grant
    points_amount: Mapped[int] = mapped_column(Integer)
    balance_after: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[int] = mapped_column(Integer, default=_now)


class PhoneNumber(Base):
    __tablename__ = "phone_numbers"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    phone_number: Mapped[str] = mapped_column(String(32), index=True)
    provider: Mapped[str] = mapped_column(String(16))  # twilio|telnyx
    provider_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="active")  # active|released
    created_at: Mapped[int] = mapped_column(Integer, default=_now)


class CalendarAccount(Base):
    __tablename__ = "calendar_accounts"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    provider: Mapped[str] = mapped_column(String(16), default="google")
    access_token_enc: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refresh_token_enc: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expires_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[int] = mapped_column(Integer, default=_now)


class CalendarEvent(Base):
    __tablename__ = "calendar_events"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    lead_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    google_event_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    summary: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    start_time: Mapped[str] = mapped_column(String(40))
    end_time: Mapped[str] = mapped_column(String(40))
    attendee_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    attendee_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[int] = mapped_column(Integer, default=_now)


class DncEntry(Base):
    __tablename__ = "dnc_entries"
    __table_args__ = (UniqueConstraint("tenant_id", "phone", name="uq_dnc_tenant_phone"),)
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    phone: Mapped[str] = mapped_column(String(32), index=True)
    reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    source: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)  # manual|keyword|import
    created_at: Mapped[int] = mapped_column(Integer, default=_now)


class EventLedger(Base):
    __tablename__ = "events_ledger"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    ts: Mapped[int] = mapped_column(Integer, default=_now)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(64))
    payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    key: Mapped[str] = mapped_column(String(128), index=True, unique=True)
    created_at: Mapped[int] = mapped_column(Integer, default=_now)


class DeadLetter(Base):
    __tablename__ = "dead_letters"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    provider: Mapped[str] = mapped_column(String(64))
    reason: Mapped[str] = mapped_column(String(255))
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[int] = mapped_column(Integer, default=_now)
