"""
Event schemas
rosca/schemas.py

Inbound:  PaymentConfirmed, SchedulerTick
Outbound: PayoutReady, PenaltyApplied, CycleAdvanced, GroupCompleted,
          ContributionReminder
          (tagged on ``kind``; each carries only its own fields)
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field, TypeAdapter, field_validator


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ══════════════════════════════════════════════════════════
# INBOUND
# ══════════════════════════════════════════════════════════

class PaymentConfirmed(BaseModel):
    reference: str = Field(min_length=1, max_length=255)
    group_id: UUID
    user_id: UUID
    cycle_number: int = Field(ge=1)
    amount: Decimal = Field(gt=0)
    paid_at: datetime

    @field_validator("paid_at")
    @classmethod
    def _paid_at_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)


class SchedulerTick(BaseModel):
    now: Optional[datetime] = None   # omitted → server clock

    @field_validator("now")
    @classmethod
    def _now_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v) if v is not None else None


class CancelGroupRequest(BaseModel):
    reason: str = Field(default="cancelled by operator", max_length=500)
    now: Optional[datetime] = None


class ActivateGroupRequest(BaseModel):
    now: Optional[datetime] = None
    start_date: Optional[datetime] = None


# ══════════════════════════════════════════════════════════
# OUTBOUND
# ══════════════════════════════════════════════════════════

class PayoutReady(BaseModel):
    kind: Literal["payout-ready"] = "payout-ready"
    group_id: UUID
    cycle_number: int
    recipient_id: UUID
    amount: Decimal

    def dedupe_key(self) -> str:
        return f"{self.kind}:{self.group_id}:{self.cycle_number}"


class PenaltyApplied(BaseModel):
    kind: Literal["penalty-applied"] = "penalty-applied"
    user_id: UUID
    group_id: UUID
    contribution_id: UUID
    amount: Decimal

    def dedupe_key(self) -> str:
        return f"{self.kind}:{self.contribution_id}"


class CycleAdvanced(BaseModel):
    kind: Literal["cycle-advanced"] = "cycle-advanced"
    group_id: UUID
    new_cycle_number: int

    def dedupe_key(self) -> str:
        return f"{self.kind}:{self.group_id}:{self.new_cycle_number}"


class GroupCompleted(BaseModel):
    kind: Literal["group-completed"] = "group-completed"
    group_id: UUID

    def dedupe_key(self) -> str:
        return f"{self.kind}:{self.group_id}"


class ContributionReminder(BaseModel):
    """Due-soon or overdue nudge for one pending contribution, at most once a day."""

    kind: Literal["contribution-reminder"] = "contribution-reminder"
    reminder: Literal["due-soon", "overdue"]
    user_id: UUID
    group_id: UUID
    contribution_id: UUID
    cycle_number: int
    amount: Decimal
    due_date: datetime
    sent_on: date

    def dedupe_key(self) -> str:
        return f"{self.kind}:{self.contribution_id}:{self.reminder}:{self.sent_on.isoformat()}"


EngineEvent = Annotated[
    Union[PayoutReady, PenaltyApplied, CycleAdvanced, GroupCompleted, ContributionReminder],
    Field(discriminator="kind"),
]

engine_event_adapter = TypeAdapter(EngineEvent)


def parse_event(payload: dict):
    """Rebuild the typed event from an outbox payload."""
    return engine_event_adapter.validate_python(payload)
