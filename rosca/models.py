"""
Ledger models (SQLAlchemy)
rosca/models.py

Groups, members, contributions, payouts and penalties, plus the engine's own
bookkeeping tables (outbox, audit log, payment receipts).

The unique constraints below are what make the orchestrator idempotent:
    contributions  (group_id, user_id, cycle_number)
    payouts        (group_id, cycle_number)
    penalties      contribution_id WHERE type = 'late_payment'
    outbox_events  dedupe_key
    payment_receipts reference
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON, Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index,
    Integer, Numeric, String, Text, TypeDecorator, UniqueConstraint, Uuid, text,
)
from sqlalchemy.orm import relationship

from rosca.database import Base


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, always hands back timezone-aware UTC datetimes."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


Money = Numeric(15, 2)
Rate = Numeric(5, 2)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════
# STATUS VALUES
# ═══════════════════════════════════════════════════════════

class GroupStatus:
    FORMING = "forming"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Frequency:
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class MemberStatus:
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    REMOVED = "removed"


class ContributionStatus:
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    WAIVED = "waived"


class PayoutStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PenaltyType:
    LATE_PAYMENT = "late_payment"
    MISSED_PAYMENT = "missed_payment"
    EARLY_EXIT = "early_exit"


class PenaltyStatus:
    APPLIED = "applied"
    PAID = "paid"
    WAIVED = "waived"


# ═══════════════════════════════════════════════════════════
# GROUPS & MEMBERS
# ═══════════════════════════════════════════════════════════

class Group(Base):
    __tablename__ = "groups"
    __table_args__ = (
        CheckConstraint("contribution_amount > 0", name="ck_group_contribution_positive"),
        CheckConstraint("frequency IN ('daily', 'weekly', 'monthly')", name="ck_group_frequency"),
        CheckConstraint("total_members >= 2 AND total_members <= 50", name="ck_group_total_members"),
        CheckConstraint(
            "current_members >= 0 AND current_members <= total_members",
            name="ck_group_current_members",
        ),
        CheckConstraint(
            "security_deposit_percentage >= 0 AND security_deposit_percentage <= 100",
            name="ck_group_deposit_pct",
        ),
        CheckConstraint(
            "service_fee_percentage >= 0 AND service_fee_percentage <= 50",
            name="ck_group_fee_pct",
        ),
        CheckConstraint(
            "status IN ('forming', 'active', 'completed', 'cancelled')",
            name="ck_group_status",
        ),
        CheckConstraint("current_cycle >= 1", name="ck_group_current_cycle"),
        CheckConstraint("total_cycles >= 1", name="ck_group_total_cycles"),
        Index("ix_groups_status", "status"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    created_by = Column(Uuid, nullable=True)

    contribution_amount = Column(Money, nullable=False)
    frequency = Column(String(20), nullable=False)
    total_members = Column(Integer, nullable=False)
    current_members = Column(Integer, nullable=False, default=0)

    security_deposit_percentage = Column(Rate, nullable=False, default=20)
    service_fee_percentage = Column(Rate, nullable=False, default=10)

    # Policy (per group, copied from config.DEFAULT_POLICY at creation)
    penalty_rate_per_day = Column(Rate, nullable=False, default=5)
    penalty_max_rate = Column(Rate, nullable=False, default=50)
    penalty_grace_days = Column(Integer, nullable=False, default=0)
    auto_add_creator = Column(Boolean, nullable=False, default=True)

    status = Column(String(20), nullable=False, default=GroupStatus.FORMING)
    current_cycle = Column(Integer, nullable=False, default=1)
    total_cycles = Column(Integer, nullable=False)
    start_date = Column(UTCDateTime, nullable=True)   # anchors every due date
    end_date = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, default=_utcnow)
    updated_at = Column(UTCDateTime, default=_utcnow, onupdate=_utcnow)

    members = relationship(
        "Member", back_populates="group", order_by="Member.position",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<Group {self.id} {self.status} cycle={self.current_cycle}/{self.total_cycles}>"


class Member(Base):
    __tablename__ = "group_members"
    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_member_group_user"),
        UniqueConstraint("group_id", "position", name="uq_member_group_position"),
        CheckConstraint("position >= 1", name="ck_member_position"),
        CheckConstraint(
            "status IN ('pending', 'active', 'suspended', 'removed')",
            name="ck_member_status",
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    group_id = Column(Uuid, ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Uuid, nullable=False, index=True)

    position = Column(Integer, nullable=False)   # cycle in which this member is paid
    has_paid_security_deposit = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default=MemberStatus.PENDING)
    is_creator = Column(Boolean, nullable=False, default=False)
    joined_at = Column(UTCDateTime, default=_utcnow)

    group = relationship("Group", back_populates="members")


# ═══════════════════════════════════════════════════════════
# CONTRIBUTIONS / PAYOUTS / PENALTIES
# ═══════════════════════════════════════════════════════════

class Contribution(Base):
    __tablename__ = "contributions"
    __table_args__ = (
        UniqueConstraint("group_id", "user_id", "cycle_number", name="uq_contribution_group_user_cycle"),
        CheckConstraint("cycle_number >= 1", name="ck_contribution_cycle"),
        CheckConstraint("amount > 0", name="ck_contribution_amount"),
        CheckConstraint(
            "status IN ('pending', 'paid', 'overdue', 'waived')",
            name="ck_contribution_status",
        ),
        Index("ix_contributions_group_cycle_status", "group_id", "cycle_number", "status"),
        Index("ix_contributions_status_due", "status", "due_date"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    group_id = Column(Uuid, ForeignKey("groups.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Uuid, nullable=False, index=True)
    cycle_number = Column(Integer, nullable=False)

    amount = Column(Money, nullable=False)
    service_fee = Column(Money, nullable=False, default=0)

    due_date = Column(UTCDateTime, nullable=False)
    paid_date = Column(UTCDateTime, nullable=True)
    status = Column(String(20), nullable=False, default=ContributionStatus.PENDING)
    payment_reference = Column(String(255), nullable=True)

    created_at = Column(UTCDateTime, default=_utcnow)


class Payout(Base):
    __tablename__ = "payouts"
    __table_args__ = (
        UniqueConstraint("group_id", "cycle_number", name="uq_payout_group_cycle"),
        CheckConstraint("cycle_number >= 1", name="ck_payout_cycle"),
        CheckConstraint("amount > 0", name="ck_payout_amount"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_payout_status",
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    group_id = Column(Uuid, ForeignKey("groups.id", ondelete="CASCADE"), nullable=False)
    cycle_number = Column(Integer, nullable=False)
    recipient_id = Column(Uuid, nullable=False, index=True)
    amount = Column(Money, nullable=False)
    status = Column(String(20), nullable=False, default=PayoutStatus.PENDING)
    created_at = Column(UTCDateTime, default=_utcnow)


class Penalty(Base):
    __tablename__ = "penalties"
    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_penalty_amount"),
        CheckConstraint(
            "type IN ('late_payment', 'missed_payment', 'early_exit')",
            name="ck_penalty_type",
        ),
        CheckConstraint("status IN ('applied', 'paid', 'waived')", name="ck_penalty_status"),
        # one late_payment penalty per contribution
        Index(
            "uq_penalty_late_per_contribution", "contribution_id",
            unique=True,
            postgresql_where=text("type = 'late_payment'"),
            sqlite_where=text("type = 'late_payment'"),
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    group_id = Column(Uuid, ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True)
    contribution_id = Column(
        Uuid, ForeignKey("contributions.id", ondelete="SET NULL"), nullable=True,
    )
    amount = Column(Money, nullable=False)
    type = Column(String(50), nullable=False)
    reason = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default=PenaltyStatus.APPLIED)
    created_at = Column(UTCDateTime, default=_utcnow)


# ═══════════════════════════════════════════════════════════
# ENGINE BOOKKEEPING
# ═══════════════════════════════════════════════════════════

class OutboxEvent(Base):
    """Outbound event, written in the same transaction as its cause."""
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(40), nullable=False, index=True)
    group_id = Column(Uuid, nullable=False, index=True)
    dedupe_key = Column(String(200), nullable=False, unique=True)
    payload = Column(JSON, nullable=False)

    created_at = Column(UTCDateTime, default=_utcnow)
    dispatched_at = Column(UTCDateTime, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String(100), nullable=False, index=True)
    resource_type = Column(String(50), nullable=False)
    resource_id = Column(String(64), nullable=True)
    group_id = Column(Uuid, nullable=True, index=True)
    details = Column(JSON, default=dict)
    created_at = Column(UTCDateTime, default=_utcnow)


class PaymentReceipt(Base):
    """Inbound payment confirmations, one row per distinct reference."""
    __tablename__ = "payment_receipts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reference = Column(String(255), nullable=False, unique=True)
    group_id = Column(Uuid, nullable=False, index=True)
    user_id = Column(Uuid, nullable=False)
    cycle_number = Column(Integer, nullable=False)
    amount = Column(Money, nullable=False)
    paid_at = Column(UTCDateTime, nullable=False)
    outcome = Column(String(40), nullable=False)   # applied, already_paid
    received_at = Column(UTCDateTime, default=_utcnow)
