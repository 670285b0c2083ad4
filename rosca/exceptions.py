"""
Engine errors
rosca/exceptions.py

Three families, handled differently by callers:
  - transient:       retried inside the orchestrator, surfaced only when retries run out
  - data integrity:  upstream corruption, never retried blindly
  - policy:          request rejected at the boundary, nothing persisted
Logical duplicates are not errors at all; they come back as successful no-ops.
"""


class EngineError(Exception):
    """Base class for every error raised by the engine."""


# ── Transient ──

class TransientLedgerError(EngineError):
    """Lock contention / serialization failure / storage unavailable, after retries."""


# ── Data integrity ──

class DataIntegrityError(EngineError):
    pass


class GroupNotFoundError(DataIntegrityError):
    def __init__(self, group_id):
        self.group_id = group_id
        super().__init__(f"Group {group_id} not found")


class RotationGapError(DataIntegrityError):
    def __init__(self, group_id, position):
        self.group_id = group_id
        self.position = position
        super().__init__(f"Group {group_id} has no member at position {position}")


class ContributionNotFoundError(DataIntegrityError):
    def __init__(self, group_id, user_id, cycle_number):
        self.group_id = group_id
        self.user_id = user_id
        self.cycle_number = cycle_number
        super().__init__(
            f"No pending contribution for user {user_id} in group {group_id}, cycle {cycle_number}"
        )


class PaymentReferenceConflictError(DataIntegrityError):
    """A payment reference already recorded for a different contribution."""

    def __init__(self, reference, recorded, received):
        self.reference = reference
        self.recorded = recorded
        self.received = received
        super().__init__(
            f"Payment reference {reference} already recorded for {recorded}, received again for {received}"
        )


# ── Policy ──

class PolicyViolationError(EngineError):
    pass


class CycleOutOfRangeError(PolicyViolationError):
    def __init__(self, group_id, cycle_number, total_cycles):
        self.group_id = group_id
        self.cycle_number = cycle_number
        self.total_cycles = total_cycles
        super().__init__(
            f"Group {group_id}: cycle {cycle_number} is beyond total_cycles={total_cycles}"
        )


class CycleNotCompleteError(PolicyViolationError):
    def __init__(self, group_id, cycle_number, paid, required):
        self.group_id = group_id
        self.cycle_number = cycle_number
        self.paid = paid
        self.required = required
        super().__init__(
            f"Group {group_id}: cycle {cycle_number} not complete ({paid}/{required} paid)"
        )


class InvalidGroupTransitionError(PolicyViolationError):
    def __init__(self, group_id, current, target):
        self.group_id = group_id
        self.current = current
        self.target = target
        super().__init__(f"Group {group_id}: invalid transition {current} → {target}")


class GroupNotReadyError(PolicyViolationError):
    def __init__(self, group_id, reasons):
        self.group_id = group_id
        self.reasons = list(reasons)
        super().__init__(f"Group {group_id} cannot be activated: {'; '.join(self.reasons)}")


class MembershipError(PolicyViolationError):
    pass


# ── Aggregate ──

class SchedulerTickError(EngineError):
    """One or more groups failed during a tick; the others were still processed."""

    def __init__(self, report):
        self.report = report
        failed = ", ".join(str(f["group_id"]) for f in report.get("failures", []))
        super().__init__(f"Scheduler tick failed for group(s): {failed}")
