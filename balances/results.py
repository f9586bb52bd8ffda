"""Structured outcomes returned by the balance operations.

Business outcomes (already done, nothing to bill, not enrolled) are values,
not exceptions. Only store failures raise.
"""
from dataclasses import dataclass, field
from typing import Any, Optional

ALREADY_EXISTS = "already_exists"
NO_PAYMENT_AVAILABLE = "no_payment_available"
NOT_ENROLLED = "not_enrolled"
NOT_FOUND = "not_found"
SCHEDULE_INACTIVE = "schedule_inactive"
WEEKDAY_MISMATCH = "weekday_mismatch"
NOT_DUE = "not_due"
EXCLUDED = "excluded"
OVER_ALLOCATED = "over_allocated"
OCCURRENCE_CANCELLED = "occurrence_cancelled"


@dataclass
class OperationResult:
    success: bool
    reason: Optional[str] = None
    entity: Any = None
    state: Optional[str] = None
    details: dict = field(default_factory=dict)

    @classmethod
    def ok(cls, entity=None, state=None, **details):
        return cls(True, None, entity, state, details)

    @classmethod
    def fail(cls, reason, entity=None, state=None, **details):
        return cls(False, reason, entity, state, details)


@dataclass
class MaterializeReport:
    occurrence: Any = None
    created: bool = False
    reason: Optional[str] = None
    attendance_created: list = field(default_factory=list)
    deducted: list = field(default_factory=list)
    overdue: list = field(default_factory=list)
    failures: list = field(default_factory=list)

    @property
    def success(self):
        return self.created


@dataclass
class TickReport:
    """What one scheduler pass did, keyed by schedule id."""
    ran_at: Any = None
    examined: int = 0
    created: list = field(default_factory=list)
    skipped: list = field(default_factory=list)
    errors: list = field(default_factory=list)
