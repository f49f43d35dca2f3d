# File: parkgate/domain/aggregates.py
"""
Aggregate Roots for the ParkGate session engine
Following Domain-Driven Design (DDD) Aggregate Pattern

Aggregates:
1. ParkingSession - one vehicle's stay, from entry to closure

Key Concepts:
- The aggregate root enforces the session state machine
- Discount ledger lines are children reached only through the root
- Domain events are collected on the root and drained by the caller
  after the store has committed the change

State machine:
    PARKING      -> EXIT_PENDING | CLOSED | ERROR
    EXIT_PENDING -> PAID | CLOSED | ERROR
    PAID         -> CLOSED
    CLOSED, ERROR: terminal, every further transition is rejected
"""

from typing import List, Optional, Dict, Any
from datetime import datetime
import logging

from .models import (
    Entity, SessionStatus, PaymentStatus, CloseReason, ExemptionKind,
    DiscountApplication, FeeBreakdown, DomainEvent,
    SessionOpened, SessionExitPending, SessionClosed, SessionFailed, PaymentSettled,
    InvalidTransition, PaymentAmountMismatch, normalize_plate
)


# ============================================================================
# BASE AGGREGATE ROOT
# ============================================================================

class AggregateRoot(Entity):
    """
    Base class for all aggregate roots
    Provides domain event collection and versioning
    """

    def __init__(self, id: Optional[str] = None, version: int = 1):
        super().__init__(id)
        self._version: int = version
        self._changes: List[DomainEvent] = []
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    def version(self) -> int:
        """Persisted version, used for optimistic concurrency"""
        return self._version

    def _increment_version(self) -> None:
        self._version += 1

    def _add_domain_event(self, event: DomainEvent) -> None:
        self._changes.append(event)
        self._logger.debug(f"Added domain event: {event.__class__.__name__}")

    def clear_events(self) -> List[DomainEvent]:
        """Clear and return all domain events"""
        events = self._changes.copy()
        self._changes.clear()
        return events

    def _validate_invariants(self) -> None:
        """Validate aggregate invariants - to be overridden by subclasses"""
        pass


# ============================================================================
# PARKING SESSION AGGREGATE
# ============================================================================

_TRANSITIONS = {
    SessionStatus.PARKING: {SessionStatus.EXIT_PENDING, SessionStatus.CLOSED, SessionStatus.ERROR},
    SessionStatus.EXIT_PENDING: {SessionStatus.PAID, SessionStatus.CLOSED, SessionStatus.ERROR},
    SessionStatus.PAID: {SessionStatus.CLOSED},
    SessionStatus.CLOSED: set(),
    SessionStatus.ERROR: set(),
}


class ParkingSession(AggregateRoot):
    """
    Aggregate Root: a vehicle's stay at a site

    The rate rules in force at entry are snapshotted onto the session and
    govern its fee unless an explicit recalculation swaps the plan.
    """

    def __init__(
        self,
        site_id: str,
        plate_no: str,
        entry_lane_id: str,
        entry_at: datetime,
        rate_plan_id: str,
        rate_rules: Dict[str, Any],
        rate_plan_name: Optional[str] = None,
        exempt_kind: Optional[ExemptionKind] = None,
        id: Optional[str] = None,
        version: int = 1
    ):
        super().__init__(id, version)
        self.site_id = site_id
        self.plate_no = normalize_plate(plate_no)
        self.entry_lane_id = entry_lane_id
        self.entry_at = entry_at
        self.rate_plan_id = rate_plan_id
        self.rate_plan_name = rate_plan_name
        self.rate_rules: Dict[str, Any] = dict(rate_rules)
        self.exempt_kind = exempt_kind

        self.status = SessionStatus.PARKING
        self.payment_status = PaymentStatus.NONE
        self.exit_lane_id: Optional[str] = None
        self.exit_at: Optional[datetime] = None
        self.raw_fee = 0
        self.discount_total = 0
        self.final_fee = 0
        self.fee_breakdown: Optional[Dict[str, Any]] = None
        self.paid_amount: Optional[int] = None
        self.paid_at: Optional[datetime] = None
        self.close_reason: Optional[CloseReason] = None
        self.close_note: Optional[str] = None
        self.closed_at: Optional[datetime] = None
        self.error_detail: Optional[str] = None
        self.discounts: List[DiscountApplication] = []

    @classmethod
    def start(
        cls,
        site_id: str,
        plate_no: str,
        entry_lane_id: str,
        entry_at: datetime,
        rate_plan_id: str,
        rate_rules: Dict[str, Any],
        rate_plan_name: Optional[str] = None,
        exempt_kind: Optional[ExemptionKind] = None
    ) -> 'ParkingSession':
        """Create a PARKING session and raise SessionOpened"""
        session = cls(
            site_id=site_id,
            plate_no=plate_no,
            entry_lane_id=entry_lane_id,
            entry_at=entry_at,
            rate_plan_id=rate_plan_id,
            rate_rules=rate_rules,
            rate_plan_name=rate_plan_name,
            exempt_kind=exempt_kind,
        )
        session._add_domain_event(SessionOpened(
            session_id=session.id,
            site_id=site_id,
            plate_no=session.plate_no,
            lane_id=entry_lane_id,
            entry_at=entry_at,
            exempt_kind=exempt_kind,
        ))
        return session

    # ------------------------------------------------------------------
    # State queries
    # ------------------------------------------------------------------

    @property
    def is_exempt(self) -> bool:
        return self.exempt_kind is not None

    @property
    def is_open(self) -> bool:
        return self.status.is_open

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def can_transition_to(self, target: SessionStatus) -> bool:
        return target in _TRANSITIONS[self.status]

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _transition(self, target: SessionStatus) -> None:
        if not self.can_transition_to(target):
            raise InvalidTransition(self.id, self.status, target.value)
        self._logger.debug(f"Session {self.id}: {self.status.value} -> {target.value}")
        self.status = target

    def _require(self, action: str, *allowed: SessionStatus) -> None:
        """Reject `action` unless the session is in one of `allowed`"""
        if self.status not in allowed:
            raise InvalidTransition(self.id, self.status, action)

    def ensure_adjustable(self, action: str) -> None:
        """Fees, discounts and corrections are only accepted while open"""
        self._require(action, SessionStatus.PARKING, SessionStatus.EXIT_PENDING)

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    def apply_pricing(self, breakdown: FeeBreakdown, discount_total: int) -> None:
        """Overwrite raw / discount / final fee from a fresh computation"""
        self.ensure_adjustable("REPRICE")
        discount_total = max(0, min(discount_total, breakdown.raw_fee))
        self.raw_fee = breakdown.raw_fee
        self.discount_total = discount_total
        self.final_fee = max(self.raw_fee - discount_total, 0)
        self.fee_breakdown = breakdown.to_dict()
        self.fee_breakdown.update({
            "discount_total": self.discount_total,
            "final_fee": self.final_fee,
            "discounts": [
                {"rule_id": line.rule_id, "rule_name": line.rule_name,
                 "type": line.discount_type.value, "applied_value": line.applied_value}
                for line in self.discounts
            ],
        })

    def waive_as_exempt(self) -> None:
        """Exempt stays are priced but fully discounted"""
        self.ensure_adjustable("EXEMPT")
        self.discount_total = self.raw_fee
        self.final_fee = 0
        if self.fee_breakdown is not None:
            self.fee_breakdown.update({
                "discount_total": self.discount_total,
                "final_fee": 0,
                "exemption": self.exempt_kind.value if self.exempt_kind else None,
            })

    def tag_exempt(self, kind: ExemptionKind) -> None:
        """Eligibility found at exit time; an existing tag is kept"""
        self.ensure_adjustable("EXEMPT")
        if self.exempt_kind is None:
            self.exempt_kind = kind

    def add_discount(self, line: DiscountApplication) -> None:
        """Append to the ledger; lines are never edited or removed"""
        self.ensure_adjustable("APPLY_DISCOUNT")
        self.discounts.append(line)

    def change_rate_plan(self, rate_plan_id: str, rate_rules: Dict[str, Any],
                         rate_plan_name: Optional[str] = None) -> None:
        self.ensure_adjustable("CHANGE_RATE_PLAN")
        self.rate_plan_id = rate_plan_id
        self.rate_plan_name = rate_plan_name
        self.rate_rules = dict(rate_rules)

    def correct(self, plate_no: Optional[str] = None, entry_at: Optional[datetime] = None,
                exit_at: Optional[datetime] = None) -> Dict[str, Any]:
        """Apply operator corrections; returns the before/after values that changed"""
        self.ensure_adjustable("CORRECT")
        changes: Dict[str, Any] = {}
        if plate_no is not None:
            normalized = normalize_plate(plate_no)
            if normalized != self.plate_no:
                changes["plate_no"] = {"before": self.plate_no, "after": normalized}
                self.plate_no = normalized
        if entry_at is not None and entry_at != self.entry_at:
            changes["entry_at"] = {"before": self.entry_at.isoformat(), "after": entry_at.isoformat()}
            self.entry_at = entry_at
        if exit_at is not None and exit_at != self.exit_at:
            changes["exit_at"] = {
                "before": self.exit_at.isoformat() if self.exit_at else None,
                "after": exit_at.isoformat(),
            }
            self.exit_at = exit_at
        self._validate_invariants()
        return changes

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def record_exit(self, exit_at: datetime, lane_id: Optional[str]) -> None:
        """An exit read is accepted once, while the vehicle is still parked"""
        self._require(SessionStatus.EXIT_PENDING.value, SessionStatus.PARKING)
        self.exit_at = exit_at
        self.exit_lane_id = lane_id
        self._validate_invariants()

    def await_payment(self, at: datetime) -> None:
        self._transition(SessionStatus.EXIT_PENDING)
        self.payment_status = PaymentStatus.PENDING
        self._add_domain_event(SessionExitPending(self.id, self.plate_no, self.final_fee, at))

    def close_without_payment(self, reason: CloseReason, at: datetime) -> None:
        """Exempt or zero-fee exit: straight to CLOSED, payment skipped"""
        self._transition(SessionStatus.CLOSED)
        self.close_reason = reason
        self.closed_at = at
        self._add_domain_event(SessionClosed(self.id, self.plate_no, self.final_fee, reason, at))

    def settle_payment(self, amount: int, at: datetime) -> None:
        """First accepted payment: PAID, then CLOSED"""
        self._require(SessionStatus.PAID.value, SessionStatus.EXIT_PENDING)
        if amount < self.final_fee:
            raise PaymentAmountMismatch(
                f"Session {self.id} owes {self.final_fee}, payment of {amount} refused"
            )
        self.payment_status = PaymentStatus.PAID
        self.paid_amount = amount
        self.paid_at = at
        self._transition(SessionStatus.PAID)
        self._add_domain_event(PaymentSettled(self.id, amount, at))
        self._transition(SessionStatus.CLOSED)
        self.closed_at = at
        self._add_domain_event(SessionClosed(self.id, self.plate_no, self.final_fee, None, at))

    def record_payment_failure(self, detail: str) -> None:
        """Failed authorization; the session waits for another attempt"""
        self._require("PAYMENT_FAILED", SessionStatus.EXIT_PENDING)
        self.payment_status = PaymentStatus.FAILED
        self.error_detail = detail

    def force_close(self, reason: str, note: Optional[str], override_payment: bool,
                    at: datetime) -> None:
        """
        Administrative close from PARKING or EXIT_PENDING.
        With override_payment an outstanding payment is cancelled; without it
        the fee stays owed (payment PENDING) after the vehicle leaves.
        """
        self._require(SessionStatus.CLOSED.value, SessionStatus.PARKING, SessionStatus.EXIT_PENDING)
        outstanding = self.payment_status in (PaymentStatus.PENDING, PaymentStatus.FAILED)
        if override_payment:
            if outstanding:
                self.payment_status = PaymentStatus.CANCELLED
        elif self.final_fee > 0:
            self.payment_status = PaymentStatus.PENDING
        if self.exit_at is None:
            self.exit_at = at
        self._transition(SessionStatus.CLOSED)
        self.close_reason = CloseReason.FORCE_CLOSE
        self.close_note = f"{reason}: {note}" if note else reason
        self.closed_at = at
        self._add_domain_event(
            SessionClosed(self.id, self.plate_no, self.final_fee, CloseReason.FORCE_CLOSE, at)
        )

    def mark_error(self, detail: str, at: datetime) -> None:
        self._transition(SessionStatus.ERROR)
        self.error_detail = detail
        self._add_domain_event(SessionFailed(self.id, detail, at))

    # ------------------------------------------------------------------
    # Invariants
    # ------------------------------------------------------------------

    def _validate_invariants(self) -> None:
        if self.exit_at is not None and self.exit_at < self.entry_at:
            raise ValueError(
                f"Session {self.id}: exit {self.exit_at.isoformat()} precedes "
                f"entry {self.entry_at.isoformat()}"
            )
        if self.final_fee != max(self.raw_fee - self.discount_total, 0):
            raise ValueError(f"Session {self.id}: final fee out of step with raw/discount")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "site_id": self.site_id,
            "plate_no": self.plate_no,
            "status": self.status.value,
            "entry_lane_id": self.entry_lane_id,
            "exit_lane_id": self.exit_lane_id,
            "entry_at": self.entry_at.isoformat(),
            "exit_at": self.exit_at.isoformat() if self.exit_at else None,
            "rate_plan_id": self.rate_plan_id,
            "raw_fee": self.raw_fee,
            "discount_total": self.discount_total,
            "final_fee": self.final_fee,
            "payment_status": self.payment_status.value,
            "exempt": self.exempt_kind.value if self.exempt_kind else None,
            "close_reason": self.close_reason.value if self.close_reason else None,
            "version": self.version,
        }

    def __repr__(self) -> str:
        return f"ParkingSession(id={self.id}, plate={self.plate_no}, status={self.status.value})"
