# File: parkgate/domain/models.py
"""
Domain Models for the ParkGate session engine

This module contains:
1. Value Objects: plate numbers, rate rules and time-band rate profiles
2. Enums: session, payment, discount and barrier vocabularies
3. Entities / records: rate plans, discount rules, ledger lines,
   eligibility entries, barrier commands and audit entries
4. Domain Events: what the lifecycle reports to the outside world
5. Domain Exceptions: the error taxonomy shared by every layer

Monetary amounts are integers in the smallest currency unit (won).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict, replace
from typing import Optional, Dict, Any
from datetime import datetime, time
import re
import uuid
from enum import Enum


# ============================================================================
# DOMAIN EXCEPTIONS
# ============================================================================

class ParkGateError(Exception):
    """Base exception for all engine errors"""
    pass


class InvalidTransition(ParkGateError):
    """A transition was requested that the session state does not allow"""

    def __init__(self, session_id: str, current: 'SessionStatus', target: str):
        self.session_id = session_id
        self.current = current
        self.target = target
        super().__init__(
            f"Session {session_id} cannot move from {current.value} to {target}"
        )


class RuleConflict(ParkGateError):
    """Discount request violates stacking or apply-count rules"""
    pass


class RateRuleInvalid(ParkGateError):
    """Rate plan rules are missing fields or carry negative values"""
    pass


class SessionNotFound(ParkGateError):
    """No session with the given id (or no open session for the plate)"""
    pass


class RatePlanNotFound(ParkGateError):
    """No rate plan by id, or no active plan for the site"""
    pass


class DiscountRuleNotFound(ParkGateError):
    """Unknown or disabled discount rule"""
    pass


class PaymentAmountMismatch(ParkGateError):
    """Confirmed amount does not cover the final fee"""
    pass


class DuplicateActiveSession(ParkGateError):
    """The store already holds an open session for (site, plate)"""

    def __init__(self, site_id: str, plate_no: str, existing_id: Optional[str] = None):
        self.site_id = site_id
        self.plate_no = plate_no
        self.existing_id = existing_id
        super().__init__(f"Plate {plate_no} already has an open session at site {site_id}")


class ConcurrentModification(ParkGateError):
    """Optimistic write kept losing to concurrent writers"""
    pass


class BarrierCommandFailed(ParkGateError):
    """Barrier driver reported a failure or timed out"""

    def __init__(self, command_id: str, detail: str):
        self.command_id = command_id
        self.detail = detail
        super().__init__(f"Barrier command {command_id} failed: {detail}")


# ============================================================================
# VALUE OBJECTS
# ============================================================================

_PLATE_STRIP = re.compile(r'[^0-9A-Z가-힣]')


@dataclass(frozen=True)
class LicensePlate:
    """
    Value Object: normalized plate number

    Whitespace and punctuation are dropped and latin letters upper-cased,
    so '12가 3456', '12가-3456' and ' 12가3456 ' compare equal.
    """
    value: str

    def __post_init__(self):
        if self.value is None:
            raise ValueError("License plate cannot be empty")
        normalized = _PLATE_STRIP.sub('', self.value.strip().upper())
        if not normalized:
            raise ValueError(f"License plate has no usable characters: {self.value!r}")
        object.__setattr__(self, 'value', normalized)

    def __str__(self) -> str:
        return self.value


def normalize_plate(raw: str) -> str:
    """Shorthand for LicensePlate(raw).value"""
    return LicensePlate(raw).value


_FEE_FIELDS = ('base_minutes', 'base_fee', 'additional_minutes', 'additional_fee', 'daily_max')
# Master switch first; each profile is ignored unless its own flag is set too
_BAND_FLAGS = ('time_based_enabled', 'night_rate_enabled', 'weekend_rate_enabled', 'weekend_night_rate_enabled')


def _require_int(data: Dict[str, Any], key: str, context: str) -> int:
    if key not in data or data[key] is None:
        raise RateRuleInvalid(f"{context}: missing field '{key}'")
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise RateRuleInvalid(f"{context}: field '{key}' must be an integer, got {value!r}")
    if value < 0:
        raise RateRuleInvalid(f"{context}: field '{key}' must not be negative, got {value}")
    return value


def _parse_hhmm(value: Optional[str], key: str) -> Optional[time]:
    if value is None:
        return None
    match = re.match(r'^(\d{1,2}):(\d{2})$', str(value))
    if not match or int(match.group(1)) > 23 or int(match.group(2)) > 59:
        raise RateRuleInvalid(f"rate rules: '{key}' must be HH:MM, got {value!r}")
    return time(int(match.group(1)), int(match.group(2)))


@dataclass(frozen=True)
class TimeBasedRate:
    """Value Object: fee profile used for night / weekend entries"""
    base_minutes: int
    base_fee: int
    additional_minutes: int
    additional_fee: int
    daily_max: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any], context: str) -> 'TimeBasedRate':
        if not isinstance(data, dict):
            raise RateRuleInvalid(f"{context}: expected a mapping")
        return cls(**{key: _require_int(data, key, context) for key in _FEE_FIELDS})


@dataclass(frozen=True)
class RateRules:
    """
    Value Object: validated pricing rules of a rate plan

    Sessions keep the raw mapping they were priced with; this type is
    built from that mapping each time a fee is computed, so malformed
    rules surface as RateRuleInvalid at pricing time.
    """
    free_minutes: int
    base_minutes: int
    base_fee: int
    additional_minutes: int
    additional_fee: int
    daily_max: int
    grace_minutes: int = 0
    time_based_enabled: bool = False
    night_rate_enabled: bool = False
    night_start: Optional[time] = None
    night_end: Optional[time] = None
    night_rate: Optional[TimeBasedRate] = None
    weekend_rate_enabled: bool = False
    weekend_rate: Optional[TimeBasedRate] = None
    weekend_night_rate_enabled: bool = False
    weekend_night_rate: Optional[TimeBasedRate] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RateRules':
        if not isinstance(data, dict):
            raise RateRuleInvalid("rate rules: expected a mapping")

        values = {key: _require_int(data, key, "rate rules") for key in ('free_minutes',) + _FEE_FIELDS}
        values['grace_minutes'] = _require_int(
            {'grace_minutes': data.get('grace_minutes', 0)}, 'grace_minutes', "rate rules"
        )

        for flag in _BAND_FLAGS:
            values[flag] = bool(data.get(flag, False))
        values['night_start'] = _parse_hhmm(data.get('night_start'), 'night_start')
        values['night_end'] = _parse_hhmm(data.get('night_end'), 'night_end')
        for key in ('night_rate', 'weekend_rate', 'weekend_night_rate'):
            profile = data.get(key)
            values[key] = TimeBasedRate.from_dict(profile, key) if profile is not None else None

        return cls(**values)

    def with_extra_free_minutes(self, minutes: int) -> 'RateRules':
        """Copy of these rules with free_minutes raised by `minutes`"""
        return replace(self, free_minutes=self.free_minutes + max(0, minutes))

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'free_minutes': self.free_minutes,
            'base_minutes': self.base_minutes,
            'base_fee': self.base_fee,
            'additional_minutes': self.additional_minutes,
            'additional_fee': self.additional_fee,
            'daily_max': self.daily_max,
            'grace_minutes': self.grace_minutes,
        }
        data.update({flag: getattr(self, flag) for flag in _BAND_FLAGS})
        if self.night_start is not None:
            data['night_start'] = self.night_start.strftime('%H:%M')
        if self.night_end is not None:
            data['night_end'] = self.night_end.strftime('%H:%M')
        for key in ('night_rate', 'weekend_rate', 'weekend_night_rate'):
            profile = getattr(self, key)
            if profile is not None:
                data[key] = asdict(profile)
        return data


DEFAULT_RATE_RULES: Dict[str, Any] = {
    'free_minutes': 30,
    'base_minutes': 30,
    'base_fee': 1000,
    'additional_minutes': 10,
    'additional_fee': 500,
    'daily_max': 15000,
    'grace_minutes': 15,
}


# ============================================================================
# ENUMS FOR DOMAIN TYPES
# ============================================================================

class SessionStatus(Enum):
    """Lifecycle states of a parking session"""
    PARKING = "PARKING"
    EXIT_PENDING = "EXIT_PENDING"
    PAID = "PAID"
    CLOSED = "CLOSED"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.CLOSED, SessionStatus.ERROR)

    @property
    def is_open(self) -> bool:
        """Open sessions count against the one-per-plate rule"""
        return self in (SessionStatus.PARKING, SessionStatus.EXIT_PENDING)


OPEN_STATUSES = (SessionStatus.PARKING.value, SessionStatus.EXIT_PENDING.value)


class PaymentStatus(Enum):
    NONE = "NONE"
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class CloseReason(Enum):
    """Why a session closed without a normal paid exit"""
    EXEMPT_EXIT = "EXEMPT_EXIT"
    FREE_EXIT = "FREE_EXIT"
    FORCE_CLOSE = "FORCE_CLOSE"


class ExemptionKind(Enum):
    VIP = "VIP"
    MEMBERSHIP = "MEMBERSHIP"


class Eligibility(Enum):
    """Result of an eligibility lookup; BLOCKED outranks EXEMPT"""
    BLOCKED = "BLOCKED"
    EXEMPT = "EXEMPT"
    NORMAL = "NORMAL"


class DiscountType(Enum):
    AMOUNT = "AMOUNT"
    PERCENT = "PERCENT"
    FREE_MINUTES = "FREE_MINUTES"
    FREE_ALL = "FREE_ALL"


class BarrierAction(Enum):
    OPEN = "OPEN"
    CLOSE = "CLOSE"


class BarrierReason(Enum):
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    MEMBERSHIP_VALID = "MEMBERSHIP_VALID"
    FREE_EXIT = "FREE_EXIT"
    FORCE_CLOSE = "FORCE_CLOSE"
    MANUAL_OPEN = "MANUAL_OPEN"
    EMERGENCY = "EMERGENCY"


class CommandStatus(Enum):
    PENDING = "PENDING"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"


class AuditAction(Enum):
    SESSION_RECALC = "SESSION_RECALC"
    SESSION_FORCE_CLOSE = "SESSION_FORCE_CLOSE"
    SESSION_CORRECT = "SESSION_CORRECT"
    SESSION_ERROR = "SESSION_ERROR"
    DISCOUNT_APPLY = "DISCOUNT_APPLY"
    EMERGENCY_OPEN_ALL = "EMERGENCY_OPEN_ALL"


# ============================================================================
# ENTITIES
# ============================================================================

class Entity:
    """
    Base class for domain entities
    Identity is a string id, generated when not supplied
    """

    def __init__(self, id: Optional[str] = None):
        self._id = id or str(uuid.uuid4())

    @property
    def id(self) -> str:
        return self._id

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Entity):
            return False
        return self.id == other.id and type(self) == type(other)

    def __hash__(self) -> int:
        return hash((self.id, type(self).__name__))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id})"


@dataclass
class RatePlan:
    """A site's pricing plan; `rules` is the raw mapping read by RateRules.from_dict"""
    id: str
    site_id: str
    name: str
    rules: Dict[str, Any]
    is_active: bool = False


@dataclass
class DiscountRule:
    """Configured discount; `max_apply_count` of None means unlimited"""
    id: str
    name: str
    discount_type: DiscountType
    value: int
    is_stackable: bool = True
    max_apply_count: Optional[int] = None
    is_enabled: bool = True

    def __post_init__(self):
        if self.value < 0:
            raise ValueError(f"Discount value cannot be negative: {self.value}")
        if self.max_apply_count is not None and self.max_apply_count < 1:
            raise ValueError("max_apply_count must be at least 1 when set")


@dataclass(frozen=True)
class DiscountRequest:
    """
    Tagged request handed to the discount engine.

    `discount_type` selects the interpretation of `value`; the remaining
    fields identify the rule for ledger and stacking purposes.
    """
    rule_id: str
    rule_name: str
    discount_type: DiscountType
    value: int
    is_stackable: bool = True
    max_apply_count: Optional[int] = None
    reason: Optional[str] = None
    applied_by: Optional[str] = None
    value_override: Optional[int] = None

    @classmethod
    def from_rule(
        cls,
        rule: DiscountRule,
        reason: Optional[str] = None,
        applied_by: Optional[str] = None,
        value_override: Optional[int] = None
    ) -> 'DiscountRequest':
        if value_override is not None and value_override < 0:
            raise ValueError(f"Discount override cannot be negative: {value_override}")
        return cls(
            rule_id=rule.id,
            rule_name=rule.name,
            discount_type=rule.discount_type,
            value=rule.value if value_override is None else value_override,
            is_stackable=rule.is_stackable,
            max_apply_count=rule.max_apply_count,
            reason=reason,
            applied_by=applied_by,
            value_override=value_override,
        )


@dataclass(frozen=True)
class DiscountApplication:
    """One append-only ledger line: a rule applied to a session"""
    session_id: str
    rule_id: str
    rule_name: str
    discount_type: DiscountType
    rule_value: int
    is_stackable: bool
    applied_value: int
    value_override: Optional[int] = None
    reason: Optional[str] = None
    applied_by: Optional[str] = None
    applied_at: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def as_request(self) -> DiscountRequest:
        """Replay this line as an engine request (for re-pricing)"""
        return DiscountRequest(
            rule_id=self.rule_id,
            rule_name=self.rule_name,
            discount_type=self.discount_type,
            value=self.rule_value if self.value_override is None else self.value_override,
            is_stackable=self.is_stackable,
            reason=self.reason,
            applied_by=self.applied_by,
            value_override=self.value_override,
        )


@dataclass(frozen=True)
class Membership:
    """Monthly pass; valid inclusively between valid_from and valid_to"""
    plate_no: str
    site_id: str
    valid_from: datetime
    valid_to: datetime
    member_name: Optional[str] = None

    def is_valid_at(self, at: datetime) -> bool:
        return self.valid_from <= at <= self.valid_to


@dataclass(frozen=True)
class VipEntry:
    plate_no: str
    site_id: str
    is_active: bool = True
    name: Optional[str] = None


@dataclass(frozen=True)
class BlacklistEntry:
    """Active entry blocks entry; `blocked_until` of None means indefinite"""
    plate_no: str
    site_id: str
    reason: str = ""
    is_active: bool = True
    blocked_until: Optional[datetime] = None

    def is_blocking_at(self, at: datetime) -> bool:
        if not self.is_active:
            return False
        return self.blocked_until is None or at < self.blocked_until


@dataclass
class BarrierCommand:
    """Ledger row for one barrier instruction; status moves PENDING -> EXECUTED | FAILED"""
    lane_id: str
    device_id: Optional[str]
    action: BarrierAction
    reason: BarrierReason
    correlation_id: str
    status: CommandStatus = CommandStatus.PENDING
    detail: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    executed_at: Optional[datetime] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass(frozen=True)
class AuditEntry:
    action: AuditAction
    entity_type: str
    entity_id: str
    detail: Dict[str, Any] = field(default_factory=dict)
    actor: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass(frozen=True)
class FeeBreakdown:
    """How a raw fee was reached; attached to sessions for receipts and audits"""
    parking_minutes: int
    free_minutes_applied: int
    chargeable_minutes: int
    base_minutes: int
    base_fee: int
    additional_minutes: int
    additional_fee: int
    subtotal: int
    daily_max_applied: bool
    daily_max_cap: int
    raw_fee: int
    applied_rate_type: str = "default"
    rate_plan_id: Optional[str] = None
    rate_plan_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ============================================================================
# DOMAIN EVENTS
# ============================================================================

class DomainEvent(ABC):
    """
    Base class for all domain events
    Events represent something that happened to a session or a barrier
    """

    event_type = "domain.event"

    def __init__(self, occurred_at: Optional[datetime] = None):
        self.event_id = str(uuid.uuid4())
        self.timestamp = occurred_at or datetime.now()
        self.version = "1.0"

    @abstractmethod
    def payload(self) -> Dict[str, Any]:
        """Event-specific data"""
        pass

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "event_id": self.event_id,
            "timestamp": self.timestamp.isoformat(),
            "version": self.version,
            "data": self.payload(),
        }

    def __str__(self) -> str:
        return f"{self.__class__.__name__} at {self.timestamp}"


class SessionOpened(DomainEvent):
    """Raised when an entry creates a session"""

    event_type = "session.opened"

    def __init__(self, session_id: str, site_id: str, plate_no: str, lane_id: str,
                 entry_at: datetime, exempt_kind: Optional[ExemptionKind] = None):
        super().__init__(entry_at)
        self.session_id = session_id
        self.site_id = site_id
        self.plate_no = plate_no
        self.lane_id = lane_id
        self.entry_at = entry_at
        self.exempt_kind = exempt_kind

    def payload(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "site_id": self.site_id,
            "plate_no": self.plate_no,
            "lane_id": self.lane_id,
            "entry_at": self.entry_at.isoformat(),
            "exempt": self.exempt_kind.value if self.exempt_kind else None,
        }


class EntryRejected(DomainEvent):
    event_type = "session.entry_rejected"

    def __init__(self, site_id: str, plate_no: str, lane_id: str, reason: str, at: datetime):
        super().__init__(at)
        self.site_id = site_id
        self.plate_no = plate_no
        self.lane_id = lane_id
        self.reason = reason

    def payload(self) -> Dict[str, Any]:
        return {
            "site_id": self.site_id,
            "plate_no": self.plate_no,
            "lane_id": self.lane_id,
            "reason": self.reason,
        }


class SessionExitPending(DomainEvent):
    """Raised when an exit leaves a fee to be paid"""

    event_type = "session.exit_pending"

    def __init__(self, session_id: str, plate_no: str, final_fee: int, at: datetime):
        super().__init__(at)
        self.session_id = session_id
        self.plate_no = plate_no
        self.final_fee = final_fee

    def payload(self) -> Dict[str, Any]:
        return {"session_id": self.session_id, "plate_no": self.plate_no, "final_fee": self.final_fee}


class PaymentSettled(DomainEvent):
    event_type = "payment.settled"

    def __init__(self, session_id: str, amount: int, at: datetime):
        super().__init__(at)
        self.session_id = session_id
        self.amount = amount

    def payload(self) -> Dict[str, Any]:
        return {"session_id": self.session_id, "amount": self.amount}


class SessionClosed(DomainEvent):
    event_type = "session.closed"

    def __init__(self, session_id: str, plate_no: str, final_fee: int,
                 close_reason: Optional[CloseReason], at: datetime):
        super().__init__(at)
        self.session_id = session_id
        self.plate_no = plate_no
        self.final_fee = final_fee
        self.close_reason = close_reason

    def payload(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "plate_no": self.plate_no,
            "final_fee": self.final_fee,
            "close_reason": self.close_reason.value if self.close_reason else None,
        }


class SessionFailed(DomainEvent):
    """Raised when a session is parked in ERROR"""

    event_type = "session.failed"

    def __init__(self, session_id: str, detail: str, at: datetime):
        super().__init__(at)
        self.session_id = session_id
        self.detail = detail

    def payload(self) -> Dict[str, Any]:
        return {"session_id": self.session_id, "detail": self.detail}


class DiscountApplied(DomainEvent):
    event_type = "session.discount_applied"

    def __init__(self, session_id: str, rule_id: str, applied_value: int, discount_total: int, at: datetime):
        super().__init__(at)
        self.session_id = session_id
        self.rule_id = rule_id
        self.applied_value = applied_value
        self.discount_total = discount_total

    def payload(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "rule_id": self.rule_id,
            "applied_value": self.applied_value,
            "discount_total": self.discount_total,
        }


class SessionRecalculated(DomainEvent):
    event_type = "session.recalculated"

    def __init__(self, session_id: str, raw_fee: int, discount_total: int, final_fee: int,
                 reason: str, at: datetime):
        super().__init__(at)
        self.session_id = session_id
        self.raw_fee = raw_fee
        self.discount_total = discount_total
        self.final_fee = final_fee
        self.reason = reason

    def payload(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "raw_fee": self.raw_fee,
            "discount_total": self.discount_total,
            "final_fee": self.final_fee,
            "reason": self.reason,
        }


class BarrierCommandResult(DomainEvent):
    """Raised once a barrier command settles as EXECUTED or FAILED"""

    event_type = "barrier.command_result"

    def __init__(self, command: BarrierCommand):
        super().__init__(command.executed_at)
        self.command_id = command.id
        self.lane_id = command.lane_id
        self.device_id = command.device_id
        self.action = command.action
        self.reason = command.reason
        self.correlation_id = command.correlation_id
        self.status = command.status
        self.detail = command.detail

    def payload(self) -> Dict[str, Any]:
        return {
            "command_id": self.command_id,
            "lane_id": self.lane_id,
            "device_id": self.device_id,
            "action": self.action.value,
            "reason": self.reason.value,
            "correlation_id": self.correlation_id,
            "status": self.status.value,
            "detail": self.detail,
        }
