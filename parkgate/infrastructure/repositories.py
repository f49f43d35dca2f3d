# File: parkgate/infrastructure/repositories.py
"""
Repository Pattern Implementation for the ParkGate session engine

Repositories give the application layer a collection-like interface to
sessions, barrier commands, audit entries and the read-only reference
data (rate plans, discount rules, eligibility lists).

Key Guarantees:
- Every session transition goes through `SessionRepository.mutate`, an
  atomic read-modify-write keyed by session id. A mutation that raises
  leaves the stored session untouched.
- At most one open (PARKING / EXIT_PENDING) session exists per
  (site, plate). The in-memory store checks an index under its store
  lock; the SQL store relies on a partial unique index.
- Discount ledger lines and barrier/audit rows are append-only.

Storage Implementations:
- InMemory* - for tests and the demo wiring
- SQLAlchemy* - relational storage (SQLite, PostgreSQL)
"""

from abc import ABC, abstractmethod
from typing import (
    TypeVar, Generic, Optional, List, Dict, Any, Callable, Tuple
)
from dataclasses import replace
from datetime import datetime
from contextlib import contextmanager
import copy
import logging
import threading

from sqlalchemy import (
    create_engine, Column, Integer, String, Boolean, Text, JSON,
    ForeignKey, Index, TypeDecorator, update, text
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session, relationship
from sqlalchemy.exc import SQLAlchemyError, IntegrityError

from ..domain.models import (
    RatePlan, DiscountRule, DiscountType, DiscountApplication,
    Membership, VipEntry, BlacklistEntry, BarrierCommand, BarrierAction,
    BarrierReason, CommandStatus, AuditEntry, AuditAction,
    SessionStatus, PaymentStatus, CloseReason, ExemptionKind,
    SessionNotFound, RatePlanNotFound, DiscountRuleNotFound,
    DuplicateActiveSession, ConcurrentModification, OPEN_STATUSES,
    normalize_plate
)
from ..domain.aggregates import ParkingSession

T = TypeVar('T')
ID = TypeVar('ID')

SessionMutation = Callable[[ParkingSession], Any]


# ============================================================================
# REPOSITORY INTERFACES
# ============================================================================

class Repository(ABC, Generic[T, ID]):
    """Base repository interface"""

    @abstractmethod
    def add(self, entity: T) -> T:
        pass

    @abstractmethod
    def get(self, id: ID) -> Optional[T]:
        pass


class SessionRepository(Repository[ParkingSession, str]):
    """Owns session records and the one-open-session-per-plate rule"""

    @abstractmethod
    def add(self, session: ParkingSession) -> ParkingSession:
        """Insert a new session; raises DuplicateActiveSession"""
        pass

    @abstractmethod
    def find_active_by_plate(self, site_id: str, plate_no: str) -> Optional[ParkingSession]:
        pass

    @abstractmethod
    def mutate(self, session_id: str, mutation: SessionMutation) -> ParkingSession:
        """
        Atomically load, change and store one session.
        Returns the committed session with its pending domain events.
        """
        pass

    @abstractmethod
    def list_sessions(self, site_id: Optional[str] = None,
                      status: Optional[SessionStatus] = None,
                      limit: int = 100) -> List[ParkingSession]:
        pass

    def require(self, session_id: str) -> ParkingSession:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        return session


class BarrierCommandRepository(Repository[BarrierCommand, str]):
    """Append-only barrier command ledger"""

    @abstractmethod
    def update(self, command: BarrierCommand) -> BarrierCommand:
        """Record the outcome of a PENDING command"""
        pass

    @abstractmethod
    def find_by_key(self, correlation_id: str, action: BarrierAction,
                    since: datetime) -> Optional[BarrierCommand]:
        """Most recent command for (correlation id, action) created at or after `since`"""
        pass

    @abstractmethod
    def claim(self, command: BarrierCommand, since: datetime) -> Tuple[BarrierCommand, bool]:
        """
        Atomically store `command` unless its (correlation id, action) key
        is held by a non-FAILED command created at or after `since`.
        Returns (stored command, True) or (holder, False).
        """
        pass

    @abstractmethod
    def list_recent(self, limit: int = 50) -> List[BarrierCommand]:
        pass


class AuditLogRepository(Repository[AuditEntry, str]):

    @abstractmethod
    def list_for(self, entity_id: str) -> List[AuditEntry]:
        pass


class RatePlanCatalog(ABC):
    """Read side of rate plan administration"""

    @abstractmethod
    def get_active_rate_plan(self, site_id: str) -> RatePlan:
        """Raises RatePlanNotFound when the site has no active plan"""
        pass

    @abstractmethod
    def get_rate_plan(self, rate_plan_id: str) -> RatePlan:
        pass


class DiscountRuleCatalog(ABC):

    @abstractmethod
    def get_rule(self, rule_id: str) -> DiscountRule:
        """Raises DiscountRuleNotFound for unknown or disabled rules"""
        pass


# ============================================================================
# IN-MEMORY REPOSITORIES (For Testing)
# ============================================================================

class InMemoryRepository(Repository[T, str]):
    """Dict-backed repository guarded by a single lock"""

    def __init__(self):
        self._storage: Dict[str, T] = {}
        self._lock = threading.RLock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def add(self, entity: T) -> T:
        with self._lock:
            self._storage[entity.id] = copy.deepcopy(entity)
        self._logger.debug(f"Added entity {entity.id}")
        return entity

    def get(self, id: str) -> Optional[T]:
        with self._lock:
            entity = self._storage.get(id)
            return copy.deepcopy(entity) if entity is not None else None

    def count(self) -> int:
        return len(self._storage)


class InMemorySessionRepository(SessionRepository):
    """
    Serializes mutations per session id. The mutation runs on a deep copy
    that replaces the stored record only once it returns cleanly.
    """

    def __init__(self):
        self._sessions: Dict[str, ParkingSession] = {}
        self._open_index: Dict[Tuple[str, str], str] = {}
        self._session_locks: Dict[str, threading.Lock] = {}
        self._store_lock = threading.RLock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def _lock_for(self, session_id: str) -> threading.Lock:
        """Locks exist only for stored sessions"""
        with self._store_lock:
            if session_id not in self._sessions:
                raise SessionNotFound(f"Session {session_id} not found")
            return self._session_locks.setdefault(session_id, threading.Lock())

    def _commit(self, working: ParkingSession, previous_key: Optional[Tuple[str, str]]) -> None:
        with self._store_lock:
            key = (working.site_id, working.plate_no)
            if working.is_open:
                holder = self._open_index.get(key)
                if holder is not None and holder != working.id:
                    raise DuplicateActiveSession(working.site_id, working.plate_no, holder)
            if previous_key is not None and self._open_index.get(previous_key) == working.id:
                del self._open_index[previous_key]
            if working.is_open:
                self._open_index[key] = working.id

            working._increment_version()
            stored = copy.deepcopy(working)
            stored.clear_events()
            self._sessions[working.id] = stored

    def add(self, session: ParkingSession) -> ParkingSession:
        with self._store_lock:
            if session.id in self._sessions:
                raise ValueError(f"Session {session.id} already stored")
            key = (session.site_id, session.plate_no)
            holder = self._open_index.get(key)
            if session.is_open and holder is not None:
                raise DuplicateActiveSession(session.site_id, session.plate_no, holder)
            stored = copy.deepcopy(session)
            stored.clear_events()
            self._sessions[session.id] = stored
            if session.is_open:
                self._open_index[key] = session.id
        self._logger.debug(f"Stored session {session.id} for {session.plate_no}")
        return session

    def get(self, id: str) -> Optional[ParkingSession]:
        with self._store_lock:
            session = self._sessions.get(id)
            return copy.deepcopy(session) if session is not None else None

    def find_active_by_plate(self, site_id: str, plate_no: str) -> Optional[ParkingSession]:
        with self._store_lock:
            session_id = self._open_index.get((site_id, normalize_plate(plate_no)))
            return self.get(session_id) if session_id else None

    def mutate(self, session_id: str, mutation: SessionMutation) -> ParkingSession:
        with self._lock_for(session_id):
            with self._store_lock:
                current = self._sessions.get(session_id)
                if current is None:
                    raise SessionNotFound(f"Session {session_id} not found")
                working = copy.deepcopy(current)
            previous_key = (current.site_id, current.plate_no) if current.is_open else None

            mutation(working)
            self._commit(working, previous_key)
            return working

    def list_sessions(self, site_id: Optional[str] = None,
                      status: Optional[SessionStatus] = None,
                      limit: int = 100) -> List[ParkingSession]:
        with self._store_lock:
            sessions = [
                s for s in self._sessions.values()
                if (site_id is None or s.site_id == site_id)
                and (status is None or s.status == status)
            ]
        sessions.sort(key=lambda s: s.entry_at, reverse=True)
        return [copy.deepcopy(s) for s in sessions[:limit]]


class InMemoryBarrierCommandRepository(InMemoryRepository[BarrierCommand], BarrierCommandRepository):

    def update(self, command: BarrierCommand) -> BarrierCommand:
        with self._lock:
            if command.id not in self._storage:
                raise KeyError(f"Barrier command {command.id} not found")
            self._storage[command.id] = copy.deepcopy(command)
        return command

    def find_by_key(self, correlation_id: str, action: BarrierAction,
                    since: datetime) -> Optional[BarrierCommand]:
        with self._lock:
            matches = [
                c for c in self._storage.values()
                if c.correlation_id == correlation_id and c.action == action and c.created_at >= since
            ]
        if not matches:
            return None
        return copy.deepcopy(max(matches, key=lambda c: c.created_at))

    def claim(self, command: BarrierCommand, since: datetime) -> Tuple[BarrierCommand, bool]:
        with self._lock:
            holder = self.find_by_key(command.correlation_id, command.action, since)
            if holder is not None and holder.status != CommandStatus.FAILED:
                return holder, False
            self.add(command)
        return command, True

    def list_recent(self, limit: int = 50) -> List[BarrierCommand]:
        with self._lock:
            commands = sorted(self._storage.values(), key=lambda c: c.created_at, reverse=True)
        return [copy.deepcopy(c) for c in commands[:limit]]


class InMemoryAuditLogRepository(InMemoryRepository[AuditEntry], AuditLogRepository):

    def list_for(self, entity_id: str) -> List[AuditEntry]:
        with self._lock:
            entries = [e for e in self._storage.values() if e.entity_id == entity_id]
        return sorted(entries, key=lambda e: e.created_at)


class InMemoryRatePlanCatalog(RatePlanCatalog):

    def __init__(self):
        self._plans: Dict[str, RatePlan] = {}
        self._lock = threading.Lock()

    def save(self, plan: RatePlan) -> RatePlan:
        with self._lock:
            self._plans[plan.id] = plan
        if plan.is_active:
            self.activate(plan.id)
        return plan

    def activate(self, rate_plan_id: str) -> None:
        """Make one plan the site's only active plan"""
        with self._lock:
            target = self._plans.get(rate_plan_id)
            if target is None:
                raise RatePlanNotFound(f"Rate plan {rate_plan_id} not found")
            for plan in self._plans.values():
                if plan.site_id == target.site_id:
                    plan.is_active = plan.id == rate_plan_id

    def get_active_rate_plan(self, site_id: str) -> RatePlan:
        with self._lock:
            for plan in self._plans.values():
                if plan.site_id == site_id and plan.is_active:
                    return plan
        raise RatePlanNotFound(f"No active rate plan for site {site_id}")

    def get_rate_plan(self, rate_plan_id: str) -> RatePlan:
        with self._lock:
            plan = self._plans.get(rate_plan_id)
        if plan is None:
            raise RatePlanNotFound(f"Rate plan {rate_plan_id} not found")
        return plan


class InMemoryDiscountRuleCatalog(DiscountRuleCatalog):

    def __init__(self):
        self._rules: Dict[str, DiscountRule] = {}

    def save(self, rule: DiscountRule) -> DiscountRule:
        self._rules[rule.id] = rule
        return rule

    def get_rule(self, rule_id: str) -> DiscountRule:
        rule = self._rules.get(rule_id)
        if rule is None or not rule.is_enabled:
            raise DiscountRuleNotFound(f"Discount rule {rule_id} not found or disabled")
        return rule


class InMemoryEligibilityDirectory:
    """Blacklist, VIP and membership lists kept in plain lists"""

    def __init__(self):
        self.blacklist: List[BlacklistEntry] = []
        self.vips: List[VipEntry] = []
        self.memberships: List[Membership] = []

    def add_blacklist(self, entry: BlacklistEntry) -> None:
        self.blacklist.append(replace(entry, plate_no=normalize_plate(entry.plate_no)))

    def add_vip(self, entry: VipEntry) -> None:
        self.vips.append(replace(entry, plate_no=normalize_plate(entry.plate_no)))

    def add_membership(self, entry: Membership) -> None:
        self.memberships.append(replace(entry, plate_no=normalize_plate(entry.plate_no)))

    def is_blacklisted(self, site_id: str, plate_no: str, at: datetime) -> bool:
        return any(
            e.site_id == site_id and e.plate_no == plate_no and e.is_blocking_at(at)
            for e in self.blacklist
        )

    def is_vip(self, site_id: str, plate_no: str, at: datetime) -> bool:
        return any(e.site_id == site_id and e.plate_no == plate_no and e.is_active for e in self.vips)

    def is_member_active(self, site_id: str, plate_no: str, at: datetime) -> bool:
        return any(
            m.site_id == site_id and m.plate_no == plate_no and m.is_valid_at(at)
            for m in self.memberships
        )


# ============================================================================
# SQLALCHEMY ORM MODELS
# ============================================================================

Base = declarative_base()


class IsoDateTime(TypeDecorator):
    """
    Stores datetimes as ISO-8601 text so tz-aware values survive SQLite.
    Fixed microsecond width keeps text order equal to time order for
    values in the same zone.
    """

    impl = String(40)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return value.isoformat(timespec='microseconds') if value is not None else None

    def process_result_value(self, value, dialect):
        return datetime.fromisoformat(value) if value is not None else None


_OPEN_STATUS_SQL = "status IN ('PARKING', 'EXIT_PENDING')"


class SessionModel(Base):
    """SQLAlchemy model for ParkingSession"""
    __tablename__ = 'parking_sessions'

    id = Column(String(36), primary_key=True)
    site_id = Column(String(64), nullable=False, index=True)
    plate_no = Column(String(20), nullable=False, index=True)
    status = Column(String(20), nullable=False, index=True)
    entry_lane_id = Column(String(64), nullable=False)
    exit_lane_id = Column(String(64))
    entry_at = Column(IsoDateTime, nullable=False)
    exit_at = Column(IsoDateTime)
    rate_plan_id = Column(String(64), nullable=False)
    rate_plan_name = Column(String(100))
    rate_rules = Column(JSON, nullable=False)
    raw_fee = Column(Integer, nullable=False, default=0)
    discount_total = Column(Integer, nullable=False, default=0)
    final_fee = Column(Integer, nullable=False, default=0)
    fee_breakdown = Column(JSON)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.NONE.value)
    paid_amount = Column(Integer)
    paid_at = Column(IsoDateTime)
    exempt_kind = Column(String(20))
    close_reason = Column(String(20))
    close_note = Column(Text)
    closed_at = Column(IsoDateTime)
    error_detail = Column(Text)
    version = Column(Integer, nullable=False, default=1)

    discounts = relationship(
        'DiscountApplicationModel',
        order_by='DiscountApplicationModel.seq',
        lazy='selectin'
    )

    __table_args__ = (
        Index(
            'uq_parking_sessions_open_plate', 'site_id', 'plate_no',
            unique=True,
            sqlite_where=text(_OPEN_STATUS_SQL),
            postgresql_where=text(_OPEN_STATUS_SQL),
        ),
    )


class DiscountApplicationModel(Base):
    """Insert-only ledger rows"""
    __tablename__ = 'session_discounts'

    id = Column(String(36), primary_key=True)
    session_id = Column(String(36), ForeignKey('parking_sessions.id'), nullable=False, index=True)
    seq = Column(Integer, nullable=False)
    rule_id = Column(String(64), nullable=False)
    rule_name = Column(String(100), nullable=False)
    discount_type = Column(String(20), nullable=False)
    rule_value = Column(Integer, nullable=False)
    is_stackable = Column(Boolean, nullable=False)
    applied_value = Column(Integer, nullable=False)
    value_override = Column(Integer)
    reason = Column(Text)
    applied_by = Column(String(64))
    applied_at = Column(IsoDateTime, nullable=False)


class BarrierCommandModel(Base):
    __tablename__ = 'barrier_commands'

    id = Column(String(36), primary_key=True)
    lane_id = Column(String(64), nullable=False)
    device_id = Column(String(64))
    action = Column(String(10), nullable=False)
    reason = Column(String(30), nullable=False)
    correlation_id = Column(String(100), nullable=False)
    status = Column(String(10), nullable=False)
    detail = Column(Text)
    created_at = Column(IsoDateTime, nullable=False, index=True)
    executed_at = Column(IsoDateTime)

    __table_args__ = (
        Index('ix_barrier_commands_key', 'correlation_id', 'action', 'created_at'),
    )


class BarrierCommandKeyModel(Base):
    """One row per (correlation id, action): the command currently holding that key"""
    __tablename__ = 'barrier_command_keys'

    correlation_id = Column(String(100), primary_key=True)
    action = Column(String(10), primary_key=True)
    command_id = Column(String(36), ForeignKey('barrier_commands.id'), nullable=False)


class AuditLogModel(Base):
    __tablename__ = 'audit_logs'

    id = Column(String(36), primary_key=True)
    action = Column(String(40), nullable=False)
    entity_type = Column(String(40), nullable=False)
    entity_id = Column(String(100), nullable=False, index=True)
    actor = Column(String(64))
    detail = Column(JSON)
    created_at = Column(IsoDateTime, nullable=False)


class RatePlanModel(Base):
    __tablename__ = 'rate_plans'

    id = Column(String(64), primary_key=True)
    site_id = Column(String(64), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    rules = Column(JSON, nullable=False)
    is_active = Column(Boolean, nullable=False, default=False)


class DiscountRuleModel(Base):
    __tablename__ = 'discount_rules'

    id = Column(String(64), primary_key=True)
    name = Column(String(100), nullable=False)
    discount_type = Column(String(20), nullable=False)
    value = Column(Integer, nullable=False)
    is_stackable = Column(Boolean, nullable=False, default=True)
    max_apply_count = Column(Integer)
    is_enabled = Column(Boolean, nullable=False, default=True)


class BlacklistModel(Base):
    __tablename__ = 'blacklist'

    id = Column(Integer, primary_key=True, autoincrement=True)
    site_id = Column(String(64), nullable=False)
    plate_no = Column(String(20), nullable=False, index=True)
    reason = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True)
    blocked_until = Column(IsoDateTime)


class VipModel(Base):
    __tablename__ = 'vip_whitelist'

    id = Column(Integer, primary_key=True, autoincrement=True)
    site_id = Column(String(64), nullable=False)
    plate_no = Column(String(20), nullable=False, index=True)
    name = Column(String(100))
    is_active = Column(Boolean, nullable=False, default=True)


class MembershipModel(Base):
    __tablename__ = 'memberships'

    id = Column(Integer, primary_key=True, autoincrement=True)
    site_id = Column(String(64), nullable=False)
    plate_no = Column(String(20), nullable=False, index=True)
    member_name = Column(String(100))
    valid_from = Column(IsoDateTime, nullable=False)
    valid_to = Column(IsoDateTime, nullable=False)


# ============================================================================
# DOMAIN <-> ORM MAPPERS
# ============================================================================

class Mapper:
    """Maps between domain objects and ORM rows"""

    @staticmethod
    def session_values(session: ParkingSession) -> Dict[str, Any]:
        """Column values of a session, excluding id and version"""
        return {
            "site_id": session.site_id,
            "plate_no": session.plate_no,
            "status": session.status.value,
            "entry_lane_id": session.entry_lane_id,
            "exit_lane_id": session.exit_lane_id,
            "entry_at": session.entry_at,
            "exit_at": session.exit_at,
            "rate_plan_id": session.rate_plan_id,
            "rate_plan_name": session.rate_plan_name,
            "rate_rules": session.rate_rules,
            "raw_fee": session.raw_fee,
            "discount_total": session.discount_total,
            "final_fee": session.final_fee,
            "fee_breakdown": session.fee_breakdown,
            "payment_status": session.payment_status.value,
            "paid_amount": session.paid_amount,
            "paid_at": session.paid_at,
            "exempt_kind": session.exempt_kind.value if session.exempt_kind else None,
            "close_reason": session.close_reason.value if session.close_reason else None,
            "close_note": session.close_note,
            "closed_at": session.closed_at,
            "error_detail": session.error_detail,
        }

    @staticmethod
    def session_to_orm(session: ParkingSession) -> SessionModel:
        return SessionModel(id=session.id, version=session.version, **Mapper.session_values(session))

    @staticmethod
    def session_to_domain(model: SessionModel) -> ParkingSession:
        session = ParkingSession(
            site_id=model.site_id,
            plate_no=model.plate_no,
            entry_lane_id=model.entry_lane_id,
            entry_at=model.entry_at,
            rate_plan_id=model.rate_plan_id,
            rate_rules=model.rate_rules or {},
            rate_plan_name=model.rate_plan_name,
            exempt_kind=ExemptionKind(model.exempt_kind) if model.exempt_kind else None,
            id=model.id,
            version=model.version,
        )
        session.status = SessionStatus(model.status)
        session.exit_lane_id = model.exit_lane_id
        session.exit_at = model.exit_at
        session.raw_fee = model.raw_fee
        session.discount_total = model.discount_total
        session.final_fee = model.final_fee
        session.fee_breakdown = model.fee_breakdown
        session.payment_status = PaymentStatus(model.payment_status)
        session.paid_amount = model.paid_amount
        session.paid_at = model.paid_at
        session.close_reason = CloseReason(model.close_reason) if model.close_reason else None
        session.close_note = model.close_note
        session.closed_at = model.closed_at
        session.error_detail = model.error_detail
        session.discounts = [Mapper.discount_to_domain(row) for row in model.discounts]
        return session

    @staticmethod
    def discount_to_orm(line: DiscountApplication, seq: int) -> DiscountApplicationModel:
        return DiscountApplicationModel(
            id=line.id,
            session_id=line.session_id,
            seq=seq,
            rule_id=line.rule_id,
            rule_name=line.rule_name,
            discount_type=line.discount_type.value,
            rule_value=line.rule_value,
            is_stackable=line.is_stackable,
            applied_value=line.applied_value,
            value_override=line.value_override,
            reason=line.reason,
            applied_by=line.applied_by,
            applied_at=line.applied_at,
        )

    @staticmethod
    def discount_to_domain(model: DiscountApplicationModel) -> DiscountApplication:
        return DiscountApplication(
            session_id=model.session_id,
            rule_id=model.rule_id,
            rule_name=model.rule_name,
            discount_type=DiscountType(model.discount_type),
            rule_value=model.rule_value,
            is_stackable=model.is_stackable,
            applied_value=model.applied_value,
            value_override=model.value_override,
            reason=model.reason,
            applied_by=model.applied_by,
            applied_at=model.applied_at,
            id=model.id,
        )

    @staticmethod
    def command_values(command: BarrierCommand) -> Dict[str, Any]:
        return {
            "lane_id": command.lane_id,
            "device_id": command.device_id,
            "action": command.action.value,
            "reason": command.reason.value,
            "correlation_id": command.correlation_id,
            "status": command.status.value,
            "detail": command.detail,
            "created_at": command.created_at,
            "executed_at": command.executed_at,
        }

    @staticmethod
    def command_to_domain(model: BarrierCommandModel) -> BarrierCommand:
        return BarrierCommand(
            lane_id=model.lane_id,
            device_id=model.device_id,
            action=BarrierAction(model.action),
            reason=BarrierReason(model.reason),
            correlation_id=model.correlation_id,
            status=CommandStatus(model.status),
            detail=model.detail,
            created_at=model.created_at,
            executed_at=model.executed_at,
            id=model.id,
        )

    @staticmethod
    def audit_to_domain(model: AuditLogModel) -> AuditEntry:
        return AuditEntry(
            action=AuditAction(model.action),
            entity_type=model.entity_type,
            entity_id=model.entity_id,
            detail=model.detail or {},
            actor=model.actor,
            created_at=model.created_at,
            id=model.id,
        )

    @staticmethod
    def rate_plan_to_domain(model: RatePlanModel) -> RatePlan:
        return RatePlan(id=model.id, site_id=model.site_id, name=model.name,
                        rules=dict(model.rules or {}), is_active=model.is_active)

    @staticmethod
    def discount_rule_to_domain(model: DiscountRuleModel) -> DiscountRule:
        return DiscountRule(
            id=model.id,
            name=model.name,
            discount_type=DiscountType(model.discount_type),
            value=model.value,
            is_stackable=model.is_stackable,
            max_apply_count=model.max_apply_count,
            is_enabled=model.is_enabled,
        )


# ============================================================================
# SQLALCHEMY REPOSITORIES
# ============================================================================

class SQLAlchemyStore:
    """Engine and session factory shared by the SQL repositories"""

    def __init__(self, database_url: str, echo: bool = False):
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine = create_engine(database_url, echo=echo, connect_args=connect_args)
        self.session_factory = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        self._logger = logging.getLogger(self.__class__.__name__)

    def create_schema(self) -> None:
        Base.metadata.create_all(bind=self.engine)
        self._logger.info(f"Schema ready on {self.engine.url.render_as_string(hide_password=True)}")

    @contextmanager
    def session_scope(self):
        """Commit on success, roll back on any exception"""
        db: Session = self.session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def dispose(self) -> None:
        self.engine.dispose()


class SQLAlchemySessionRepository(SessionRepository):
    """
    Optimistic concurrency on the `version` column: a write only lands if
    the row still carries the version it was read at. On a lost race the
    session is re-read and the mutation re-applied to the fresh state.
    """

    def __init__(self, store: SQLAlchemyStore, max_retries: int = 5):
        self.store = store
        self.max_retries = max_retries
        self._logger = logging.getLogger(self.__class__.__name__)

    def add(self, session: ParkingSession) -> ParkingSession:
        try:
            with self.store.session_scope() as db:
                db.add(Mapper.session_to_orm(session))
                for seq, line in enumerate(session.discounts):
                    db.add(Mapper.discount_to_orm(line, seq))
        except IntegrityError as e:
            self._logger.warning(f"Open session already exists for {session.plate_no}: {e.orig}")
            existing = self.find_active_by_plate(session.site_id, session.plate_no)
            raise DuplicateActiveSession(
                session.site_id, session.plate_no, existing.id if existing else None
            ) from e
        except SQLAlchemyError as e:
            self._logger.error(f"Database error adding session {session.id}: {e}")
            raise
        return session

    def get(self, id: str) -> Optional[ParkingSession]:
        with self.store.session_scope() as db:
            model = db.get(SessionModel, id)
            return Mapper.session_to_domain(model) if model else None

    def find_active_by_plate(self, site_id: str, plate_no: str) -> Optional[ParkingSession]:
        with self.store.session_scope() as db:
            model = (
                db.query(SessionModel)
                .filter(SessionModel.site_id == site_id,
                        SessionModel.plate_no == normalize_plate(plate_no),
                        SessionModel.status.in_(OPEN_STATUSES))
                .first()
            )
            return Mapper.session_to_domain(model) if model else None

    def mutate(self, session_id: str, mutation: SessionMutation) -> ParkingSession:
        for attempt in range(1, self.max_retries + 1):
            try:
                with self.store.session_scope() as db:
                    model = db.get(SessionModel, session_id)
                    if model is None:
                        raise SessionNotFound(f"Session {session_id} not found")
                    expected = model.version
                    known_lines = len(model.discounts)
                    session = Mapper.session_to_domain(model)

                    mutation(session)

                    result = db.execute(
                        update(SessionModel)
                        .where(SessionModel.id == session_id, SessionModel.version == expected)
                        .values(version=expected + 1, **Mapper.session_values(session))
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        raise _StaleWrite()
                    for seq, line in enumerate(session.discounts[known_lines:], start=known_lines):
                        db.add(Mapper.discount_to_orm(line, seq))
                    db.flush()
            except _StaleWrite:
                self._logger.info(f"Version conflict on session {session_id}, retry {attempt}")
                continue
            except IntegrityError as e:
                raise DuplicateActiveSession(session.site_id, session.plate_no) from e

            session._version = expected + 1
            return session

        raise ConcurrentModification(
            f"Session {session_id} changed concurrently {self.max_retries} times"
        )

    def list_sessions(self, site_id: Optional[str] = None,
                      status: Optional[SessionStatus] = None,
                      limit: int = 100) -> List[ParkingSession]:
        with self.store.session_scope() as db:
            query = db.query(SessionModel)
            if site_id is not None:
                query = query.filter(SessionModel.site_id == site_id)
            if status is not None:
                query = query.filter(SessionModel.status == status.value)
            models = query.order_by(SessionModel.entry_at.desc()).limit(limit).all()
            return [Mapper.session_to_domain(m) for m in models]


class _StaleWrite(Exception):
    """Internal signal: the compare-and-swap update matched no row"""


class SQLAlchemyBarrierCommandRepository(BarrierCommandRepository):

    def __init__(self, store: SQLAlchemyStore, max_retries: int = 5):
        self.store = store
        self.max_retries = max_retries
        self._logger = logging.getLogger(self.__class__.__name__)

    def add(self, command: BarrierCommand) -> BarrierCommand:
        with self.store.session_scope() as db:
            db.add(BarrierCommandModel(id=command.id, **Mapper.command_values(command)))
        return command

    def update(self, command: BarrierCommand) -> BarrierCommand:
        with self.store.session_scope() as db:
            model = db.get(BarrierCommandModel, command.id)
            if model is None:
                raise KeyError(f"Barrier command {command.id} not found")
            model.status = command.status.value
            model.detail = command.detail
            model.executed_at = command.executed_at
        return command

    def get(self, id: str) -> Optional[BarrierCommand]:
        with self.store.session_scope() as db:
            model = db.get(BarrierCommandModel, id)
            return Mapper.command_to_domain(model) if model else None

    def find_by_key(self, correlation_id: str, action: BarrierAction,
                    since: datetime) -> Optional[BarrierCommand]:
        with self.store.session_scope() as db:
            model = (
                db.query(BarrierCommandModel)
                .filter(BarrierCommandModel.correlation_id == correlation_id,
                        BarrierCommandModel.action == action.value,
                        BarrierCommandModel.created_at >= since)
                .order_by(BarrierCommandModel.created_at.desc())
                .first()
            )
            return Mapper.command_to_domain(model) if model else None

    def claim(self, command: BarrierCommand, since: datetime) -> Tuple[BarrierCommand, bool]:
        """
        The key row is the lock: a first claim inserts it (primary key
        conflict for the loser), a takeover swaps its command_id only if
        it still points at the holder that was read. Losers re-read.
        """
        key = (command.correlation_id, command.action.value)
        for attempt in range(1, self.max_retries + 1):
            try:
                with self.store.session_scope() as db:
                    row = db.get(BarrierCommandKeyModel, key)
                    if row is not None:
                        holder = db.get(BarrierCommandModel, row.command_id)
                        if (holder is not None and holder.created_at >= since
                                and holder.status != CommandStatus.FAILED.value):
                            return Mapper.command_to_domain(holder), False

                    db.add(BarrierCommandModel(id=command.id, **Mapper.command_values(command)))
                    db.flush()
                    if row is None:
                        db.add(BarrierCommandKeyModel(
                            correlation_id=key[0], action=key[1], command_id=command.id
                        ))
                        db.flush()
                    else:
                        result = db.execute(
                            update(BarrierCommandKeyModel)
                            .where(BarrierCommandKeyModel.correlation_id == key[0],
                                   BarrierCommandKeyModel.action == key[1],
                                   BarrierCommandKeyModel.command_id == row.command_id)
                            .values(command_id=command.id)
                            .execution_options(synchronize_session=False)
                        )
                        if result.rowcount != 1:
                            raise _StaleWrite()
            except (_StaleWrite, IntegrityError):
                self._logger.info(f"Lost claim on {key[0]}/{key[1]}, retry {attempt}")
                continue
            return command, True

        raise ConcurrentModification(
            f"Barrier key {key[0]}/{key[1]} contended {self.max_retries} times"
        )

    def list_recent(self, limit: int = 50) -> List[BarrierCommand]:
        with self.store.session_scope() as db:
            models = (
                db.query(BarrierCommandModel)
                .order_by(BarrierCommandModel.created_at.desc())
                .limit(limit)
                .all()
            )
            return [Mapper.command_to_domain(m) for m in models]


class SQLAlchemyAuditLogRepository(AuditLogRepository):

    def __init__(self, store: SQLAlchemyStore):
        self.store = store

    def add(self, entry: AuditEntry) -> AuditEntry:
        with self.store.session_scope() as db:
            db.add(AuditLogModel(
                id=entry.id,
                action=entry.action.value,
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                actor=entry.actor,
                detail=entry.detail,
                created_at=entry.created_at,
            ))
        return entry

    def get(self, id: str) -> Optional[AuditEntry]:
        with self.store.session_scope() as db:
            model = db.get(AuditLogModel, id)
            return Mapper.audit_to_domain(model) if model else None

    def list_for(self, entity_id: str) -> List[AuditEntry]:
        with self.store.session_scope() as db:
            models = db.query(AuditLogModel).filter(AuditLogModel.entity_id == entity_id).all()
            entries = [Mapper.audit_to_domain(m) for m in models]
        return sorted(entries, key=lambda e: e.created_at)


class SQLAlchemyRatePlanCatalog(RatePlanCatalog):

    def __init__(self, store: SQLAlchemyStore):
        self.store = store

    def save(self, plan: RatePlan) -> RatePlan:
        """Insert or replace a plan; an active plan deactivates its siblings"""
        with self.store.session_scope() as db:
            if plan.is_active:
                db.query(RatePlanModel).filter(
                    RatePlanModel.site_id == plan.site_id, RatePlanModel.id != plan.id
                ).update({RatePlanModel.is_active: False}, synchronize_session=False)
            db.merge(RatePlanModel(id=plan.id, site_id=plan.site_id, name=plan.name,
                                   rules=plan.rules, is_active=plan.is_active))
        return plan

    def get_active_rate_plan(self, site_id: str) -> RatePlan:
        with self.store.session_scope() as db:
            model = db.query(RatePlanModel).filter(
                RatePlanModel.site_id == site_id, RatePlanModel.is_active.is_(True)
            ).first()
            if model is None:
                raise RatePlanNotFound(f"No active rate plan for site {site_id}")
            return Mapper.rate_plan_to_domain(model)

    def get_rate_plan(self, rate_plan_id: str) -> RatePlan:
        with self.store.session_scope() as db:
            model = db.get(RatePlanModel, rate_plan_id)
            if model is None:
                raise RatePlanNotFound(f"Rate plan {rate_plan_id} not found")
            return Mapper.rate_plan_to_domain(model)


class SQLAlchemyDiscountRuleCatalog(DiscountRuleCatalog):

    def __init__(self, store: SQLAlchemyStore):
        self.store = store

    def save(self, rule: DiscountRule) -> DiscountRule:
        with self.store.session_scope() as db:
            db.merge(DiscountRuleModel(
                id=rule.id, name=rule.name, discount_type=rule.discount_type.value,
                value=rule.value, is_stackable=rule.is_stackable,
                max_apply_count=rule.max_apply_count, is_enabled=rule.is_enabled,
            ))
        return rule

    def get_rule(self, rule_id: str) -> DiscountRule:
        with self.store.session_scope() as db:
            model = db.get(DiscountRuleModel, rule_id)
            if model is None or not model.is_enabled:
                raise DiscountRuleNotFound(f"Discount rule {rule_id} not found or disabled")
            return Mapper.discount_rule_to_domain(model)


class SQLAlchemyEligibilityDirectory:
    """Eligibility lookups; validity windows are compared in Python"""

    def __init__(self, store: SQLAlchemyStore):
        self.store = store

    def add_blacklist(self, entry: BlacklistEntry) -> None:
        with self.store.session_scope() as db:
            db.add(BlacklistModel(site_id=entry.site_id, plate_no=normalize_plate(entry.plate_no),
                                  reason=entry.reason, is_active=entry.is_active,
                                  blocked_until=entry.blocked_until))

    def add_vip(self, entry: VipEntry) -> None:
        with self.store.session_scope() as db:
            db.add(VipModel(site_id=entry.site_id, plate_no=normalize_plate(entry.plate_no),
                            name=entry.name, is_active=entry.is_active))

    def add_membership(self, entry: Membership) -> None:
        with self.store.session_scope() as db:
            db.add(MembershipModel(site_id=entry.site_id, plate_no=normalize_plate(entry.plate_no),
                                   member_name=entry.member_name,
                                   valid_from=entry.valid_from, valid_to=entry.valid_to))

    def is_blacklisted(self, site_id: str, plate_no: str, at: datetime) -> bool:
        with self.store.session_scope() as db:
            rows = db.query(BlacklistModel).filter(
                BlacklistModel.site_id == site_id, BlacklistModel.plate_no == plate_no
            ).all()
            entries = [BlacklistEntry(plate_no=r.plate_no, site_id=r.site_id, reason=r.reason or "",
                                      is_active=r.is_active, blocked_until=r.blocked_until)
                       for r in rows]
        return any(e.is_blocking_at(at) for e in entries)

    def is_vip(self, site_id: str, plate_no: str, at: datetime) -> bool:
        with self.store.session_scope() as db:
            return db.query(VipModel).filter(
                VipModel.site_id == site_id, VipModel.plate_no == plate_no,
                VipModel.is_active.is_(True)
            ).first() is not None

    def is_member_active(self, site_id: str, plate_no: str, at: datetime) -> bool:
        with self.store.session_scope() as db:
            rows = db.query(MembershipModel).filter(
                MembershipModel.site_id == site_id, MembershipModel.plate_no == plate_no
            ).all()
            windows = [(r.valid_from, r.valid_to) for r in rows]
        return any(start <= at <= end for start, end in windows)
