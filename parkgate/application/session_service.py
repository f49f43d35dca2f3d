# File: parkgate/application/session_service.py
"""
Session Lifecycle Application Service

This module implements the application service that drives a parking
session from entry to closure. It orchestrates the domain logic
(eligibility, pricing, discounts, the session state machine) and
coordinates the store, the barrier gateway and the event publisher.

Responsibilities:
1. Execute the lifecycle use cases (entry, exit, payment, admin overrides)
2. Apply every session change as one atomic store mutation
3. Publish domain events only after the store has committed
4. Trigger at most one barrier OPEN per session (correlation id = session id)
5. Write audit entries for administrative actions

Key Principles:
- Dependency Injection for testability (store, catalogs, driver, clock)
- Domain exceptions propagate to the caller unchanged
- Idempotent operations where the protocol asks for it
"""

from typing import Dict, List, Optional, Any, Sequence, Tuple
from datetime import datetime
import logging

from ..domain.models import (
    SessionStatus, PaymentStatus, CloseReason,
    BarrierAction, BarrierReason, AuditAction, AuditEntry,
    RateRules, FeeBreakdown, DiscountRequest, DiscountApplication,
    DomainEvent, EntryRejected, DiscountApplied, SessionRecalculated,
    RateRuleInvalid, RatePlanNotFound, DuplicateActiveSession, SessionNotFound, normalize_plate
)
from ..domain.aggregates import ParkingSession
from ..domain.strategies import PricingStrategy, PricingStrategyFactory
from ..domain.discounts import DiscountEngine, DiscountOutcome, FeeContext
from ..domain.eligibility import EligibilityResolver
from ..infrastructure.repositories import (
    SessionRepository, RatePlanCatalog, DiscountRuleCatalog, AuditLogRepository
)
from .barrier_gateway import BarrierCommandGateway
from .ports import EventPublisher, Clock
from .dtos import (
    EntryResultDTO, ExitResultDTO, PaymentResultDTO, ForceCloseResultDTO,
    FeeSummaryDTO, DiscountResultDTO, CorrectionResultDTO, SessionDTO,
    BarrierCommandDTO
)


class _AlreadySettled(Exception):
    """Internal signal: abort the mutation, the payment was already accepted"""


_EXIT_BARRIER_REASONS = {
    CloseReason.EXEMPT_EXIT: BarrierReason.MEMBERSHIP_VALID,
    CloseReason.FREE_EXIT: BarrierReason.FREE_EXIT,
}


class SessionLifecycleService:
    """
    Main application service for the session lifecycle

    All writes go through `SessionRepository.mutate`, so two callers racing
    on one session are serialized: the loser runs its mutation against the
    winner's result and fails with InvalidTransition.
    """

    def __init__(
        self,
        sessions: SessionRepository,
        rate_plans: RatePlanCatalog,
        discount_rules: DiscountRuleCatalog,
        eligibility: EligibilityResolver,
        gateway: BarrierCommandGateway,
        publisher: Optional[EventPublisher] = None,
        audit_log: Optional[AuditLogRepository] = None,
        pricing: Optional[PricingStrategy] = None,
        discount_engine: Optional[DiscountEngine] = None,
        clock: Clock = datetime.now,
        default_site_id: str = "site-1"
    ):
        self.sessions = sessions
        self.rate_plans = rate_plans
        self.discount_rules = discount_rules
        self.eligibility = eligibility
        self.gateway = gateway
        self.publisher = publisher
        self.audit_log = audit_log
        self.pricing = pricing or PricingStrategyFactory.create("standard")
        self.discount_engine = discount_engine or DiscountEngine()
        self.default_site_id = default_site_id
        self._clock = clock
        self.logger = logging.getLogger(self.__class__.__name__)

        self.logger.info(f"SessionLifecycleService initialized ({self.pricing.get_strategy_name()})")

    # ========================================================================
    # DEVICE EVENTS
    # ========================================================================

    def handle_entry_event(
        self,
        plate_no: str,
        lane_id: str,
        site_id: Optional[str] = None,
        at: Optional[datetime] = None
    ) -> EntryResultDTO:
        """
        Process a plate read at an entry lane

        Use Case: Vehicle Entry
        1. Normalize the plate
        2. Resolve eligibility (blacklist refuses entry)
        3. Return the open session if the plate is already parked
        4. Snapshot the site's active rate plan onto a new session
        5. Store it and publish SessionOpened

        Returns: CREATED / DUPLICATE / REJECTED outcome
        """
        site_id = site_id or self.default_site_id
        at = at or self._clock()
        plate = normalize_plate(plate_no)
        self.logger.info(f"Entry read {plate} at {site_id}/{lane_id}")

        # Step 1: Eligibility
        decision = self.eligibility.resolve(site_id, plate, at)
        if decision.is_blocked:
            self._publish([EntryRejected(site_id, plate, lane_id, "BLACKLISTED", at)])
            return EntryResultDTO(outcome="REJECTED", plate_no=plate, rejected_reason="BLACKLISTED")

        # Step 2: Duplicate read of a vehicle already inside
        existing = self.sessions.find_active_by_plate(site_id, plate)
        if existing is not None:
            self.logger.info(f"Plate {plate} already has open session {existing.id}")
            return self._duplicate_entry(plate, existing.id)

        # Step 3: Create the session on the active plan
        plan = self.rate_plans.get_active_rate_plan(site_id)
        session = ParkingSession.start(
            site_id=site_id,
            plate_no=plate,
            entry_lane_id=lane_id,
            entry_at=at,
            rate_plan_id=plan.id,
            rate_rules=plan.rules,
            rate_plan_name=plan.name,
            exempt_kind=decision.exemption,
        )

        # Step 4: Store; a racing entry for the same plate loses here
        try:
            self.sessions.add(session)
        except DuplicateActiveSession as e:
            self.logger.info(f"Concurrent entry for {plate} lost to session {e.existing_id}")
            return self._duplicate_entry(plate, e.existing_id)

        self._publish(session.clear_events())
        return EntryResultDTO(
            outcome="CREATED",
            plate_no=plate,
            session_id=session.id,
            exempt=decision.exemption.value if decision.exemption else None,
        )

    def handle_exit_event(
        self,
        plate_or_session_id: str,
        lane_id: str,
        at: Optional[datetime] = None,
        site_id: Optional[str] = None
    ) -> ExitResultDTO:
        """
        Process a plate read at an exit lane

        Use Case: Vehicle Exit
        1. Find the session (by id, else the plate's open session)
        2. Price the stay on the entry-time rule snapshot and fold the ledger
        3. Exempt or zero fee: CLOSED and barrier OPEN, no payment
        4. Otherwise EXIT_PENDING with payment PENDING

        Raises: RateRuleInvalid (the session is moved to ERROR first),
        InvalidTransition when the session is no longer PARKING
        """
        at = at or self._clock()
        site_id = site_id or self.default_site_id
        current = self._find_for_exit(plate_or_session_id, site_id)

        exemption = current.exempt_kind
        if exemption is None:
            decision = self.eligibility.resolve(current.site_id, current.plate_no, at)
            exemption = decision.exemption

        exit_at = at
        if exit_at < current.entry_at:
            self.logger.warning(
                f"Exit time {at.isoformat()} precedes entry of session {current.id}; using entry time"
            )
            exit_at = current.entry_at

        failure: Dict[str, RateRuleInvalid] = {}

        def mutation(session: ParkingSession) -> None:
            failure.clear()
            session.record_exit(exit_at, lane_id)
            if exemption is not None:
                session.tag_exempt(exemption)
            try:
                self._reprice(session, exit_at)
            except RateRuleInvalid as e:
                failure["error"] = e
                session.mark_error(f"rate rules invalid: {e}", at)
                return

            if session.is_exempt:
                session.close_without_payment(CloseReason.EXEMPT_EXIT, at)
            elif session.final_fee == 0:
                session.close_without_payment(CloseReason.FREE_EXIT, at)
            else:
                session.await_payment(at)

        session = self.sessions.mutate(current.id, mutation)
        self._publish(session.clear_events())

        if "error" in failure:
            self.logger.error(f"Session {session.id} moved to ERROR: {failure['error']}")
            self._audit(AuditAction.SESSION_ERROR, session.id, {"detail": str(failure["error"])})
            raise failure["error"]

        command = None
        if session.status == SessionStatus.CLOSED:
            command = self._open_barrier(session, lane_id, _EXIT_BARRIER_REASONS[session.close_reason])

        pending = session.status == SessionStatus.EXIT_PENDING
        self.logger.info(
            f"Exit of {session.plate_no}: {session.status.value}, "
            f"raw={session.raw_fee} discount={session.discount_total} final={session.final_fee}"
        )
        return ExitResultDTO(
            session_id=session.id,
            session_status=session.status.value,
            raw_fee=session.raw_fee,
            discount_total=session.discount_total,
            final_fee=session.final_fee,
            fee_due=session.final_fee if pending else 0,
            payment_required=pending,
            close_reason=session.close_reason.value if session.close_reason else None,
            barrier_command=command,
        )

    # ========================================================================
    # PAYMENT
    # ========================================================================

    def confirm_payment(self, session_id: str, amount: int) -> PaymentResultDTO:
        """
        Accept a payment for an EXIT_PENDING session

        A confirmation for a session that is already paid returns
        already_settled=True and issues no second barrier command.
        """
        at = self._clock()

        def mutation(session: ParkingSession) -> None:
            if session.payment_status == PaymentStatus.PAID:
                raise _AlreadySettled()
            session.settle_payment(amount, at)

        try:
            session = self.sessions.mutate(session_id, mutation)
        except _AlreadySettled:
            settled = self.sessions.require(session_id)
            self.logger.info(f"Payment for session {session_id} already settled")
            return PaymentResultDTO(
                session_id=settled.id,
                session_status=settled.status.value,
                payment_status=settled.payment_status.value,
                already_settled=True,
            )

        self._publish(session.clear_events())
        self.logger.info(f"Payment of {amount} accepted for session {session_id}")
        command = self._open_barrier(session, session.exit_lane_id, BarrierReason.PAYMENT_CONFIRMED)
        return PaymentResultDTO(
            session_id=session.id,
            session_status=session.status.value,
            payment_status=session.payment_status.value,
            barrier_command=command,
        )

    def report_payment_failure(self, session_id: str, detail: str) -> PaymentResultDTO:
        """Record a declined payment; the session stays EXIT_PENDING"""
        session = self.sessions.mutate(session_id, lambda s: s.record_payment_failure(detail))
        self.logger.warning(f"Payment failed for session {session_id}: {detail}")
        return PaymentResultDTO(
            session_id=session.id,
            session_status=session.status.value,
            payment_status=session.payment_status.value,
        )

    # ========================================================================
    # ADMINISTRATIVE OPERATIONS
    # ========================================================================

    def force_close(
        self,
        session_id: str,
        reason: str,
        note: Optional[str] = None,
        override_payment: bool = False,
        lane_id: Optional[str] = None,
        actor: Optional[str] = None
    ) -> ForceCloseResultDTO:
        """
        Close a PARKING or EXIT_PENDING session and open its barrier

        Without override_payment the stay is priced and the fee stays owed
        (payment PENDING) after the vehicle leaves.
        """
        at = self._clock()

        def mutation(session: ParkingSession) -> None:
            session.ensure_adjustable("FORCE_CLOSE")
            if not override_payment:
                self._reprice(session, session.exit_at or at)
            session.force_close(reason, note, override_payment, at)

        session = self.sessions.mutate(session_id, mutation)
        self._publish(session.clear_events())
        self._audit(AuditAction.SESSION_FORCE_CLOSE, session.id, {
            "reason": reason,
            "note": note,
            "override_payment": override_payment,
            "payment_status": session.payment_status.value,
            "final_fee": session.final_fee,
        }, actor)
        self.logger.warning(f"Session {session.id} force-closed: {session.close_note}")

        lane = lane_id or session.exit_lane_id or session.entry_lane_id
        command = self._open_barrier(session, lane, BarrierReason.FORCE_CLOSE)
        owed = session.payment_status == PaymentStatus.PENDING
        return ForceCloseResultDTO(
            session_id=session.id,
            final_status=session.status.value,
            payment_status=session.payment_status.value,
            outstanding_fee=session.final_fee if owed else 0,
            barrier_command=command,
        )

    def recalculate(
        self,
        session_id: str,
        reason: str,
        rate_plan_id: Optional[str] = None,
        actor: Optional[str] = None
    ) -> FeeSummaryDTO:
        """Re-price an open session, optionally on a different rate plan of its site"""
        if not reason or not reason.strip():
            raise ValueError("A recalculation needs a reason")
        at = self._clock()
        plan = self.rate_plans.get_rate_plan(rate_plan_id) if rate_plan_id else None
        before: Dict[str, Any] = {}

        def mutation(session: ParkingSession) -> None:
            session.ensure_adjustable("RECALCULATE")
            if plan is not None and plan.site_id != session.site_id:
                raise RatePlanNotFound(f"Rate plan {plan.id} does not belong to site {session.site_id}")
            before.update(raw_fee=session.raw_fee, discount_total=session.discount_total,
                          final_fee=session.final_fee, rate_plan_id=session.rate_plan_id)
            if plan is not None:
                session.change_rate_plan(plan.id, plan.rules, plan.name)
            self._reprice(session, session.exit_at or at)

        session = self.sessions.mutate(session_id, mutation)
        self._publish([SessionRecalculated(
            session.id, session.raw_fee, session.discount_total, session.final_fee, reason, at
        )])
        self._audit(AuditAction.SESSION_RECALC, session.id, {
            "reason": reason,
            "before": before,
            "after": {"raw_fee": session.raw_fee, "discount_total": session.discount_total,
                      "final_fee": session.final_fee, "rate_plan_id": session.rate_plan_id},
        }, actor)
        return FeeSummaryDTO(
            session_id=session.id,
            raw_fee=session.raw_fee,
            discount_total=session.discount_total,
            final_fee=session.final_fee,
            rate_plan_id=session.rate_plan_id,
        )

    def apply_discount(
        self,
        session_id: str,
        discount_rule_id: str,
        reason: Optional[str] = None,
        value_override: Optional[int] = None,
        actor: Optional[str] = None
    ) -> DiscountResultDTO:
        """
        Append a discount to the session ledger

        Raises: RuleConflict when stacking rules forbid it (ledger untouched)
        """
        at = self._clock()
        rule = self.discount_rules.get_rule(discount_rule_id)
        request = DiscountRequest.from_rule(rule, reason=reason, applied_by=actor,
                                            value_override=value_override)
        applied: Dict[str, int] = {}

        def mutation(session: ParkingSession) -> None:
            session.ensure_adjustable("APPLY_DISCOUNT")
            until = session.exit_at or at
            breakdown, outcome = self._quote(session, until, [request])
            applied["value"] = outcome.applied_value_of(-1)
            session.add_discount(DiscountApplication(
                session_id=session.id,
                rule_id=rule.id,
                rule_name=rule.name,
                discount_type=rule.discount_type,
                rule_value=rule.value,
                is_stackable=rule.is_stackable,
                applied_value=applied["value"],
                value_override=value_override,
                reason=reason,
                applied_by=actor,
                applied_at=at,
            ))
            self._apply(session, breakdown, outcome)

        session = self.sessions.mutate(session_id, mutation)
        self._publish([DiscountApplied(session.id, rule.id, applied["value"], session.discount_total, at)])
        self._audit(AuditAction.DISCOUNT_APPLY, session.id, {
            "rule_id": rule.id,
            "type": rule.discount_type.value,
            "applied_value": applied["value"],
            "value_override": value_override,
            "reason": reason,
        }, actor)
        self.logger.info(
            f"Discount {rule.name} on session {session.id}: -{applied['value']} "
            f"(total {session.discount_total})"
        )
        return DiscountResultDTO(
            session_id=session.id,
            rule_id=rule.id,
            applied_value=applied["value"],
            discount_total=session.discount_total,
            final_fee=session.final_fee,
        )

    def correct_session(
        self,
        session_id: str,
        reason: str,
        plate_no: Optional[str] = None,
        entry_at: Optional[datetime] = None,
        exit_at: Optional[datetime] = None,
        actor: Optional[str] = None
    ) -> CorrectionResultDTO:
        """
        Fix a misread plate or a wrong timestamp on an open session.
        The stay is re-priced when its exit time is known.
        """
        if not reason or not reason.strip():
            raise ValueError("A correction needs a reason")
        at = self._clock()
        changes: Dict[str, Any] = {}

        def mutation(session: ParkingSession) -> None:
            changes.clear()
            changes.update(session.correct(plate_no=plate_no, entry_at=entry_at, exit_at=exit_at))
            if session.exit_at is not None:
                self._reprice(session, session.exit_at)

        session = self.sessions.mutate(session_id, mutation)
        if session.exit_at is not None:
            self._publish([SessionRecalculated(
                session.id, session.raw_fee, session.discount_total, session.final_fee, reason, at
            )])
        self._audit(AuditAction.SESSION_CORRECT, session.id, {"reason": reason, "changes": changes}, actor)
        return CorrectionResultDTO(
            session_id=session.id,
            raw_fee=session.raw_fee,
            discount_total=session.discount_total,
            final_fee=session.final_fee,
            rate_plan_id=session.rate_plan_id,
            changes=changes,
        )

    def mark_error(self, session_id: str, detail: str, actor: Optional[str] = None) -> SessionDTO:
        """Park an open session in ERROR for manual follow-up"""
        at = self._clock()
        session = self.sessions.mutate(session_id, lambda s: s.mark_error(detail, at))
        self._publish(session.clear_events())
        self._audit(AuditAction.SESSION_ERROR, session.id, {"detail": detail}, actor)
        self.logger.error(f"Session {session.id} marked ERROR: {detail}")
        return SessionDTO.from_session(session)

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_session(self, session_id: str) -> SessionDTO:
        return SessionDTO.from_session(self.sessions.require(session_id))

    def find_active_session(self, plate_no: str, site_id: Optional[str] = None) -> Optional[SessionDTO]:
        session = self.sessions.find_active_by_plate(site_id or self.default_site_id, plate_no)
        return SessionDTO.from_session(session) if session else None

    def list_sessions(
        self,
        site_id: Optional[str] = None,
        status: Optional[SessionStatus] = None,
        limit: int = 100
    ) -> List[SessionDTO]:
        return [SessionDTO.from_session(s) for s in self.sessions.list_sessions(site_id, status, limit)]

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _find_for_exit(self, plate_or_session_id: str, site_id: str) -> ParkingSession:
        session = self.sessions.get(plate_or_session_id)
        if session is not None:
            return session
        session = self.sessions.find_active_by_plate(site_id, plate_or_session_id)
        if session is None:
            raise SessionNotFound(f"No open session for {plate_or_session_id} at site {site_id}")
        return session

    def _quote(
        self,
        session: ParkingSession,
        until: datetime,
        new_requests: Sequence[DiscountRequest] = ()
    ) -> Tuple[FeeBreakdown, DiscountOutcome]:
        """Raw fee on the session's rule snapshot plus the folded ledger"""
        rules = RateRules.from_dict(session.rate_rules)
        breakdown = self.pricing.calculate_fee(
            session.entry_at, until, rules, session.rate_plan_id, session.rate_plan_name
        )
        context = FeeContext(session.entry_at, until, rules, self.pricing)
        outcome = self.discount_engine.apply(breakdown.raw_fee, new_requests, session.discounts, context)
        return breakdown, outcome

    def _apply(self, session: ParkingSession, breakdown: FeeBreakdown, outcome: DiscountOutcome) -> None:
        session.apply_pricing(breakdown, outcome.discount_total)
        if session.is_exempt:
            session.waive_as_exempt()

    def _reprice(self, session: ParkingSession, until: datetime) -> None:
        breakdown, outcome = self._quote(session, until)
        self._apply(session, breakdown, outcome)

    def _open_barrier(
        self,
        session: ParkingSession,
        lane_id: Optional[str],
        reason: BarrierReason
    ) -> BarrierCommandDTO:
        command = self.gateway.issue_command(
            lane_id or session.entry_lane_id, BarrierAction.OPEN, reason, session.id
        )
        if not command.executed:
            self.logger.error(
                f"Session {session.id} is {session.status.value} but its barrier did not open: "
                f"{command.detail}"
            )
        return command

    def _publish(self, events: List[DomainEvent]) -> None:
        if self.publisher is not None and events:
            self.publisher.publish_all(events)

    def _audit(self, action: AuditAction, session_id: str, detail: Dict[str, Any],
               actor: Optional[str] = None) -> None:
        if self.audit_log is None:
            return
        self.audit_log.add(AuditEntry(
            action=action,
            entity_type="parking_session",
            entity_id=session_id,
            detail=detail,
            actor=actor,
            created_at=self._clock(),
        ))

    def _duplicate_entry(self, plate: str, session_id: Optional[str]) -> EntryResultDTO:
        return EntryResultDTO(outcome="DUPLICATE", plate_no=plate, session_id=session_id)
