#!/usr/bin/env python3
"""
Integration Tests for the session lifecycle

Runs SessionLifecycleService against the in-memory wiring with a mock
barrier driver and a controllable clock: entry, exit, payment,
administrative overrides and concurrent callers.
"""

import threading
import unittest
import sys
from pathlib import Path
from datetime import datetime, timedelta

# Add the project root to the Python path
sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from parkgate.domain.models import (
    RatePlan, DiscountRule, DiscountType, VipEntry, BlacklistEntry, Membership,
    AuditAction, CommandStatus, BarrierAction,
    InvalidTransition, RuleConflict, RateRuleInvalid, SessionNotFound,
    RatePlanNotFound, PaymentAmountMismatch, DuplicateActiveSession,
    DiscountRuleNotFound, DEFAULT_RATE_RULES
)
from parkgate.infrastructure.config import Settings, LaneConfig
from parkgate.infrastructure.drivers import MockBarrierDriver
from parkgate.infrastructure.factories import ServiceFactory
from parkgate.infrastructure.messaging import EventRecorder, ALL_EVENTS


SITE = "site-1"
ENTRY = datetime(2024, 1, 3, 10, 0)

# 5000 after 110 minutes, no free period
FLAT_RULES = {
    'free_minutes': 0,
    'base_minutes': 30,
    'base_fee': 1000,
    'additional_minutes': 10,
    'additional_fee': 500,
    'daily_max': 20000,
}


class FrozenClock:
    """Clock that only moves when told to"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class LifecycleTestBase(unittest.TestCase):
    """In-memory container with one site, two lanes and a default plan"""

    rules = DEFAULT_RATE_RULES

    def setUp(self):
        self.clock = FrozenClock(ENTRY)
        self.driver = MockBarrierDriver()
        settings = Settings(
            log_dir=None,
            default_site_id=SITE,
            barrier_timeout_seconds=2.0,
            lanes={
                "lane-in-1": LaneConfig("lane-in-1", "gate-1"),
                "lane-out-1": LaneConfig("lane-out-1", "gate-2"),
            },
        )
        self.container = ServiceFactory.create_in_memory(settings, driver=self.driver, clock=self.clock)
        self.service = self.container.service
        self.events = EventRecorder()
        self.container.notifier.subscribe(ALL_EVENTS, self.events)
        self.container.rate_plans.save(RatePlan("plan-1", SITE, "Default", dict(self.rules), is_active=True))

    def tearDown(self):
        self.container.shutdown()

    def enter(self, plate="12가3456"):
        result = self.service.handle_entry_event(plate, "lane-in-1", SITE, self.clock())
        return result.session_id

    def leave(self, plate_or_id="12가3456", **advance):
        if advance:
            self.clock.advance(**advance)
        return self.service.handle_exit_event(plate_or_id, "lane-out-1", self.clock(), SITE)

    def open_commands(self):
        return [c for c in self.container.commands.list_recent(100) if c.action == BarrierAction.OPEN]


class TestEntry(LifecycleTestBase):
    """Entry events"""

    def test_entry_creates_parking_session(self):
        result = self.service.handle_entry_event("12가 3456", "lane-in-1", SITE, ENTRY)
        self.assertEqual(result.outcome, "CREATED")
        session = self.service.get_session(result.session_id)
        self.assertEqual(session.status, "PARKING")
        self.assertEqual(session.plate_no, "12가3456")
        self.assertEqual(session.rate_plan_id, "plan-1")
        self.assertEqual(len(self.events.of_type("session.opened")), 1)

    def test_blacklisted_plate_is_refused(self):
        """Blacklisted plate: entry refused, no session created"""
        self.container.eligibility.add_blacklist(BlacklistEntry(plate_no="99허9999", site_id=SITE))
        result = self.service.handle_entry_event("99허9999", "lane-in-1", SITE, ENTRY)
        self.assertEqual(result.outcome, "REJECTED")
        self.assertEqual(result.rejected_reason, "BLACKLISTED")
        self.assertIsNone(result.session_id)
        self.assertEqual(self.service.list_sessions(), [])
        self.assertEqual(len(self.events.of_type("session.entry_rejected")), 1)

    def test_duplicate_read_returns_open_session(self):
        first = self.enter()
        again = self.service.handle_entry_event("12가-3456", "lane-in-1", SITE, self.clock.advance(minutes=1))
        self.assertEqual(again.outcome, "DUPLICATE")
        self.assertEqual(again.session_id, first)
        self.assertEqual(len(self.service.list_sessions()), 1)

    def test_rate_plan_snapshot_survives_plan_change(self):
        session_id = self.enter()
        self.container.rate_plans.save(RatePlan("plan-2", SITE, "Expensive",
                                                dict(self.rules, base_fee=9000), is_active=True))
        exit_result = self.leave(session_id, minutes=60)
        self.assertEqual(exit_result.raw_fee, 1000)

    def test_site_without_active_plan(self):
        with self.assertRaises(RatePlanNotFound):
            self.service.handle_entry_event("12가3456", "lane-in-1", "site-9", ENTRY)

    def test_concurrent_entries_create_one_session(self):
        outcomes = []
        start = threading.Barrier(8)

        def worker():
            start.wait()
            outcomes.append(self.service.handle_entry_event("12가3456", "lane-in-1", SITE, ENTRY).outcome)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(outcomes.count("CREATED"), 1)
        self.assertEqual(outcomes.count("DUPLICATE"), 7)


class TestExitAndPayment(LifecycleTestBase):
    """Exit pricing, payment and barrier commands"""

    def test_paid_exit(self):
        session_id = self.enter()
        result = self.leave(minutes=150)
        self.assertEqual(result.session_status, "EXIT_PENDING")
        self.assertTrue(result.payment_required)
        self.assertEqual(result.fee_due, 5500)
        self.assertIsNone(result.barrier_command)
        self.assertEqual(self.open_commands(), [])

        payment = self.service.confirm_payment(session_id, 5500)
        self.assertEqual(payment.session_status, "CLOSED")
        self.assertEqual(payment.payment_status, "PAID")
        self.assertFalse(payment.already_settled)
        self.assertEqual(payment.barrier_command.status, "EXECUTED")
        self.assertEqual(payment.barrier_command.reason, "PAYMENT_CONFIRMED")
        self.assertEqual(self.driver.calls_for("gate-2"), [BarrierAction.OPEN])

    def test_confirm_payment_is_idempotent(self):
        session_id = self.enter()
        self.leave(minutes=150)
        self.service.confirm_payment(session_id, 5500)
        again = self.service.confirm_payment(session_id, 5500)

        self.assertTrue(again.already_settled)
        self.assertEqual(again.session_status, "CLOSED")
        self.assertIsNone(again.barrier_command)
        self.assertEqual(len(self.open_commands()), 1)
        self.assertEqual(len(self.events.of_type("payment.settled")), 1)

    def test_concurrent_payment_confirmations(self):
        session_id = self.enter()
        self.leave(minutes=150)
        results = []
        start = threading.Barrier(6)

        def worker():
            start.wait()
            results.append(self.service.confirm_payment(session_id, 5500))

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(sum(1 for r in results if not r.already_settled), 1)
        self.assertEqual(len(self.open_commands()), 1)
        self.assertEqual(len(self.driver.calls), 1)

    def test_underpayment(self):
        session_id = self.enter()
        self.leave(minutes=150)
        with self.assertRaises(PaymentAmountMismatch):
            self.service.confirm_payment(session_id, 5000)
        self.assertEqual(self.service.get_session(session_id).status, "EXIT_PENDING")

    def test_payment_failure_then_success(self):
        session_id = self.enter()
        self.leave(minutes=150)
        failed = self.service.report_payment_failure(session_id, "card declined")
        self.assertEqual(failed.session_status, "EXIT_PENDING")
        self.assertEqual(failed.payment_status, "FAILED")

        paid = self.service.confirm_payment(session_id, 5500)
        self.assertEqual(paid.payment_status, "PAID")

    def test_payment_before_exit_is_rejected(self):
        session_id = self.enter()
        with self.assertRaises(InvalidTransition):
            self.service.confirm_payment(session_id, 1000)

    def test_free_period_exit_opens_barrier(self):
        self.enter()
        result = self.leave(minutes=20)
        self.assertEqual(result.session_status, "CLOSED")
        self.assertEqual(result.close_reason, "FREE_EXIT")
        self.assertFalse(result.payment_required)
        self.assertEqual(result.barrier_command.reason, "FREE_EXIT")

    def test_vip_exit(self):
        """VIP stays three hours: closed, nothing to pay, one OPEN"""
        self.container.eligibility.add_vip(VipEntry(plate_no="11가1111", site_id=SITE))
        entry = self.service.handle_entry_event("11가1111", "lane-in-1", SITE, ENTRY)
        self.assertEqual(entry.exempt, "VIP")

        result = self.leave("11가1111", hours=3)
        self.assertEqual(result.session_status, "CLOSED")
        self.assertEqual(result.final_fee, 0)
        self.assertGreater(result.raw_fee, 0)
        self.assertFalse(result.payment_required)
        self.assertEqual(result.close_reason, "EXEMPT_EXIT")
        self.assertEqual(len(self.open_commands()), 1)
        self.assertEqual(self.open_commands()[0].reason.value, "MEMBERSHIP_VALID")

    def test_membership_valid_at_exit(self):
        self.enter()
        self.container.eligibility.add_membership(Membership(
            plate_no="12가3456", site_id=SITE,
            valid_from=ENTRY + timedelta(minutes=30), valid_to=ENTRY + timedelta(days=30),
        ))
        result = self.leave(hours=2)
        self.assertEqual(result.session_status, "CLOSED")
        self.assertEqual(result.final_fee, 0)
        self.assertEqual(self.service.get_session(result.session_id).exempt, "MEMBERSHIP")

    def test_exit_by_session_id(self):
        session_id = self.enter()
        result = self.leave(session_id, minutes=150)
        self.assertEqual(result.session_id, session_id)

    def test_exit_without_session(self):
        with self.assertRaises(SessionNotFound):
            self.leave("00가0000", minutes=5)

    def test_second_exit_read_is_rejected(self):
        session_id = self.enter()
        self.leave(minutes=150)
        with self.assertRaises(InvalidTransition):
            self.leave(session_id, minutes=1)

    def test_concurrent_exits(self):
        """Two exit reads race: one wins, the other sees InvalidTransition"""
        session_id = self.enter()
        self.clock.advance(minutes=150)
        outcomes = []
        errors = []
        start = threading.Barrier(2)

        def worker(lane):
            start.wait()
            try:
                outcomes.append(self.service.handle_exit_event(session_id, lane, self.clock(), SITE))
            except InvalidTransition as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(lane,)) for lane in ("lane-out-1", "lane-in-1")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(len(outcomes), 1)
        self.assertEqual(len(errors), 1)
        self.assertEqual(self.service.get_session(session_id).final_fee, 5500)

    def test_exit_racing_force_close(self):
        """A free exit and an operator close race: one closes, one opens the barrier"""
        session_id = self.enter()
        self.clock.advance(minutes=10)
        winners = []
        errors = []
        start = threading.Barrier(2)

        def exit_read():
            start.wait()
            try:
                winners.append(self.service.handle_exit_event(session_id, "lane-out-1", self.clock(), SITE))
            except InvalidTransition as e:
                errors.append(e)

        def operator_close():
            start.wait()
            try:
                winners.append(self.service.force_close(session_id, "stuck", override_payment=True))
            except InvalidTransition as e:
                errors.append(e)

        threads = [threading.Thread(target=exit_read), threading.Thread(target=operator_close)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(len(winners), 1)
        self.assertEqual(len(errors), 1)
        self.assertEqual(self.service.get_session(session_id).status, "CLOSED")
        self.assertEqual(len(self.open_commands()), 1)
        self.assertEqual(len(self.driver.calls), 1)


class TestInvalidRules(LifecycleTestBase):
    """Malformed rules move the session to ERROR at exit"""

    rules = dict(DEFAULT_RATE_RULES, additional_minutes=0)

    def test_exit_moves_session_to_error(self):
        session_id = self.enter()
        with self.assertRaises(RateRuleInvalid):
            self.leave(minutes=150)

        session = self.service.get_session(session_id)
        self.assertEqual(session.status, "ERROR")
        self.assertIn("rate rules invalid", session.error_detail)
        self.assertEqual(len(self.events.of_type("session.failed")), 1)
        audit = self.container.audit_log.list_for(session_id)
        self.assertEqual([e.action for e in audit], [AuditAction.SESSION_ERROR])
        self.assertEqual(self.open_commands(), [])


class TestDiscounts(LifecycleTestBase):
    """Discount ledger through the service"""

    rules = FLAT_RULES

    def setUp(self):
        super().setUp()
        rules = self.container.discount_rules
        rules.save(DiscountRule("shop", "Shop validation", DiscountType.AMOUNT, 1000))
        rules.save(DiscountRule("half", "Half price", DiscountType.PERCENT, 50))
        rules.save(DiscountRule("exclusive", "Partner pass", DiscountType.PERCENT, 30, is_stackable=False))
        rules.save(DiscountRule("free", "Free pass", DiscountType.FREE_ALL, 0))
        rules.save(DiscountRule("coupon", "Coupon", DiscountType.AMOUNT, 300, max_apply_count=1))
        rules.save(DiscountRule("retired", "Retired", DiscountType.AMOUNT, 300, is_enabled=False))
        self.session_id = self.enter()
        self.clock.advance(minutes=110)

    def test_amount_then_percent(self):
        """1000 off then 50% on a 5000 fee leaves 2000"""
        first = self.service.apply_discount(self.session_id, "shop", reason="receipt")
        self.assertEqual(first.applied_value, 1000)
        second = self.service.apply_discount(self.session_id, "half")
        self.assertEqual(second.applied_value, 2000)
        self.assertEqual(second.discount_total, 3000)
        self.assertEqual(second.final_fee, 2000)

        result = self.leave(self.session_id)
        self.assertEqual(result.raw_fee, 5000)
        self.assertEqual(result.discount_total, 3000)
        self.assertEqual(result.fee_due, 2000)
        self.assertEqual(len(self.service.get_session(self.session_id).discounts), 2)

    def test_non_stackable_after_other_rule(self):
        self.service.apply_discount(self.session_id, "shop")
        with self.assertRaises(RuleConflict):
            self.service.apply_discount(self.session_id, "exclusive")
        session = self.service.get_session(self.session_id)
        self.assertEqual([d["rule_id"] for d in session.discounts], ["shop"])

    def test_non_stackable_alone(self):
        result = self.service.apply_discount(self.session_id, "exclusive")
        self.assertEqual(result.discount_total, 1500)

    def test_free_all_closes_without_payment(self):
        self.service.apply_discount(self.session_id, "shop")
        self.service.apply_discount(self.session_id, "free")
        result = self.leave(self.session_id)
        self.assertEqual(result.discount_total, 5000)
        self.assertEqual(result.session_status, "CLOSED")
        self.assertEqual(result.close_reason, "FREE_EXIT")

    def test_max_apply_count(self):
        self.service.apply_discount(self.session_id, "coupon")
        with self.assertRaises(RuleConflict):
            self.service.apply_discount(self.session_id, "coupon")

    def test_disabled_rule(self):
        with self.assertRaises(DiscountRuleNotFound):
            self.service.apply_discount(self.session_id, "retired")

    def test_value_override_and_audit(self):
        result = self.service.apply_discount(self.session_id, "shop", reason="complaint",
                                             value_override=2500, actor="ops-1")
        self.assertEqual(result.applied_value, 2500)
        audit = self.container.audit_log.list_for(self.session_id)
        self.assertEqual(audit[-1].action, AuditAction.DISCOUNT_APPLY)
        self.assertEqual(audit[-1].actor, "ops-1")
        self.assertEqual(len(self.events.of_type("session.discount_applied")), 1)


class TestAdministrativeOperations(LifecycleTestBase):
    """Force close, recalculation, correction and error marking"""

    def test_force_close_with_override(self):
        session_id = self.enter()
        self.leave(minutes=150)
        result = self.service.force_close(session_id, "gate jam", note="driver waiting",
                                          override_payment=True, actor="ops-1")

        self.assertEqual(result.final_status, "CLOSED")
        self.assertEqual(result.payment_status, "CANCELLED")
        self.assertEqual(result.outstanding_fee, 0)
        self.assertEqual(result.barrier_command.reason, "FORCE_CLOSE")
        session = self.service.get_session(session_id)
        self.assertEqual(session.close_reason, "FORCE_CLOSE")
        self.assertEqual(session.close_note, "gate jam: driver waiting")
        audit = self.container.audit_log.list_for(session_id)
        self.assertEqual(audit[-1].action, AuditAction.SESSION_FORCE_CLOSE)

    def test_force_close_keeps_receivable(self):
        session_id = self.enter()
        self.clock.advance(minutes=150)
        result = self.service.force_close(session_id, "towed", override_payment=False)
        self.assertEqual(result.payment_status, "PENDING")
        self.assertEqual(result.outstanding_fee, 5500)
        self.assertEqual(len(self.open_commands()), 1)

    def test_closed_session_is_immutable(self):
        session_id = self.enter()
        self.leave(minutes=150)
        self.service.confirm_payment(session_id, 5500)
        before = self.container.sessions.get(session_id)

        with self.assertRaises(InvalidTransition):
            self.service.force_close(session_id, "late", override_payment=True)
        with self.assertRaises(InvalidTransition):
            self.service.recalculate(session_id, "audit")
        with self.assertRaises(InvalidTransition):
            self.service.mark_error(session_id, "oops")
        with self.assertRaises(InvalidTransition):
            self.service.correct_session(session_id, "typo", plate_no="12가3457")

        after = self.container.sessions.get(session_id)
        self.assertEqual(after.version, before.version)
        self.assertEqual(after.to_dict(), before.to_dict())
        self.assertEqual(len(self.open_commands()), 1)

    def test_recalculate_on_another_plan(self):
        session_id = self.enter()
        self.leave(minutes=150)
        self.container.rate_plans.save(RatePlan("plan-cheap", SITE, "Cheap", dict(self.rules, additional_fee=100)))

        summary = self.service.recalculate(session_id, "promo week", rate_plan_id="plan-cheap", actor="ops-1")
        self.assertEqual(summary.rate_plan_id, "plan-cheap")
        self.assertEqual(summary.final_fee, 1000 + 9 * 100)

        audit = self.container.audit_log.list_for(session_id)[-1]
        self.assertEqual(audit.action, AuditAction.SESSION_RECALC)
        self.assertEqual(audit.detail["before"]["final_fee"], 5500)
        self.assertEqual(len(self.events.of_type("session.recalculated")), 1)

    def test_recalculate_needs_a_reason(self):
        session_id = self.enter()
        self.leave(minutes=150)
        for reason in ("", "   "):
            with self.assertRaises(ValueError):
                self.service.recalculate(session_id, reason)
        self.assertEqual(self.container.audit_log.list_for(session_id), [])

    def test_recalculate_rejects_plan_of_another_site(self):
        session_id = self.enter()
        self.leave(minutes=150)
        before = self.container.sessions.get(session_id)
        self.container.rate_plans.save(RatePlan("plan-other", "site-2", "Other", dict(self.rules, base_fee=1)))

        with self.assertRaises(RatePlanNotFound):
            self.service.recalculate(session_id, "promo week", rate_plan_id="plan-other")

        after = self.container.sessions.get(session_id)
        self.assertEqual(after.rate_plan_id, "plan-1")
        self.assertEqual(after.version, before.version)
        self.assertEqual(self.events.of_type("session.recalculated"), [])

    def test_correct_entry_time(self):
        session_id = self.enter()
        self.leave(minutes=150)
        result = self.service.correct_session(session_id, "camera clock drift",
                                              entry_at=ENTRY + timedelta(minutes=60))
        self.assertEqual(result.final_fee, 1000 + 3 * 500)
        self.assertIn("entry_at", result.changes)

    def test_correct_plate_respects_uniqueness(self):
        first = self.enter("12가3456")
        self.enter("34나5678")
        with self.assertRaises(DuplicateActiveSession):
            self.service.correct_session(first, "misread", plate_no="34나5678")
        self.assertEqual(self.service.get_session(first).plate_no, "12가3456")

    def test_correction_needs_reason(self):
        session_id = self.enter()
        with self.assertRaises(ValueError):
            self.service.correct_session(session_id, "  ", plate_no="12가3457")

    def test_mark_error(self):
        session_id = self.enter()
        session = self.service.mark_error(session_id, "duplicate plate read", actor="ops-1")
        self.assertEqual(session.status, "ERROR")
        self.assertIsNone(self.service.find_active_session("12가3456"))
        # the plate may enter again
        self.assertEqual(self.service.handle_entry_event("12가3456", "lane-in-1", SITE, ENTRY).outcome, "CREATED")

    def test_failed_barrier_does_not_roll_back_close(self):
        self.driver.failing_devices.add("gate-2")
        session_id = self.enter()
        self.leave(minutes=150)
        payment = self.service.confirm_payment(session_id, 5500)
        self.assertEqual(payment.session_status, "CLOSED")
        self.assertEqual(payment.barrier_command.status, CommandStatus.FAILED.value)
        self.assertEqual(self.service.get_session(session_id).status, "CLOSED")


if __name__ == '__main__':
    unittest.main(verbosity=2)
