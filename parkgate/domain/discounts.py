# File: parkgate/domain/discounts.py
"""
Discount Engine

Folds an ordered list of tagged DiscountRequests over a raw fee.

- FREE_ALL short-circuits: the whole raw fee is discounted and no other
  request is evaluated.
- AMOUNT takes its value off what remains.
- PERCENT takes floor(remaining * value / 100) off what remains.
- FREE_MINUTES re-prices the stay with extra free minutes and takes the
  difference.

Stacking is checked against the session ledger before anything is
folded: a non-stackable rule must be the only rule on the session, and
a rule may not exceed its max_apply_count.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple
from datetime import datetime
import logging

from .models import (
    DiscountType, DiscountRequest, DiscountApplication, RateRules,
    RuleConflict
)
from .strategies import PricingStrategy, StandardPricingStrategy


@dataclass(frozen=True)
class FeeContext:
    """What FREE_MINUTES needs to re-price a stay"""
    entry_at: datetime
    exit_at: datetime
    rules: RateRules
    strategy: PricingStrategy = field(default_factory=StandardPricingStrategy)

    def raw_fee_with_extra_free_minutes(self, minutes: int) -> int:
        return self.strategy.calculate_fee(
            self.entry_at, self.exit_at, self.rules.with_extra_free_minutes(minutes)
        ).raw_fee


@dataclass
class DiscountOutcome:
    """Result of a fold: total plus the amount each request contributed"""
    raw_fee: int
    discount_total: int
    applied: List[Tuple[DiscountRequest, int]] = field(default_factory=list)

    @property
    def final_fee(self) -> int:
        return max(self.raw_fee - self.discount_total, 0)

    def applied_value_of(self, index: int) -> int:
        return self.applied[index][1]


class DiscountEngine:
    """Interpreter over DiscountRequest values"""

    def __init__(self):
        self._logger = logging.getLogger(self.__class__.__name__)

    # ------------------------------------------------------------------
    # Stacking rules
    # ------------------------------------------------------------------

    def check_stacking(
        self,
        new_requests: Sequence[DiscountRequest],
        ledger: Sequence[DiscountApplication] = ()
    ) -> None:
        """Raise RuleConflict if `new_requests` cannot join `ledger`"""
        prior: List[Tuple[str, bool]] = [(line.rule_id, line.is_stackable) for line in ledger]

        for request in new_requests:
            if not request.is_stackable and prior:
                raise RuleConflict(
                    f"Discount '{request.rule_name}' is not stackable and the session "
                    f"already carries {len(prior)} discount(s)"
                )
            blocking = next((rule_id for rule_id, stackable in prior if not stackable), None)
            if blocking is not None:
                raise RuleConflict(
                    f"Discount '{request.rule_name}' cannot be combined with "
                    f"non-stackable rule {blocking}"
                )
            if request.max_apply_count is not None:
                used = sum(1 for rule_id, _ in prior if rule_id == request.rule_id)
                if used >= request.max_apply_count:
                    raise RuleConflict(
                        f"Discount '{request.rule_name}' already applied "
                        f"{used}/{request.max_apply_count} time(s)"
                    )
            prior.append((request.rule_id, request.is_stackable))

    # ------------------------------------------------------------------
    # Folding
    # ------------------------------------------------------------------

    def evaluate(
        self,
        raw_fee: int,
        requests: Sequence[DiscountRequest],
        fee_context: Optional[FeeContext] = None
    ) -> DiscountOutcome:
        """Fold `requests` in order; the total stays within [0, raw_fee]"""
        if raw_fee < 0:
            raise ValueError(f"Raw fee cannot be negative: {raw_fee}")

        free_all = next(
            (i for i, r in enumerate(requests) if r.discount_type == DiscountType.FREE_ALL),
            None
        )
        if free_all is not None:
            applied = [(r, raw_fee if i == free_all else 0) for i, r in enumerate(requests)]
            return DiscountOutcome(raw_fee=raw_fee, discount_total=raw_fee, applied=applied)

        remaining = raw_fee
        applied = []
        for request in requests:
            amount = self._amount_for(request, raw_fee, remaining, fee_context)
            amount = max(0, min(amount, remaining))
            remaining -= amount
            applied.append((request, amount))

        total = max(0, min(raw_fee - remaining, raw_fee))
        self._logger.debug(f"Folded {len(requests)} discount(s) over {raw_fee}: total={total}")
        return DiscountOutcome(raw_fee=raw_fee, discount_total=total, applied=applied)

    def apply(
        self,
        raw_fee: int,
        new_requests: Sequence[DiscountRequest],
        ledger: Sequence[DiscountApplication] = (),
        fee_context: Optional[FeeContext] = None
    ) -> DiscountOutcome:
        """
        Validate `new_requests` against the ledger, then fold the ledger
        followed by the new requests. The new requests' contributions are
        the last len(new_requests) entries of `applied`.
        """
        self.check_stacking(new_requests, ledger)
        replay = [line.as_request() for line in ledger] + list(new_requests)
        return self.evaluate(raw_fee, replay, fee_context)

    def _amount_for(
        self,
        request: DiscountRequest,
        raw_fee: int,
        remaining: int,
        fee_context: Optional[FeeContext]
    ) -> int:
        if request.discount_type == DiscountType.AMOUNT:
            return request.value

        if request.discount_type == DiscountType.PERCENT:
            percent = max(0, min(request.value, 100))
            return remaining * percent // 100

        if request.discount_type == DiscountType.FREE_MINUTES:
            if fee_context is None:
                raise ValueError("FREE_MINUTES discounts need the stay's fee context")
            discounted = fee_context.raw_fee_with_extra_free_minutes(request.value)
            return max(0, raw_fee - discounted)

        raise ValueError(f"Unsupported discount type: {request.discount_type}")
