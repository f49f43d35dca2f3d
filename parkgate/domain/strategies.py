# File: parkgate/domain/strategies.py
"""
Pricing Strategies for the ParkGate session engine

Implements the Strategy pattern for fee computation. A strategy turns
(entry time, exit time, rate rules) into a FeeBreakdown whose `raw_fee`
is the amount owed before discounts.

Rules of the standard strategy:
- elapsed time is counted in whole minutes (floor)
- stays within the free period cost nothing
- the base fee covers the first `base_minutes` of chargeable time
- every started `additional_minutes` unit after that is billed in full
- the total is capped at `daily_max` when that cap is positive

Time-band profiles (night, weekend, weekend night) replace the base and
additional terms when the entry time falls in their window. Each profile
has its own enable flag under the `time_based_enabled` master switch.
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, Union
from datetime import datetime, time
import logging
import math

from .models import RateRules, TimeBasedRate, FeeBreakdown, RateRuleInvalid


RulesLike = Union[RateRules, Dict[str, Any]]


# ============================================================================
# STRATEGY INTERFACE
# ============================================================================

class PricingStrategy(ABC):
    """
    Abstract base class for pricing strategies
    Defines the interface for fee calculation algorithms
    """

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def calculate_fee(
        self,
        entry_at: datetime,
        exit_at: datetime,
        rules: RulesLike,
        rate_plan_id: Optional[str] = None,
        rate_plan_name: Optional[str] = None
    ) -> FeeBreakdown:
        """
        Calculate the raw fee for a stay
        Returns: breakdown including raw_fee
        Raises: RateRuleInvalid for malformed rules
        """
        pass

    def raw_fee(self, entry_at: datetime, exit_at: datetime, rules: RulesLike) -> int:
        """Convenience wrapper returning only the amount"""
        return self.calculate_fee(entry_at, exit_at, rules).raw_fee

    @staticmethod
    def _coerce_rules(rules: RulesLike) -> RateRules:
        if isinstance(rules, RateRules):
            return rules
        return RateRules.from_dict(rules)

    def get_strategy_name(self) -> str:
        return self.__class__.__name__


# ============================================================================
# TIME BANDS
# ============================================================================

def is_weekend(moment: datetime) -> bool:
    """Saturday or Sunday"""
    return moment.weekday() >= 5


def is_night_time(moment: datetime, night_start: time, night_end: time) -> bool:
    """Night windows may wrap midnight, e.g. 22:00-06:00"""
    current = moment.hour * 60 + moment.minute
    start = night_start.hour * 60 + night_start.minute
    end = night_end.hour * 60 + night_end.minute
    if start > end:
        return current >= start or current < end
    return start <= current < end


def determine_rate_type(entry_at: datetime, rules: RateRules) -> str:
    """
    Pick the fee profile for a stay from its entry time.
    Returns one of 'default', 'night', 'weekend', 'weekend_night'.
    """
    if not rules.time_based_enabled:
        return 'default'

    weekend = is_weekend(entry_at)
    night = False
    if rules.night_rate_enabled and rules.night_start is not None and rules.night_end is not None:
        night = is_night_time(entry_at, rules.night_start, rules.night_end)

    use_weekend_night = rules.weekend_night_rate_enabled and rules.weekend_night_rate is not None
    use_weekend = rules.weekend_rate_enabled and rules.weekend_rate is not None
    use_night = rules.night_rate_enabled and rules.night_rate is not None

    if use_weekend_night and weekend and night:
        return 'weekend_night'
    if use_weekend and weekend and not night:
        return 'weekend'
    if use_night and night and not weekend:
        return 'night'
    # weekend night without a dedicated profile
    if use_weekend and weekend:
        return 'weekend'
    if use_night and night:
        return 'night'
    return 'default'


def _profile_for(rules: RateRules, rate_type: str) -> TimeBasedRate:
    default = TimeBasedRate(
        base_minutes=rules.base_minutes,
        base_fee=rules.base_fee,
        additional_minutes=rules.additional_minutes,
        additional_fee=rules.additional_fee,
        daily_max=rules.daily_max,
    )
    if rate_type == 'night':
        return rules.night_rate or default
    if rate_type == 'weekend':
        return rules.weekend_rate or default
    if rate_type == 'weekend_night':
        return rules.weekend_night_rate or rules.weekend_rate or default
    return default


def elapsed_minutes(entry_at: datetime, exit_at: datetime) -> int:
    """Whole minutes between entry and exit; an exit before entry counts as zero"""
    seconds = (exit_at - entry_at).total_seconds()
    return max(0, int(seconds // 60))


# ============================================================================
# CONCRETE STRATEGIES
# ============================================================================

class StandardPricingStrategy(PricingStrategy):
    """
    Strategy: free period, base block, ceiling-rounded additional units,
    optional daily cap. Undercharging is never acceptable, so a started
    additional unit is billed in full.
    """

    def calculate_fee(
        self,
        entry_at: datetime,
        exit_at: datetime,
        rules: RulesLike,
        rate_plan_id: Optional[str] = None,
        rate_plan_name: Optional[str] = None
    ) -> FeeBreakdown:
        parsed = self._coerce_rules(rules)
        parking_minutes = elapsed_minutes(entry_at, exit_at)
        rate_type = determine_rate_type(entry_at, parsed)
        profile = _profile_for(parsed, rate_type)

        if parking_minutes <= parsed.free_minutes:
            return FeeBreakdown(
                parking_minutes=parking_minutes,
                free_minutes_applied=parking_minutes,
                chargeable_minutes=0,
                base_minutes=0,
                base_fee=0,
                additional_minutes=0,
                additional_fee=0,
                subtotal=0,
                daily_max_applied=False,
                daily_max_cap=profile.daily_max,
                raw_fee=0,
                applied_rate_type=rate_type,
                rate_plan_id=rate_plan_id,
                rate_plan_name=rate_plan_name,
            )

        chargeable = parking_minutes - parsed.free_minutes
        base_used = min(chargeable, profile.base_minutes)
        fee = profile.base_fee
        remaining = chargeable - base_used

        additional_used = 0
        additional_total = 0
        if remaining > 0:
            if profile.additional_minutes <= 0:
                raise RateRuleInvalid(
                    f"additional_minutes must be positive to bill {remaining} extra minutes"
                )
            units = math.ceil(remaining / profile.additional_minutes)
            additional_used = units * profile.additional_minutes
            additional_total = units * profile.additional_fee
            fee += additional_total

        capped = profile.daily_max > 0 and fee > profile.daily_max
        raw_fee = profile.daily_max if capped else fee

        self.logger.debug(
            f"Priced {parking_minutes} min ({rate_type}): subtotal={fee}, raw={raw_fee}"
        )
        return FeeBreakdown(
            parking_minutes=parking_minutes,
            free_minutes_applied=parsed.free_minutes,
            chargeable_minutes=chargeable,
            base_minutes=base_used,
            base_fee=profile.base_fee,
            additional_minutes=additional_used,
            additional_fee=additional_total,
            subtotal=fee,
            daily_max_applied=capped,
            daily_max_cap=profile.daily_max,
            raw_fee=raw_fee,
            applied_rate_type=rate_type,
            rate_plan_id=rate_plan_id,
            rate_plan_name=rate_plan_name,
        )


class PricingStrategyFactory:
    """Registry of pricing strategies by name"""

    _strategies = {
        "standard": StandardPricingStrategy,
    }

    @classmethod
    def create(cls, name: str = "standard") -> PricingStrategy:
        strategy_class = cls._strategies.get(name)
        if strategy_class is None:
            raise ValueError(f"Unknown pricing strategy: {name}")
        return strategy_class()
