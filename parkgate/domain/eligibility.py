# File: parkgate/domain/eligibility.py
"""
Eligibility resolution: blacklist, VIP whitelist and memberships.

The resolver is read-only. A plate can sit on several lists at once;
the blacklist always wins, so a blacklisted VIP is still refused.
"""

from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable
from datetime import datetime
import logging

from .models import Eligibility, ExemptionKind, normalize_plate


@runtime_checkable
class EligibilityDirectory(Protocol):
    """Lookups backed by the administrative lists"""

    def is_blacklisted(self, site_id: str, plate_no: str, at: datetime) -> bool:
        ...

    def is_vip(self, site_id: str, plate_no: str, at: datetime) -> bool:
        ...

    def is_member_active(self, site_id: str, plate_no: str, at: datetime) -> bool:
        ...


@dataclass(frozen=True)
class EligibilityDecision:
    status: Eligibility
    exemption: Optional[ExemptionKind] = None

    @property
    def is_blocked(self) -> bool:
        return self.status == Eligibility.BLOCKED

    @property
    def is_exempt(self) -> bool:
        return self.status == Eligibility.EXEMPT


class EligibilityResolver:
    """Maps a plate at a point in time to BLOCKED, EXEMPT or NORMAL"""

    def __init__(self, directory: EligibilityDirectory):
        self.directory = directory
        self._logger = logging.getLogger(self.__class__.__name__)

    def resolve(self, site_id: str, plate_no: str, at: datetime) -> EligibilityDecision:
        plate = normalize_plate(plate_no)

        if self.directory.is_blacklisted(site_id, plate, at):
            self._logger.info(f"Plate {plate} is blacklisted at site {site_id}")
            return EligibilityDecision(Eligibility.BLOCKED)

        if self.directory.is_vip(site_id, plate, at):
            return EligibilityDecision(Eligibility.EXEMPT, ExemptionKind.VIP)

        if self.directory.is_member_active(site_id, plate, at):
            return EligibilityDecision(Eligibility.EXEMPT, ExemptionKind.MEMBERSHIP)

        return EligibilityDecision(Eligibility.NORMAL)
