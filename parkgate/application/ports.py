# File: parkgate/application/ports.py
"""
Ports the application layer consumes from the outside world.

Storage ports (SessionRepository, catalogs) live with their
implementations in infrastructure.repositories; eligibility lookups are
described by domain.eligibility.EligibilityDirectory.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Callable, List, Protocol, runtime_checkable
from datetime import datetime

from ..domain.models import BarrierAction, DomainEvent


Clock = Callable[[], datetime]


@dataclass(frozen=True)
class DriverResult:
    """What the physical driver reports for one command"""
    executed: bool
    detail: Optional[str] = None

    @classmethod
    def ok(cls, detail: Optional[str] = None) -> 'DriverResult':
        return cls(True, detail)

    @classmethod
    def failed(cls, detail: str) -> 'DriverResult':
        return cls(False, detail)


class BarrierDriver(ABC):
    """Sends one instruction to one barrier device"""

    @abstractmethod
    def send_command(self, device_id: str, action: BarrierAction) -> DriverResult:
        """
        Must not hang forever; the gateway also bounds the call with its
        own timeout. Exceptions are treated as a failed command.
        """
        pass


@runtime_checkable
class EventPublisher(Protocol):
    """Where committed domain events go (EventNotifier in production)"""

    def publish(self, event: DomainEvent) -> None:
        ...

    def publish_all(self, events: List[DomainEvent]) -> None:
        ...
