# File: parkgate/infrastructure/factories.py
"""
Factory Pattern Implementation for the ParkGate session engine

Builds the object graph behind SessionLifecycleService from Settings:
1. Storage Factories - in-memory or SQLAlchemy repositories and catalogs
2. Driver Factories - mock or HTTP barrier driver
3. Service Factories - gateway, notifier and lifecycle service wired together

Key Benefits:
- One place decides which implementation backs each port
- Tests and the demo get the same wiring as production, minus I/O
"""

from dataclasses import dataclass
from typing import Optional, Union
from datetime import datetime
import logging

from ..domain.strategies import PricingStrategyFactory
from ..domain.eligibility import EligibilityResolver
from ..application.ports import BarrierDriver, Clock
from ..application.barrier_gateway import BarrierCommandGateway
from ..application.session_service import SessionLifecycleService
from .config import Settings
from .drivers import MockBarrierDriver, HttpBarrierDriver
from .messaging import EventNotifier, MessageBrokerFactory, MessageQueue, MessageQueueForwarder
from .repositories import (
    SessionRepository, BarrierCommandRepository, AuditLogRepository,
    InMemorySessionRepository, InMemoryBarrierCommandRepository, InMemoryAuditLogRepository,
    InMemoryRatePlanCatalog, InMemoryDiscountRuleCatalog, InMemoryEligibilityDirectory,
    SQLAlchemyStore, SQLAlchemySessionRepository, SQLAlchemyBarrierCommandRepository,
    SQLAlchemyAuditLogRepository, SQLAlchemyRatePlanCatalog, SQLAlchemyDiscountRuleCatalog,
    SQLAlchemyEligibilityDirectory
)


logger = logging.getLogger(__name__)


@dataclass
class ParkGateContainer:
    """Everything the entry point needs, already wired"""
    settings: Settings
    service: SessionLifecycleService
    gateway: BarrierCommandGateway
    notifier: EventNotifier
    sessions: SessionRepository
    commands: BarrierCommandRepository
    audit_log: AuditLogRepository
    rate_plans: Union[InMemoryRatePlanCatalog, SQLAlchemyRatePlanCatalog]
    discount_rules: Union[InMemoryDiscountRuleCatalog, SQLAlchemyDiscountRuleCatalog]
    eligibility: Union[InMemoryEligibilityDirectory, SQLAlchemyEligibilityDirectory]
    driver: BarrierDriver
    store: Optional[SQLAlchemyStore] = None
    queue: Optional[MessageQueue] = None

    def shutdown(self) -> None:
        self.gateway.shutdown()
        self.notifier.shutdown()
        if self.queue is not None:
            self.queue.close()
        if self.store is not None:
            self.store.dispose()


class DriverFactory:
    """Factory for barrier drivers"""

    @staticmethod
    def create(settings: Settings) -> BarrierDriver:
        if settings.barrier_driver == "http":
            urls = {lane.device_id: lane.url for lane in settings.lanes.values() if lane.url}
            return HttpBarrierDriver(urls, timeout_seconds=settings.barrier_timeout_seconds)
        return MockBarrierDriver()


class ServiceFactory:
    """Factory for fully wired lifecycle services"""

    @staticmethod
    def create(
        settings: Settings,
        driver: Optional[BarrierDriver] = None,
        notifier: Optional[EventNotifier] = None,
        clock: Clock = datetime.now
    ) -> ParkGateContainer:
        """
        Wire storage, driver, gateway and service according to settings.
        `driver` and `notifier` override the configured ones (tests).
        """
        settings.validate()
        store = None
        if settings.storage == "sql":
            store = SQLAlchemyStore(settings.database_url)
            store.create_schema()
            sessions = SQLAlchemySessionRepository(store)
            commands = SQLAlchemyBarrierCommandRepository(store)
            audit_log = SQLAlchemyAuditLogRepository(store)
            rate_plans = SQLAlchemyRatePlanCatalog(store)
            discount_rules = SQLAlchemyDiscountRuleCatalog(store)
            eligibility = SQLAlchemyEligibilityDirectory(store)
        else:
            sessions = InMemorySessionRepository()
            commands = InMemoryBarrierCommandRepository()
            audit_log = InMemoryAuditLogRepository()
            rate_plans = InMemoryRatePlanCatalog()
            discount_rules = InMemoryDiscountRuleCatalog()
            eligibility = InMemoryEligibilityDirectory()

        notifier = notifier or EventNotifier.threaded()
        queue = None
        if settings.redis_url:
            queue = MessageBrokerFactory.create("redis", settings.redis_url)
            MessageQueueForwarder(queue, settings.event_topic).attach(notifier)
            logger.info(f"Forwarding events to {settings.event_topic} on {settings.redis_url}")

        driver = driver or DriverFactory.create(settings)
        gateway = BarrierCommandGateway(
            commands,
            driver,
            settings.device_map,
            publisher=notifier,
            audit_log=audit_log,
            timeout_seconds=settings.barrier_timeout_seconds,
            dedup_window_seconds=settings.barrier_dedup_window_seconds,
            max_workers=settings.barrier_workers,
            clock=clock,
        )
        service = SessionLifecycleService(
            sessions,
            rate_plans,
            discount_rules,
            EligibilityResolver(eligibility),
            gateway,
            publisher=notifier,
            audit_log=audit_log,
            pricing=PricingStrategyFactory.create(settings.pricing_strategy),
            clock=clock,
            default_site_id=settings.default_site_id,
        )
        logger.info(f"ParkGate wired with {settings.storage} storage and {settings.barrier_driver} driver")

        return ParkGateContainer(
            settings=settings,
            service=service,
            gateway=gateway,
            notifier=notifier,
            sessions=sessions,
            commands=commands,
            audit_log=audit_log,
            rate_plans=rate_plans,
            discount_rules=discount_rules,
            eligibility=eligibility,
            driver=driver,
            store=store,
            queue=queue,
        )

    @staticmethod
    def create_in_memory(
        settings: Optional[Settings] = None,
        driver: Optional[BarrierDriver] = None,
        clock: Clock = datetime.now
    ) -> ParkGateContainer:
        """In-memory wiring with inline event delivery (tests and demo)"""
        settings = settings or Settings(log_dir=None)
        settings.storage = "memory"
        settings.redis_url = None
        return ServiceFactory.create(settings, driver=driver, notifier=EventNotifier(), clock=clock)
