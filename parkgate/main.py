# File: parkgate/main.py
"""
Command line entry point for the ParkGate session engine

    python -m parkgate.main demo            scripted entry / exit / payment run
    python -m parkgate.main config          print the effective settings
"""

import argparse
import json
import logging
import os
import sys
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import List, Optional

from .domain.models import (
    RatePlan, DiscountRule, DiscountType, VipEntry, BlacklistEntry,
    DEFAULT_RATE_RULES, ParkGateError
)
from .infrastructure.config import Settings, LaneConfig, load_settings, ConfigurationError
from .infrastructure.factories import ServiceFactory
from .infrastructure.messaging import EventRecorder, ALL_EVENTS


def setup_logging(level: str = "INFO", log_dir: Optional[str] = "logs") -> logging.Logger:
    """Setup application logging configuration"""
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(os.path.join(log_dir, 'parkgate.log')))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )
    return logging.getLogger("parkgate")


def run_demo(settings: Settings) -> int:
    """Entry, discount, exit and payment for one visitor; a VIP and a blacklisted plate"""
    logger = logging.getLogger("parkgate.demo")
    if not settings.lanes:
        settings.lanes = {
            "lane-in-1": LaneConfig("lane-in-1", "gate-1"),
            "lane-out-1": LaneConfig("lane-out-1", "gate-2"),
        }
    settings.barrier_driver = "mock"
    container = ServiceFactory.create_in_memory(settings)
    recorder = EventRecorder()
    container.notifier.subscribe(ALL_EVENTS, recorder)
    site = settings.default_site_id
    service = container.service

    container.rate_plans.save(RatePlan("plan-default", site, "Default", dict(DEFAULT_RATE_RULES), is_active=True))
    container.discount_rules.save(DiscountRule("shop-1000", "Shop validation", DiscountType.AMOUNT, 1000))
    container.eligibility.add_vip(VipEntry(plate_no="11가1111", site_id=site, name="Director"))
    container.eligibility.add_blacklist(BlacklistEntry(plate_no="99허9999", site_id=site, reason="unpaid"))

    start = datetime.now().replace(second=0, microsecond=0) - timedelta(hours=3)
    try:
        visitor = service.handle_entry_event("12가 3456", "lane-in-1", site, start)
        vip = service.handle_entry_event("11가1111", "lane-in-1", site, start)
        blocked = service.handle_entry_event("99허9999", "lane-in-1", site, start)
        logger.info(f"Blacklisted entry outcome: {blocked.outcome}")

        service.apply_discount(visitor.session_id, "shop-1000", reason="receipt #1042")
        exit_result = service.handle_exit_event("12가3456", "lane-out-1", start + timedelta(minutes=150), site)
        print(exit_result.to_json(indent=2))

        payment = service.confirm_payment(exit_result.session_id, exit_result.fee_due)
        print(payment.to_json(indent=2))
        service.confirm_payment(exit_result.session_id, exit_result.fee_due)

        vip_exit = service.handle_exit_event(vip.session_id, "lane-out-1", start + timedelta(hours=3), site)
        print(vip_exit.to_json(indent=2))
    except ParkGateError as e:
        logger.error(f"Demo failed: {e}")
        return 1
    finally:
        container.shutdown()

    print(f"\n{len(recorder.events)} events published:")
    for event in recorder.events:
        print(json.dumps(event.to_dict(), ensure_ascii=False))
    print(f"\n{len(container.commands.list_recent())} barrier command(s) recorded")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="parkgate",
        description="Parking session lifecycle and fee engine",
    )
    parser.add_argument('-c', '--config', help='YAML settings file (default: $PARKGATE_CONFIG)')
    parser.add_argument('--log-level', help='Override the configured log level')
    subparsers = parser.add_subparsers(dest='command', required=True)
    subparsers.add_parser('demo', help='Run a scripted session scenario in memory')
    subparsers.add_parser('config', help='Print the effective settings')
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    logger = setup_logging(args.log_level or settings.log_level, settings.log_dir)
    logger.info(f"Starting ParkGate ({args.command})")

    if args.command == 'config':
        print(json.dumps(asdict(settings), indent=2, default=str))
        return 0
    return run_demo(settings)


if __name__ == "__main__":
    sys.exit(main())
