# File: parkgate/application/barrier_gateway.py
"""
Barrier Command Gateway

Every barrier instruction is written to the command ledger as PENDING
before the driver is called, then settled as EXECUTED or FAILED.

Responsibilities:
1. Resolve lane -> device
2. Deduplicate by (correlation id, action) inside a time window
3. Call the driver on a worker pool, bounded by a timeout
4. Publish BarrierCommandResult for every settled command
5. Emergency open of every known device, with an audit entry

A failed or timed-out command is reported, never raised: the session
transition that asked for it has already been committed.
"""

from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Dict, List, Optional, Tuple
from datetime import datetime, timedelta
import logging

from ..domain.models import (
    BarrierCommand, BarrierAction, BarrierReason, CommandStatus,
    BarrierCommandResult, AuditEntry, AuditAction
)
from ..infrastructure.repositories import BarrierCommandRepository, AuditLogRepository
from .ports import BarrierDriver, DriverResult, EventPublisher, Clock
from .dtos import BarrierCommandDTO, EmergencyOpenResultDTO


class BarrierCommandGateway:
    """Idempotent, time-bounded front door to the barrier driver"""

    def __init__(
        self,
        commands: BarrierCommandRepository,
        driver: BarrierDriver,
        device_map: Dict[str, str],
        publisher: Optional[EventPublisher] = None,
        audit_log: Optional[AuditLogRepository] = None,
        timeout_seconds: float = 3.0,
        dedup_window_seconds: float = 10.0,
        max_workers: int = 4,
        clock: Clock = datetime.now
    ):
        self.commands = commands
        self.driver = driver
        self.device_map = dict(device_map)
        self.publisher = publisher
        self.audit_log = audit_log
        self.timeout_seconds = timeout_seconds
        self.dedup_window = timedelta(seconds=dedup_window_seconds)
        self._clock = clock
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="barrier")
        self.logger = logging.getLogger(self.__class__.__name__)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def issue_command(
        self,
        lane_id: str,
        action: BarrierAction,
        reason: BarrierReason,
        correlation_id: str
    ) -> BarrierCommandDTO:
        """
        Issue one command and wait for its outcome.

        A repeat of (correlation_id, action) inside the dedup window
        returns the earlier command (deduplicated=True) without calling
        the driver. FAILED commands do not block a retry.
        """
        command, deduplicated = self._open_ledger_entry(lane_id, action, reason, correlation_id)
        if deduplicated:
            return BarrierCommandDTO.from_command(command, deduplicated=True)

        future = self._dispatch(command)
        self._settle(command, future)
        return BarrierCommandDTO.from_command(command)

    def emergency_open_all(self, reason: str, actor: Optional[str] = None) -> EmergencyOpenResultDTO:
        """
        Open every known device at once. Devices are driven in parallel
        and each outcome is independent of the others.
        """
        now = self._clock()
        batch_id = f"emergency_{now.strftime('%Y%m%d%H%M%S%f')}"
        self.logger.warning(f"Emergency open of all barriers ({batch_id}): {reason}")

        lanes_by_device: Dict[str, str] = {}
        for lane_id, device_id in self.device_map.items():
            lanes_by_device.setdefault(device_id, lane_id)

        # Step 1: ledger entries, then every driver call in flight together
        pending: List[Tuple[BarrierCommand, Optional[Future]]] = []
        for device_id, lane_id in sorted(lanes_by_device.items()):
            command, deduplicated = self._open_ledger_entry(
                lane_id, BarrierAction.OPEN, BarrierReason.EMERGENCY, f"{batch_id}:{device_id}"
            )
            pending.append((command, None if deduplicated else self._dispatch(command)))

        # Step 2: settle each one independently
        results = []
        for command, future in pending:
            if future is not None:
                self._settle(command, future)
            results.append(BarrierCommandDTO.from_command(command))

        succeeded = sum(1 for r in results if r.status == CommandStatus.EXECUTED.value)
        outcome = EmergencyOpenResultDTO(
            correlation_id=batch_id,
            reason=f"EMERGENCY: {reason}",
            total=len(results),
            succeeded=succeeded,
            failed=len(results) - succeeded,
            commands=results,
        )

        if self.audit_log is not None:
            self.audit_log.add(AuditEntry(
                action=AuditAction.EMERGENCY_OPEN_ALL,
                entity_type="barrier",
                entity_id=batch_id,
                detail={
                    "reason": reason,
                    "total": outcome.total,
                    "succeeded": outcome.succeeded,
                    "failed": outcome.failed,
                    "failed_devices": [r.device_id for r in results if not r.executed],
                },
                actor=actor,
                created_at=now,
            ))

        if outcome.failed:
            self.logger.error(f"Emergency open {batch_id}: {outcome.failed}/{outcome.total} device(s) failed")
        return outcome

    def recent_commands(self, limit: int = 50) -> List[BarrierCommandDTO]:
        return [BarrierCommandDTO.from_command(c) for c in self.commands.list_recent(limit)]

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _open_ledger_entry(
        self,
        lane_id: str,
        action: BarrierAction,
        reason: BarrierReason,
        correlation_id: str
    ) -> Tuple[BarrierCommand, bool]:
        """
        Return (command, deduplicated); new commands are stored PENDING.
        The key claim is atomic in the ledger, so gateways sharing one
        store never both drive the same (correlation id, action).
        """
        now = self._clock()
        command = BarrierCommand(
            lane_id=lane_id,
            device_id=self.device_map.get(lane_id),
            action=action,
            reason=reason,
            correlation_id=correlation_id,
            created_at=now,
        )
        if self.dedup_window <= timedelta(0):
            self.commands.add(command)
            return command, False

        stored, created = self.commands.claim(command, now - self.dedup_window)
        if not created:
            self.logger.info(
                f"Duplicate {action.value} for {correlation_id}: returning command {stored.id}"
            )
        return stored, not created

    def _dispatch(self, command: BarrierCommand) -> Optional[Future]:
        if command.device_id is None:
            return None
        return self._executor.submit(self.driver.send_command, command.device_id, command.action)

    def _settle(self, command: BarrierCommand, future: Optional[Future]) -> None:
        if future is None:
            result = DriverResult.failed(f"unknown lane {command.lane_id}")
        else:
            try:
                result = future.result(timeout=self.timeout_seconds)
            except FutureTimeout:
                future.cancel()
                result = DriverResult.failed(f"timeout after {self.timeout_seconds}s")
            except Exception as e:
                result = DriverResult.failed(f"driver error: {e}")

        command.status = CommandStatus.EXECUTED if result.executed else CommandStatus.FAILED
        command.detail = result.detail
        command.executed_at = self._clock()
        self.commands.update(command)

        if result.executed:
            self.logger.info(
                f"Barrier {command.action.value} on {command.lane_id}/{command.device_id} "
                f"executed ({command.reason.value}, {command.correlation_id})"
            )
        else:
            self.logger.error(
                f"Barrier {command.action.value} on {command.lane_id} failed: {result.detail}"
            )

        if self.publisher is not None:
            self.publisher.publish(BarrierCommandResult(command))
