# File: parkgate/application/dtos.py
"""
Data Transfer Objects returned by the application services

DTO Principles:
- Validation at creation (pydantic)
- Plain values only: enums travel as their string values
- No business logic, only data
"""

from typing import Dict, List, Optional, Any
from datetime import datetime
import json
from pydantic import BaseModel, Field, ConfigDict

from ..domain.models import BarrierCommand, BarrierCommandFailed
from ..domain.aggregates import ParkingSession


# ============================================================================
# BASE DTO CLASSES
# ============================================================================

class BaseDTO(BaseModel):
    """Base DTO with common functionality"""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        use_enum_values=True,
    )

    def to_dict(self, exclude_none: bool = False, **kwargs) -> Dict[str, Any]:
        return self.model_dump(exclude_none=exclude_none, **kwargs)

    def to_json(self, **kwargs) -> str:
        return self.model_dump_json(**kwargs)

    @classmethod
    def from_json(cls, json_str: str) -> 'BaseDTO':
        return cls(**json.loads(json_str))


# ============================================================================
# BARRIER DTOs
# ============================================================================

class BarrierCommandDTO(BaseDTO):
    id: str
    lane_id: str
    device_id: Optional[str] = None
    action: str
    reason: str
    correlation_id: str
    status: str
    detail: Optional[str] = None
    created_at: datetime
    executed_at: Optional[datetime] = None
    deduplicated: bool = Field(default=False, description="Returned from the ledger without new I/O")

    @classmethod
    def from_command(cls, command: BarrierCommand, deduplicated: bool = False) -> 'BarrierCommandDTO':
        return cls(
            id=command.id,
            lane_id=command.lane_id,
            device_id=command.device_id,
            action=command.action.value,
            reason=command.reason.value,
            correlation_id=command.correlation_id,
            status=command.status.value,
            detail=command.detail,
            created_at=command.created_at,
            executed_at=command.executed_at,
            deduplicated=deduplicated,
        )

    @property
    def executed(self) -> bool:
        return self.status == "EXECUTED"

    def raise_for_status(self) -> 'BarrierCommandDTO':
        """For callers that cannot continue without the barrier moving"""
        if self.status == "FAILED":
            raise BarrierCommandFailed(self.id, self.detail or "no detail")
        return self


class EmergencyOpenResultDTO(BaseDTO):
    """Per-device outcome of an open-all"""
    correlation_id: str
    reason: str
    total: int
    succeeded: int
    failed: int
    commands: List[BarrierCommandDTO] = Field(default_factory=list)


# ============================================================================
# SESSION DTOs
# ============================================================================

class SessionDTO(BaseDTO):
    id: str
    site_id: str
    plate_no: str
    status: str
    entry_lane_id: str
    exit_lane_id: Optional[str] = None
    entry_at: datetime
    exit_at: Optional[datetime] = None
    rate_plan_id: str
    raw_fee: int = Field(ge=0)
    discount_total: int = Field(ge=0)
    final_fee: int = Field(ge=0)
    payment_status: str
    exempt: Optional[str] = None
    close_reason: Optional[str] = None
    close_note: Optional[str] = None
    error_detail: Optional[str] = None
    fee_breakdown: Optional[Dict[str, Any]] = None
    discounts: List[Dict[str, Any]] = Field(default_factory=list)
    version: int

    @classmethod
    def from_session(cls, session: ParkingSession) -> 'SessionDTO':
        return cls(
            id=session.id,
            site_id=session.site_id,
            plate_no=session.plate_no,
            status=session.status.value,
            entry_lane_id=session.entry_lane_id,
            exit_lane_id=session.exit_lane_id,
            entry_at=session.entry_at,
            exit_at=session.exit_at,
            rate_plan_id=session.rate_plan_id,
            raw_fee=session.raw_fee,
            discount_total=session.discount_total,
            final_fee=session.final_fee,
            payment_status=session.payment_status.value,
            exempt=session.exempt_kind.value if session.exempt_kind else None,
            close_reason=session.close_reason.value if session.close_reason else None,
            close_note=session.close_note,
            error_detail=session.error_detail,
            fee_breakdown=session.fee_breakdown,
            discounts=[
                {
                    "id": line.id,
                    "rule_id": line.rule_id,
                    "rule_name": line.rule_name,
                    "type": line.discount_type.value,
                    "applied_value": line.applied_value,
                    "reason": line.reason,
                    "applied_at": line.applied_at.isoformat(),
                }
                for line in session.discounts
            ],
            version=session.version,
        )


class EntryResultDTO(BaseDTO):
    """
    outcome: CREATED, DUPLICATE (plate already parked, existing id
    returned) or REJECTED (blacklisted; no session)
    """
    outcome: str
    plate_no: str
    session_id: Optional[str] = None
    rejected_reason: Optional[str] = None
    exempt: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.outcome != "REJECTED"


class ExitResultDTO(BaseDTO):
    session_id: str
    session_status: str
    raw_fee: int
    discount_total: int
    final_fee: int
    fee_due: int
    payment_required: bool
    close_reason: Optional[str] = None
    barrier_command: Optional[BarrierCommandDTO] = None


class PaymentResultDTO(BaseDTO):
    session_id: str
    session_status: str
    payment_status: str
    already_settled: bool = False
    barrier_command: Optional[BarrierCommandDTO] = None


class ForceCloseResultDTO(BaseDTO):
    session_id: str
    final_status: str
    payment_status: str
    outstanding_fee: int = 0
    barrier_command: Optional[BarrierCommandDTO] = None


class FeeSummaryDTO(BaseDTO):
    session_id: str
    raw_fee: int
    discount_total: int
    final_fee: int
    rate_plan_id: Optional[str] = None


class DiscountResultDTO(BaseDTO):
    session_id: str
    rule_id: str
    applied_value: int
    discount_total: int
    final_fee: int


class CorrectionResultDTO(FeeSummaryDTO):
    changes: Dict[str, Any] = Field(default_factory=dict)
