# models.py - 台账领域模型
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from config import (
    AMOUNT_QUANTUM, AssignmentReason, BillType, SettlementStatus, WithdrawalStatus,
)
from database_setup import format_datetime


def to_amount(value: Any) -> Decimal:
    return Decimal(str(value if value is not None else 0)).quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)


class NewBill(BaseModel):
    member_id: int
    bill_type: BillType
    amount: Decimal
    settlement_status: SettlementStatus = SettlementStatus.SETTLED
    bill_no: Optional[str] = None
    task_id: Optional[int] = None
    withdrawal_id: Optional[int] = None
    related_member_id: Optional[int] = None
    related_group_id: Optional[int] = None
    remark: Optional[str] = None


class BillEntry(BaseModel):
    id: int
    bill_no: str
    member_id: int
    bill_type: BillType
    amount: Decimal
    settlement_status: SettlementStatus
    task_id: Optional[int] = None
    withdrawal_id: Optional[int] = None
    related_member_id: Optional[int] = None
    related_group_id: Optional[int] = None
    remark: Optional[str] = None
    create_time: Optional[str] = None
    update_time: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_row(cls, row) -> "BillEntry":
        data = dict(row._mapping)
        data['amount'] = to_amount(data['amount'])
        data['create_time'] = format_datetime(data.get('create_time'))
        data['update_time'] = format_datetime(data.get('update_time'))
        return cls(**data)


class Withdrawal(BaseModel):
    id: int
    bill_no: str
    member_id: int
    amount: Decimal
    withdrawal_status: WithdrawalStatus
    reject_reason: Optional[str] = None
    apply_time: Optional[str] = None
    process_time: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_row(cls, row) -> "Withdrawal":
        data = dict(row._mapping)
        data['amount'] = to_amount(data['amount'])
        data['apply_time'] = format_datetime(data.get('apply_time'))
        data['process_time'] = format_datetime(data.get('process_time'))
        return cls(**data)


PLACED_REASONS = frozenset({
    AssignmentReason.ALREADY_IN_GROUP,
    AssignmentReason.ASSIGNED_TO_INVITER_GROUP,
    AssignmentReason.ASSIGNED_TO_OTHER_GROUP,
})


class Assignment(BaseModel):
    """分群结果；NoAssignment 也用它表示（group_id 为 None）"""
    member_id: int
    group_id: Optional[int] = None
    reason: AssignmentReason
    params: Dict[str, Any] = Field(default_factory=dict)

    @property
    def assigned(self) -> bool:
        return self.reason in PLACED_REASONS and self.group_id is not None


class BatchResult(BaseModel):
    success: int = 0
    failed: int = 0
    results: List[Dict[str, Any]] = Field(default_factory=list)

    def add_success(self, **item) -> None:
        self.success += 1
        self.results.append({"success": True, **item})

    def add_failure(self, **item) -> None:
        self.failed += 1
        self.results.append({"success": False, **item})
