# exceptions.py - 台账异常体系
# 每个异常携带 reason_code + params，文案由 messages.render 在表现层生成
from decimal import Decimal
from typing import Any, Dict, Optional


class LedgerException(Exception):
    reason_code = 'ledger.error'

    def __init__(self, message: str, params: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.params = params or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"reason_code": self.reason_code, "params": self.params}


class NotFound(LedgerException):
    reason_code = 'ledger.notFound'

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity}不存在: {entity_id}", {"entity": entity, "id": entity_id})
        self.entity = entity
        self.entity_id = entity_id


class DuplicateBillNo(LedgerException):
    reason_code = 'ledger.duplicateBillNo'

    def __init__(self, bill_no: str, attempts: int = 1):
        super().__init__(
            f"账单编号重复: {bill_no}（已尝试{attempts}次）",
            {"billNo": bill_no, "attempts": attempts}
        )
        self.bill_no = bill_no


class ConstraintViolation(LedgerException):
    reason_code = 'ledger.constraintViolation'

    def __init__(self, field: str, value: Any):
        super().__init__(f"引用无效: {field}={value}", {"field": field, "value": value})
        self.field = field


class ImmutableFieldViolation(LedgerException):
    reason_code = 'ledger.immutableField'

    def __init__(self, bill_id: int, field: str):
        super().__init__(f"账单{bill_id}的字段 {field} 不可修改", {"billId": bill_id, "field": field})
        self.field = field


class InvalidStatusTransition(LedgerException):
    reason_code = 'ledger.invalidStatusTransition'

    def __init__(self, bill_id: int, current: str, target: str):
        super().__init__(
            f"账单{bill_id}状态不能从 {current} 变更为 {target}",
            {"billId": bill_id, "current": current, "target": target}
        )


class CapacityExceeded(LedgerException):
    reason_code = 'group.capacityExceeded'

    def __init__(self, group_id: int, max_members: int):
        super().__init__(
            f"群组(ID:{group_id})成员数已达到上限（{max_members}人）",
            {"groupId": group_id, "maxMembers": max_members}
        )
        self.group_id = group_id
        self.max_members = max_members


class AlreadyResolved(LedgerException):
    reason_code = 'withdrawal.alreadyResolved'

    def __init__(self, withdrawal_id: int, status: str):
        super().__init__(
            f"提现记录{withdrawal_id}已处理（{status}）",
            {"withdrawalId": withdrawal_id, "status": status}
        )


class InsufficientBalance(LedgerException):
    reason_code = 'withdrawal.insufficientBalance'

    def __init__(self, member_id: int, required: Decimal, available: Decimal):
        super().__init__(
            f"余额不足: 会员{member_id} | 需要: ¥{required:.2f} | 当前: ¥{available:.2f}",
            {"memberId": member_id, "required": f"{required:.2f}", "available": f"{available:.2f}"}
        )
        self.member_id = member_id
        self.required = required
        self.available = available


class InvalidAmount(LedgerException):
    reason_code = 'ledger.invalidAmount'

    def __init__(self, amount: Any):
        super().__init__(f"金额无效: {amount}", {"amount": str(amount)})


class SubmissionNotPending(LedgerException):
    reason_code = 'task.notPending'

    def __init__(self, submitted_task_id: int, status: str):
        super().__init__(
            f"任务提交{submitted_task_id}当前状态为 {status}，无法审核通过",
            {"submittedTaskId": submitted_task_id, "status": status}
        )
