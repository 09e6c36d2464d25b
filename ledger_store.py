# ledger_store.py - 账单台账存储（只追加，仅状态/备注可变）
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bill_numbering import BillNumberAllocator
from config import (
    BILL_NO_PREFIX, BILL_NO_MAX_RETRIES, BillType, SettlementStatus, WithdrawalStatus,
    SETTLEMENT_TRANSITIONS, DEFAULT_PAGE, DEFAULT_PAGE_SIZE,
)
from database_setup import db_now, lock_clause
from exceptions import (
    NotFound, DuplicateBillNo, ConstraintViolation, ImmutableFieldViolation,
    InvalidStatusTransition, InvalidAmount,
)
from models import BillEntry, NewBill, to_amount

logger = logging.getLogger(__name__)

BILL_COLUMNS = """id, bill_no, member_id, bill_type, amount, settlement_status, task_id, withdrawal_id,
                  related_member_id, related_group_id, remark, create_time, update_time"""

MUTABLE_FIELDS = frozenset({'settlement_status', 'remark'})


class LedgerStore:
    def __init__(self, session: Session, allocator: Optional[BillNumberAllocator] = None):
        self.session = session
        self.allocator = allocator or BillNumberAllocator()

    def append(self, entry: NewBill) -> BillEntry:
        """在调用方事务内插入一条账单；编号必须已分配"""
        if not entry.bill_no:
            raise ValueError("bill_no 未分配")
        self._check_amount(entry)
        self._check_references(entry)

        now = db_now()
        try:
            with self.session.begin_nested():
                result = self.session.execute(
                    text("""INSERT INTO bills (bill_no, member_id, bill_type, amount, settlement_status, task_id,
                                               withdrawal_id, related_member_id, related_group_id, remark,
                                               create_time, update_time)
                            VALUES (:bill_no, :member_id, :bill_type, :amount, :settlement_status, :task_id,
                                    :withdrawal_id, :related_member_id, :related_group_id, :remark,
                                    :create_time, :update_time)"""),
                    {
                        "bill_no": entry.bill_no,
                        "member_id": entry.member_id,
                        "bill_type": entry.bill_type.value,
                        "amount": to_amount(entry.amount),
                        "settlement_status": entry.settlement_status.value,
                        "task_id": entry.task_id,
                        "withdrawal_id": entry.withdrawal_id,
                        "related_member_id": entry.related_member_id,
                        "related_group_id": entry.related_group_id,
                        "remark": entry.remark,
                        "create_time": now,
                        "update_time": now
                    }
                )
        except IntegrityError as e:
            if self.get_by_bill_no(entry.bill_no) is not None:
                raise DuplicateBillNo(entry.bill_no) from e
            raise ConstraintViolation('bill', entry.bill_no) from e

        return self.get(result.lastrowid)

    def append_numbered(self, entry: NewBill, prefix: str = BILL_NO_PREFIX) -> BillEntry:
        """分配编号后追加，编号冲突时换新编号重试（有限次数）"""
        last_no = None
        for attempt in range(1, BILL_NO_MAX_RETRIES + 1):
            last_no = self.allocator.allocate(prefix)
            try:
                return self.append(entry.model_copy(update={"bill_no": last_no}))
            except DuplicateBillNo:
                logger.warning(f"⚠️ 账单编号冲突，重新生成 ({attempt}/{BILL_NO_MAX_RETRIES}): {last_no}")
        raise DuplicateBillNo(last_no, BILL_NO_MAX_RETRIES)

    def _check_amount(self, entry: NewBill) -> None:
        amount = to_amount(entry.amount)
        if entry.bill_type == BillType.WITHDRAWAL:
            if amount > 0:
                raise InvalidAmount(entry.amount)
        elif amount < 0:
            raise InvalidAmount(entry.amount)

    def _check_references(self, entry: NewBill) -> None:
        if not self._exists("SELECT id FROM members WHERE id = :id", entry.member_id):
            raise ConstraintViolation('member_id', entry.member_id)
        if entry.related_member_id is not None and \
                not self._exists("SELECT id FROM members WHERE id = :id", entry.related_member_id):
            raise ConstraintViolation('related_member_id', entry.related_member_id)
        if entry.task_id is not None and not self._exists("SELECT id FROM tasks WHERE id = :id", entry.task_id):
            raise ConstraintViolation('task_id', entry.task_id)
        if entry.withdrawal_id is not None:
            if entry.bill_type != BillType.WITHDRAWAL:
                raise ConstraintViolation('withdrawal_id', entry.withdrawal_id)
            if not self._exists("SELECT id FROM withdrawals WHERE id = :id", entry.withdrawal_id):
                raise ConstraintViolation('withdrawal_id', entry.withdrawal_id)

    def _exists(self, sql: str, entity_id: int) -> bool:
        return self.session.execute(text(sql), {"id": entity_id}).fetchone() is not None

    def get(self, bill_id: int) -> BillEntry:
        row = self.session.execute(
            text(f"SELECT {BILL_COLUMNS} FROM bills WHERE id = :id"),
            {"id": bill_id}
        ).fetchone()
        if not row:
            raise NotFound('bill', bill_id)
        return BillEntry.from_row(row)

    def get_by_bill_no(self, bill_no: str) -> Optional[BillEntry]:
        row = self.session.execute(
            text(f"SELECT {BILL_COLUMNS} FROM bills WHERE bill_no = :bill_no"),
            {"bill_no": bill_no}
        ).fetchone()
        return BillEntry.from_row(row) if row else None

    def find_by_task(self, task_id: int, member_id: int, bill_type: BillType) -> Optional[BillEntry]:
        row = self.session.execute(
            text(f"""SELECT {BILL_COLUMNS} FROM bills
                     WHERE task_id = :task_id AND member_id = :member_id AND bill_type = :bill_type
                     ORDER BY id LIMIT 1"""),
            {"task_id": task_id, "member_id": member_id, "bill_type": bill_type.value}
        ).fetchone()
        return BillEntry.from_row(row) if row else None

    def list_for_task_approval(self, task_id: int, member_id: int) -> List[BillEntry]:
        """某次任务审核产生的全部账单：本人任务奖励 + 以其为关联会员的邀请奖励/群主收益"""
        rows = self.session.execute(
            text(f"""SELECT {BILL_COLUMNS} FROM bills
                     WHERE task_id = :task_id
                     AND ((member_id = :member_id AND bill_type = 'task_reward')
                          OR (related_member_id = :member_id
                              AND bill_type IN ('invite_reward', 'group_owner_commission')))
                     ORDER BY id"""),
            {"task_id": task_id, "member_id": member_id}
        ).fetchall()
        return [BillEntry.from_row(r) for r in rows]

    def has_invite_reward_for(self, invitee_id: int) -> bool:
        row = self.session.execute(
            text("""SELECT id FROM bills
                    WHERE related_member_id = :invitee_id AND bill_type = 'invite_reward'
                    AND settlement_status != 'failed' LIMIT 1"""),
            {"invitee_id": invitee_id}
        ).fetchone()
        return row is not None

    def update(self, bill_id: int, changes: Dict[str, Any]) -> BillEntry:
        """仅允许修改 settlement_status / remark"""
        for field in changes:
            if field not in MUTABLE_FIELDS:
                raise ImmutableFieldViolation(bill_id, field)

        row = self.session.execute(
            text(f"SELECT settlement_status FROM bills WHERE id = :id{lock_clause(self.session)}"),
            {"id": bill_id}
        ).fetchone()
        if not row:
            raise NotFound('bill', bill_id)

        params = {"id": bill_id, "update_time": db_now()}
        assignments = ["update_time = :update_time"]

        if 'settlement_status' in changes:
            current = SettlementStatus(row.settlement_status)
            try:
                target = SettlementStatus(changes['settlement_status'])
            except ValueError:
                raise InvalidStatusTransition(bill_id, current.value, str(changes['settlement_status']))
            if target != current and target not in SETTLEMENT_TRANSITIONS[current]:
                raise InvalidStatusTransition(bill_id, current.value, target.value)
            assignments.append("settlement_status = :settlement_status")
            params["settlement_status"] = target.value

        if 'remark' in changes:
            assignments.append("remark = :remark")
            params["remark"] = changes['remark']

        self.session.execute(
            text(f"UPDATE bills SET {', '.join(assignments)} WHERE id = :id"),
            params
        )
        return self.get(bill_id)

    def update_status(self, bill_id: int, new_status: SettlementStatus, remark: Optional[str] = None) -> BillEntry:
        changes: Dict[str, Any] = {"settlement_status": new_status}
        if remark is not None:
            changes["remark"] = remark
        bill = self.update(bill_id, changes)
        logger.info(f"📝 账单{bill.bill_no}状态 -> {bill.settlement_status}")
        return bill

    def get_balance(self, member_id: int) -> Decimal:
        """可用余额 = 已结算账单合计 - 待处理提现占用"""
        if not self._exists("SELECT id FROM members WHERE id = :id", member_id):
            raise NotFound('member', member_id)

        result = self.session.execute(
            text("SELECT SUM(amount) as total FROM bills WHERE member_id = :member_id AND settlement_status = 'settled'"),
            {"member_id": member_id}
        )
        settled = to_amount(result.fetchone().total)

        result = self.session.execute(
            text("SELECT SUM(amount) as total FROM withdrawals WHERE member_id = :member_id AND withdrawal_status = :status"),
            {"member_id": member_id, "status": WithdrawalStatus.PENDING.value}
        )
        reserved = to_amount(result.fetchone().total)
        return settled - reserved

    def list_bills(self, member_id: Optional[int] = None, bill_type: Optional[str] = None,
                   settlement_status: Optional[str] = None, start_time: Optional[str] = None,
                   end_time: Optional[str] = None, page: int = DEFAULT_PAGE,
                   page_size: int = DEFAULT_PAGE_SIZE) -> Dict[str, Any]:
        where = "WHERE 1=1"
        params: Dict[str, Any] = {}

        if member_id:
            where += " AND member_id = :member_id"
            params["member_id"] = member_id
        if bill_type:
            where += " AND bill_type = :bill_type"
            params["bill_type"] = bill_type
        if settlement_status:
            where += " AND settlement_status = :settlement_status"
            params["settlement_status"] = settlement_status
        if start_time:
            where += " AND create_time >= :start_time"
            params["start_time"] = start_time
        if end_time:
            where += " AND create_time <= :end_time"
            params["end_time"] = end_time

        total = self.session.execute(text(f"SELECT COUNT(*) as total FROM bills {where}"), params).fetchone().total

        rows = self.session.execute(
            text(f"""SELECT {BILL_COLUMNS} FROM bills {where}
                     ORDER BY create_time DESC, id DESC LIMIT :page_size OFFSET :offset"""),
            {**params, "page_size": page_size, "offset": (page - 1) * page_size}
        ).fetchall()

        return {
            "total": total,
            "page": page,
            "page_size": page_size,
            "list": [BillEntry.from_row(r) for r in rows]
        }
