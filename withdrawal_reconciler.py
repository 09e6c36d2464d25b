# withdrawal_reconciler.py - 提现申请与处理
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from bill_numbering import BillNumberAllocator
from config import (
    BILL_NO_MAX_RETRIES, WITHDRAWAL_BILL_NO_PREFIX, BillType, SettlementStatus, WithdrawalStatus,
    DEFAULT_PAGE, DEFAULT_PAGE_SIZE,
)
from database_setup import db_now, lock_clause
from exceptions import (
    LedgerException, NotFound, DuplicateBillNo, AlreadyResolved, InsufficientBalance, InvalidAmount,
)
from ledger_store import LedgerStore
from models import BatchResult, NewBill, Withdrawal, to_amount

logger = logging.getLogger(__name__)

WITHDRAWAL_COLUMNS = "id, bill_no, member_id, amount, withdrawal_status, reject_reason, apply_time, process_time"


class WithdrawalReconciler:
    def __init__(self, session: Session, ledger: Optional[LedgerStore] = None,
                 allocator: Optional[BillNumberAllocator] = None):
        self.session = session
        self.allocator = allocator or BillNumberAllocator()
        self.ledger = ledger or LedgerStore(session, self.allocator)

    def get(self, withdrawal_id: int) -> Withdrawal:
        row = self.session.execute(
            text(f"SELECT {WITHDRAWAL_COLUMNS} FROM withdrawals WHERE id = :id"),
            {"id": withdrawal_id}
        ).fetchone()
        if not row:
            raise NotFound('withdrawal', withdrawal_id)
        return Withdrawal.from_row(row)

    def _insert_pending(self, member_id: int, amount: Decimal) -> int:
        last_no = None
        for attempt in range(1, BILL_NO_MAX_RETRIES + 1):
            last_no = self.allocator.allocate(WITHDRAWAL_BILL_NO_PREFIX)
            try:
                with self.session.begin_nested():
                    result = self.session.execute(
                        text("""INSERT INTO withdrawals (bill_no, member_id, amount, withdrawal_status, apply_time)
                                VALUES (:bill_no, :member_id, :amount, :status, :apply_time)"""),
                        {
                            "bill_no": last_no,
                            "member_id": member_id,
                            "amount": amount,
                            "status": WithdrawalStatus.PENDING.value,
                            "apply_time": db_now()
                        }
                    )
                return result.lastrowid
            except IntegrityError:
                logger.warning(f"⚠️ 提现编号冲突，重新生成 ({attempt}/{BILL_NO_MAX_RETRIES}): {last_no}")
        raise DuplicateBillNo(last_no, BILL_NO_MAX_RETRIES)

    def request_withdrawal(self, member_id: int, amount: Any) -> Withdrawal:
        try:
            try:
                amount_decimal = to_amount(amount)
            except InvalidOperation:
                raise InvalidAmount(amount)
            if amount_decimal <= 0:
                raise InvalidAmount(amount)

            member = self.session.execute(
                text(f"SELECT id FROM members WHERE id = :id{lock_clause(self.session)}"),
                {"id": member_id}
            ).fetchone()
            if not member:
                raise NotFound('member', member_id)

            available = self.ledger.get_balance(member_id)
            if available < amount_decimal:
                raise InsufficientBalance(member_id, amount_decimal, available)

            withdrawal_id = self._insert_pending(member_id, amount_decimal)
            withdrawal = self.get(withdrawal_id)
            self.session.commit()
            logger.info(f"💸 提现申请 #{withdrawal_id} {withdrawal.bill_no}: 会员{member_id} ¥{amount_decimal:.2f}")
            return withdrawal

        except Exception as e:
            self.session.rollback()
            logger.error(f"❌ 提现申请失败: 会员{member_id} | {e}")
            raise

    def resolve(self, withdrawal_id: int, outcome: WithdrawalStatus, reason: Optional[str] = None) -> Withdrawal:
        outcome = WithdrawalStatus(outcome)
        if outcome == WithdrawalStatus.PENDING:
            raise ValueError("提现处理结果只能是 success 或 failed")

        try:
            row = self.session.execute(
                text(f"SELECT {WITHDRAWAL_COLUMNS} FROM withdrawals WHERE id = :id{lock_clause(self.session)}"),
                {"id": withdrawal_id}
            ).fetchone()
            if not row:
                raise NotFound('withdrawal', withdrawal_id)
            if row.withdrawal_status != WithdrawalStatus.PENDING:
                raise AlreadyResolved(withdrawal_id, row.withdrawal_status)

            self.session.execute(
                text("""UPDATE withdrawals SET withdrawal_status = :status, reject_reason = :reason,
                        process_time = :now WHERE id = :id"""),
                {
                    "status": outcome.value,
                    "reason": reason if outcome == WithdrawalStatus.FAILED else None,
                    "now": db_now(),
                    "id": withdrawal_id
                }
            )

            if outcome == WithdrawalStatus.SUCCESS:
                # 与提现记录共用同一编号
                self.ledger.append(NewBill(
                    bill_no=row.bill_no,
                    member_id=row.member_id,
                    bill_type=BillType.WITHDRAWAL,
                    amount=-to_amount(row.amount),
                    settlement_status=SettlementStatus.SETTLED,
                    withdrawal_id=withdrawal_id,
                    remark=f"提现到账 #{withdrawal_id}"
                ))
                logger.info(f"✅ 提现成功 #{withdrawal_id} {row.bill_no}: ¥{to_amount(row.amount):.2f}")
            else:
                logger.info(f"❌ 提现失败 #{withdrawal_id} {row.bill_no}: {reason or ''}")

            withdrawal = self.get(withdrawal_id)
            self.session.commit()
            return withdrawal

        except Exception as e:
            self.session.rollback()
            logger.error(f"❌ 提现处理失败 #{withdrawal_id}: {e}")
            raise

    def batch_resolve(self, withdrawal_ids: List[int], outcome: WithdrawalStatus,
                      reason: Optional[str] = None) -> BatchResult:
        batch = BatchResult()
        for withdrawal_id in withdrawal_ids:
            try:
                withdrawal = self.resolve(withdrawal_id, outcome, reason)
                batch.add_success(id=withdrawal_id, bill_no=withdrawal.bill_no,
                                  withdrawal_status=withdrawal.withdrawal_status.value)
            except LedgerException as e:
                batch.add_failure(id=withdrawal_id, reason_code=e.reason_code, params=e.params)
            except SQLAlchemyError as e:
                batch.add_failure(id=withdrawal_id, reason_code=LedgerException.reason_code,
                                  params={"error": str(e)})
        logger.info(f"✅ 提现批量处理完成: 成功{batch.success}笔，失败{batch.failed}笔")
        return batch

    def list_withdrawals(self, member_id: Optional[int] = None, withdrawal_status: Optional[str] = None,
                         page: int = DEFAULT_PAGE, page_size: int = DEFAULT_PAGE_SIZE) -> Dict[str, Any]:
        where = "WHERE 1=1"
        params: Dict[str, Any] = {}
        if member_id:
            where += " AND member_id = :member_id"
            params["member_id"] = member_id
        if withdrawal_status:
            where += " AND withdrawal_status = :withdrawal_status"
            params["withdrawal_status"] = withdrawal_status

        total = self.session.execute(text(f"SELECT COUNT(*) as total FROM withdrawals {where}"), params).fetchone().total
        rows = self.session.execute(
            text(f"""SELECT {WITHDRAWAL_COLUMNS} FROM withdrawals {where}
                     ORDER BY apply_time DESC, id DESC LIMIT :page_size OFFSET :offset"""),
            {**params, "page_size": page_size, "offset": (page - 1) * page_size}
        ).fetchall()

        return {
            "total": total,
            "page": page,
            "page_size": page_size,
            "list": [Withdrawal.from_row(r) for r in rows]
        }
