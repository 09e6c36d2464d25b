# settlement.py - 任务审核结算：任务奖励 / 邀请奖励 / 群主收益
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import BillType, SettlementStatus, TaskAuditStatus
from database_setup import db_now, lock_clause
from exceptions import LedgerException, NotFound, SubmissionNotPending
from ledger_store import LedgerStore
from models import BatchResult, BillEntry, NewBill
from task_service import SqlTaskService

logger = logging.getLogger(__name__)


class SettlementOrchestrator:
    def __init__(self, session: Session, task_service: Optional[SqlTaskService] = None,
                 ledger: Optional[LedgerStore] = None):
        self.session = session
        self.task_service = task_service or SqlTaskService(session)
        self.ledger = ledger or LedgerStore(session)

    def settle_task_approval(self, task_id: int, member_id: int) -> List[BillEntry]:
        try:
            bills = self._settle(task_id, member_id)
            self.session.commit()
            return bills
        except Exception as e:
            self.session.rollback()
            logger.error(f"❌ 任务结算失败: 任务{task_id} 会员{member_id} | {e}")
            raise

    def _settle(self, task_id: int, member_id: int) -> List[BillEntry]:
        """调用方事务内结算，重复结算返回已有账单"""
        member = self.session.execute(
            text(f"SELECT id, inviter_id, group_id FROM members WHERE id = :id{lock_clause(self.session)}"),
            {"id": member_id}
        ).fetchone()
        if not member:
            raise NotFound('member', member_id)

        if self.ledger.find_by_task(task_id, member_id, BillType.TASK_REWARD):
            logger.info(f"ℹ️ 任务{task_id}已为会员{member_id}结算，返回已有账单")
            return self.ledger.list_for_task_approval(task_id, member_id)

        reward = self.task_service.get_task_reward(task_id)
        group_id = member.group_id or None

        bills = [self.ledger.append_numbered(NewBill(
            member_id=member_id,
            bill_type=BillType.TASK_REWARD,
            amount=reward,
            settlement_status=SettlementStatus.SETTLED,
            task_id=task_id,
            related_group_id=group_id,
            remark=f"完成任务[ID:{task_id}]收入"
        ))]
        logger.info(f"💰 任务奖励: 会员{member_id} +¥{reward:.2f}（任务{task_id}）")

        invite_bill = self._settle_invite_reward(task_id, member, reward, group_id)
        if invite_bill:
            bills.append(invite_bill)

        commission_bill = self._settle_owner_commission(task_id, member, reward, group_id)
        if commission_bill:
            bills.append(commission_bill)

        return bills

    def _settle_invite_reward(self, task_id: int, member, reward, group_id: Optional[int]) -> Optional[BillEntry]:
        if not member.inviter_id:
            return None

        policy = self.task_service.get_invite_reward_policy(task_id)
        if not policy.enabled:
            return None
        if policy.first_task_only and self.ledger.has_invite_reward_for(member.id):
            return None

        inviter = self.session.execute(
            text("SELECT id FROM members WHERE id = :id"),
            {"id": member.inviter_id}
        ).fetchone()
        if not inviter:
            logger.warning(f"⚠️ 邀请人{member.inviter_id}不存在，跳过邀请奖励")
            return None

        amount = policy.compute(reward)
        if amount <= 0:
            return None

        bill = self.ledger.append_numbered(NewBill(
            member_id=member.inviter_id,
            bill_type=BillType.INVITE_REWARD,
            amount=amount,
            task_id=task_id,
            related_member_id=member.id,
            related_group_id=group_id,
            remark=f"邀请会员[ID:{member.id}]完成任务[ID:{task_id}]奖励"
        ))
        logger.info(f"🎁 邀请奖励: 会员{member.inviter_id} +¥{amount:.2f}（被邀请人{member.id}）")
        return bill

    def _settle_owner_commission(self, task_id: int, member, reward, group_id: Optional[int]) -> Optional[BillEntry]:
        if not group_id:
            return None

        group = self.session.execute(
            text("SELECT id, owner_id FROM `groups` WHERE id = :id"),
            {"id": group_id}
        ).fetchone()
        # 群主本人完成任务不给自己发收益
        if not group or not group.owner_id or group.owner_id == member.id:
            return None

        amount = self.task_service.get_commission_policy().compute(reward)
        if amount <= 0:
            return None

        bill = self.ledger.append_numbered(NewBill(
            member_id=group.owner_id,
            bill_type=BillType.GROUP_OWNER_COMMISSION,
            amount=amount,
            task_id=task_id,
            related_member_id=member.id,
            related_group_id=group_id,
            remark=f"群组[ID:{group_id}]成员[ID:{member.id}]完成任务[ID:{task_id}]群主收益"
        ))
        logger.info(f"👑 群主收益: 会员{group.owner_id} +¥{amount:.2f}（群组{group_id}）")
        return bill

    def approve_submitted_task(self, submitted_task_id: int, waiter_id: Optional[int] = None) -> Dict[str, Any]:
        try:
            row = self.session.execute(
                text(f"""SELECT id, task_id, member_id, task_audit_status FROM submitted_tasks
                         WHERE id = :id{lock_clause(self.session)}"""),
                {"id": submitted_task_id}
            ).fetchone()
            if not row:
                raise NotFound('submitted_task', submitted_task_id)

            if row.task_audit_status == TaskAuditStatus.REJECTED:
                raise SubmissionNotPending(submitted_task_id, row.task_audit_status)

            if row.task_audit_status == TaskAuditStatus.PENDING:
                group_row = self.session.execute(
                    text("SELECT group_id FROM members WHERE id = :id"),
                    {"id": row.member_id}
                ).fetchone()
                self.session.execute(
                    text("""UPDATE submitted_tasks SET task_audit_status = :status, related_group_id = :group_id,
                            waiter_id = :waiter_id, audit_time = :now WHERE id = :id"""),
                    {
                        "status": TaskAuditStatus.APPROVED.value,
                        "group_id": group_row.group_id if group_row else None,
                        "waiter_id": waiter_id,
                        "now": db_now(),
                        "id": submitted_task_id
                    }
                )

            bills = self._settle(row.task_id, row.member_id)
            self.session.commit()
            logger.info(f"✅ 任务提交{submitted_task_id}审核通过，生成/确认账单{len(bills)}条")
            return {
                "submitted_task_id": submitted_task_id,
                "task_id": row.task_id,
                "member_id": row.member_id,
                "bills": bills
            }
        except Exception as e:
            self.session.rollback()
            logger.error(f"❌ 任务提交{submitted_task_id}审核失败: {e}")
            raise

    def batch_approve_submitted_tasks(self, submitted_task_ids: List[int],
                                      waiter_id: Optional[int] = None) -> BatchResult:
        batch = BatchResult()
        for submitted_task_id in submitted_task_ids:
            try:
                result = self.approve_submitted_task(submitted_task_id, waiter_id)
                batch.add_success(id=submitted_task_id, bill_nos=[b.bill_no for b in result["bills"]])
            except LedgerException as e:
                batch.add_failure(id=submitted_task_id, reason_code=e.reason_code, params=e.params)
            except SQLAlchemyError as e:
                batch.add_failure(id=submitted_task_id, reason_code=LedgerException.reason_code,
                                  params={"error": str(e)})
        logger.info(f"✅ 任务批量审核完成: 成功{batch.success}个，失败{batch.failed}个")
        return batch
