# group_assignor.py - 会员自动分群（容量约束）与账号批量审核
import logging
from typing import List, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import AccountAuditStatus, AssignmentReason
from database_setup import db_now, lock_clause
from exceptions import LedgerException, NotFound, CapacityExceeded
from models import Assignment, BatchResult
from task_service import SqlTaskService

logger = logging.getLogger(__name__)

# 账号审核失败原因（与 AssignmentReason 一起交给 messages 渲染）
ACCOUNT_NOT_PENDING = 'noPendingAccounts'
ACCOUNT_NO_MEMBER = 'notAssociatedWithMember'


class GroupAssignor:
    def __init__(self, session: Session, task_service: Optional[SqlTaskService] = None):
        self.session = session
        self.task_service = task_service or SqlTaskService(session)

    def _lock_member(self, member_id: int):
        row = self.session.execute(
            text(f"SELECT id, nickname, inviter_id, group_id FROM members WHERE id = :id{lock_clause(self.session)}"),
            {"id": member_id}
        ).fetchone()
        if not row:
            raise NotFound('member', member_id)
        return row

    def _lock_group(self, group_id: int):
        return self.session.execute(
            text(f"SELECT id, group_name, owner_id, max_members FROM `groups` WHERE id = :id{lock_clause(self.session)}"),
            {"id": group_id}
        ).fetchone()

    def count_members(self, group_id: int) -> int:
        return self.session.execute(
            text("SELECT COUNT(*) FROM members WHERE group_id = :group_id"),
            {"group_id": group_id}
        ).scalar()

    def _max_members(self, group) -> int:
        if group.max_members is not None:
            return int(group.max_members)
        return self.task_service.get_max_group_members()

    def is_group_owner(self, member_id: int) -> bool:
        row = self.session.execute(
            text("SELECT id FROM `groups` WHERE owner_id = :member_id LIMIT 1"),
            {"member_id": member_id}
        ).fetchone()
        return row is not None

    def _try_join(self, member_id: int, group_id: int) -> None:
        """锁定群组行后计数并加入；满员抛 CapacityExceeded"""
        group = self._lock_group(group_id)
        if not group:
            raise NotFound('group', group_id)
        max_members = self._max_members(group)
        if self.count_members(group_id) >= max_members:
            raise CapacityExceeded(group_id, max_members)

        self.session.execute(
            text("UPDATE members SET group_id = :group_id, update_time = :now WHERE id = :member_id AND group_id IS NULL"),
            {"group_id": group_id, "now": db_now(), "member_id": member_id}
        )

    def place(self, member_id: int) -> Assignment:
        """在调用方事务内执行分群，不提交"""
        member = self._lock_member(member_id)

        if member.group_id:
            return Assignment(member_id=member_id, group_id=member.group_id,
                              reason=AssignmentReason.ALREADY_IN_GROUP)

        if not member.inviter_id:
            return Assignment(member_id=member_id, reason=AssignmentReason.NO_INVITER,
                              params={"nickname": member.nickname})

        # 邀请人群组须真实存在
        inviter = self.session.execute(
            text("""SELECT m.id, m.group_id FROM members m
                    JOIN `groups` g ON g.id = m.group_id
                    WHERE m.id = :id"""),
            {"id": member.inviter_id}
        ).fetchone()
        if not inviter or not inviter.group_id:
            return Assignment(member_id=member_id, reason=AssignmentReason.INVITER_NO_GROUP,
                              params={"inviterId": member.inviter_id})

        inviter_group_id = inviter.group_id
        try:
            self._try_join(member_id, inviter_group_id)
            logger.info(f"👥 会员{member_id}分配到邀请人群组{inviter_group_id}")
            return Assignment(member_id=member_id, group_id=inviter_group_id,
                              reason=AssignmentReason.ASSIGNED_TO_INVITER_GROUP,
                              params={"groupId": inviter_group_id})
        except CapacityExceeded as e:
            logger.info(f"⚠️ 邀请人群组已满: {e}")

        inviter_group = self._lock_group(inviter_group_id)
        if not inviter_group.owner_id:
            return Assignment(member_id=member_id, reason=AssignmentReason.INVITER_NO_OWNER,
                              params={"groupId": inviter_group_id})

        candidates = self.session.execute(
            text("SELECT id FROM `groups` WHERE owner_id = :owner_id AND id != :group_id ORDER BY id ASC"),
            {"owner_id": inviter_group.owner_id, "group_id": inviter_group_id}
        ).fetchall()

        for candidate in candidates:
            try:
                self._try_join(member_id, candidate.id)
            except CapacityExceeded:
                continue
            logger.info(f"👥 会员{member_id}分配到群主{inviter_group.owner_id}名下群组{candidate.id}")
            return Assignment(member_id=member_id, group_id=candidate.id,
                              reason=AssignmentReason.ASSIGNED_TO_OTHER_GROUP,
                              params={"groupId": candidate.id, "ownerId": inviter_group.owner_id})

        return Assignment(member_id=member_id, reason=AssignmentReason.INVITER_ALL_GROUP_FULL,
                          params={"ownerId": inviter_group.owner_id})

    def assign(self, member_id: int) -> Assignment:
        try:
            assignment = self.place(member_id)
            self.session.commit()
            return assignment
        except Exception as e:
            self.session.rollback()
            logger.error(f"❌ 自动分群失败: 会员{member_id} | {e}")
            raise

    def approve_accounts(self, account_ids: List[int], waiter_id: Optional[int] = None) -> BatchResult:
        """逐个账号审核通过：需先成功分群（或已在群中），每个账号独立事务"""
        batch = BatchResult()

        for account_id in account_ids:
            try:
                account = self.session.execute(
                    text(f"""SELECT id, member_id, account_audit_status FROM accounts
                             WHERE id = :id{lock_clause(self.session)}"""),
                    {"id": account_id}
                ).fetchone()
                if not account:
                    raise NotFound('account', account_id)

                if account.account_audit_status != AccountAuditStatus.PENDING:
                    self.session.rollback()
                    batch.add_failure(id=account_id, reason_code=ACCOUNT_NOT_PENDING, params={})
                    continue

                if not account.member_id:
                    self.session.rollback()
                    batch.add_failure(id=account_id, reason_code=ACCOUNT_NO_MEMBER, params={})
                    continue

                assignment = self.place(account.member_id)
                if not assignment.assigned:
                    self.session.rollback()
                    batch.add_failure(id=account_id, member_id=account.member_id,
                                      reason_code=assignment.reason.value, params=assignment.params)
                    continue

                self.session.execute(
                    text("""UPDATE accounts SET account_audit_status = :status, waiter_id = :waiter_id,
                            audit_time = :now WHERE id = :id"""),
                    {"status": AccountAuditStatus.APPROVED.value, "waiter_id": waiter_id,
                     "now": db_now(), "id": account_id}
                )
                self.session.commit()
                batch.add_success(id=account_id, member_id=account.member_id, group_id=assignment.group_id,
                                  reason_code=assignment.reason.value, params=assignment.params)

            except LedgerException as e:
                self.session.rollback()
                logger.error(f"❌ 账号{account_id}审核失败: {e}")
                batch.add_failure(id=account_id, reason_code=e.reason_code, params=e.params)
            except SQLAlchemyError as e:
                self.session.rollback()
                logger.error(f"❌ 账号{account_id}审核失败: {e}")
                batch.add_failure(id=account_id, reason_code=LedgerException.reason_code, params={"error": str(e)})

        logger.info(f"✅ 账号批量审核完成: 成功{batch.success}个，失败{batch.failed}个")
        return batch
