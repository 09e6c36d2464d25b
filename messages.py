# messages.py - 原因码 -> 展示文案（zh-CN / en-US）
import logging
from typing import Any, Dict, Optional

from config import DEFAULT_LANG

logger = logging.getLogger(__name__)

CATALOGS: Dict[str, Dict[str, str]] = {
    'zh-CN': {
        # 自动分群 / 账号审核
        'alreadyInGroup': '会员已有群组，审核通过',
        'noInviter': '会员【{nickname}】没有邀请人，无法自动分配群组',
        'inviterNoGroup': '邀请人没有所属群，无法自动分配群组',
        'assignedToInviterGroup': '分配到邀请人的群组',
        'inviterNoOwner': '邀请人所在群组已满且没有群主',
        'inviterAllGroupFull': '邀请人所在群组已满，且该群主名下所有群组均已满员',
        'assignedToOtherGroup': '分配到群主名下的其他群组',
        'noPendingAccounts': '账号状态已变更，无法审核',
        'notAssociatedWithMember': '账号未关联会员',
        'auditSuccess': '成功审核通过 {success} 个账号，{failed} 个账号审核失败',
        'taskAuditSuccess': '成功审核通过 {success} 个任务，{failed} 个任务审核失败',
        'withdrawalBatchSuccess': '成功处理 {success} 笔提现，{failed} 笔处理失败',
        # 异常
        'ledger.error': '操作失败',
        'ledger.notFound': '{entity}不存在（ID:{id}）',
        'ledger.duplicateBillNo': '账单编号重复：{billNo}',
        'ledger.constraintViolation': '关联数据无效：{field}={value}',
        'ledger.immutableField': '账单字段 {field} 不可修改',
        'ledger.invalidStatusTransition': '账单状态不能从 {current} 变更为 {target}',
        'ledger.invalidAmount': '金额无效：{amount}',
        'group.capacityExceeded': '群组(ID:{groupId})成员数已达到上限（{maxMembers}人）',
        'withdrawal.alreadyResolved': '提现记录已处理（{status}）',
        'withdrawal.insufficientBalance': '账户余额不足',
        'task.notPending': '任务提交状态为 {status}，无法审核通过',
    },
    'en-US': {
        'alreadyInGroup': 'Member already has a group, approved',
        'noInviter': 'Member【{nickname}】has no inviter, cannot automatically assign a group',
        'inviterNoGroup': 'Inviter has no group, cannot automatically assign a group',
        'assignedToInviterGroup': "Assigned to inviter's group",
        'inviterNoOwner': "Inviter's group is full and has no owner",
        'inviterAllGroupFull': "Inviter's group is full and all groups under the owner are full",
        'assignedToOtherGroup': 'Assigned to other group under the owner',
        'noPendingAccounts': 'Account status has been changed, cannot audit',
        'notAssociatedWithMember': 'Account is not associated with a member',
        'auditSuccess': 'Successfully approved {success} accounts, {failed} accounts audit failed',
        'taskAuditSuccess': 'Successfully approved {success} tasks, {failed} tasks audit failed',
        'withdrawalBatchSuccess': 'Successfully processed {success} withdrawals, {failed} failed',
        'ledger.error': 'Operation failed',
        'ledger.notFound': '{entity} not found (ID:{id})',
        'ledger.duplicateBillNo': 'Duplicate bill number: {billNo}',
        'ledger.constraintViolation': 'Invalid reference: {field}={value}',
        'ledger.immutableField': 'Bill field {field} cannot be modified',
        'ledger.invalidStatusTransition': 'Bill status cannot change from {current} to {target}',
        'ledger.invalidAmount': 'Invalid amount: {amount}',
        'group.capacityExceeded': 'Group (ID:{groupId}) has reached the maximum number of members ({maxMembers})',
        'withdrawal.alreadyResolved': 'Withdrawal has already been processed ({status})',
        'withdrawal.insufficientBalance': 'Insufficient account balance',
        'task.notPending': 'Submitted task is {status} and cannot be approved',
    },
}


class _SafeParams(dict):
    def __missing__(self, key):
        return '{' + key + '}'


def resolve_lang(accept_language: Optional[str]) -> str:
    """取 Accept-Language 中第一个可用语言，如 'en-US,en;q=0.9' -> 'en-US'"""
    if not accept_language:
        return DEFAULT_LANG
    for part in accept_language.split(','):
        tag = part.split(';')[0].strip()
        if tag in CATALOGS:
            return tag
        for lang in CATALOGS:
            if tag and lang.split('-')[0] == tag.split('-')[0]:
                return lang
    return DEFAULT_LANG


def render(reason_code: str, params: Optional[Dict[str, Any]] = None, lang: Optional[str] = None) -> str:
    template = CATALOGS.get(lang or DEFAULT_LANG, {}).get(reason_code)
    if template is None:
        template = CATALOGS.get(DEFAULT_LANG, {}).get(reason_code)
    if template is None:
        logger.warning(f"⚠️ 未找到文案: {reason_code} ({lang})")
        return reason_code
    return template.format_map(_SafeParams(params or {}))
