# task_service.py - 任务奖励与收益策略（读取 tasks / system_config）
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict

from sqlalchemy import text
from sqlalchemy.orm import Session

from config import (
    SystemConfigKey, CommissionMode, DEFAULT_MAX_GROUP_MEMBERS,
    DEFAULT_GROUP_OWNER_COMMISSION_RATE, DEFAULT_INVITE_REWARD_AMOUNT,
)
from exceptions import NotFound
from models import to_amount

logger = logging.getLogger(__name__)

TRUTHY = {'1', 'true', 'yes', 'on'}


@dataclass(frozen=True)
class InviteRewardPolicy:
    enabled: bool
    amount: Optional[Decimal] = None
    rate: Optional[Decimal] = None
    first_task_only: bool = True

    def compute(self, task_reward: Decimal) -> Decimal:
        if self.rate is not None:
            return to_amount(task_reward * self.rate)
        return to_amount(self.amount)


@dataclass(frozen=True)
class CommissionPolicy:
    mode: CommissionMode
    value: Decimal

    def compute(self, task_reward: Decimal) -> Decimal:
        if self.mode == CommissionMode.AMOUNT:
            return to_amount(self.value)
        return to_amount(task_reward * self.value)


class SqlTaskService:
    def __init__(self, session: Session):
        self.session = session

    def _load_config(self) -> Dict[str, str]:
        rows = self.session.execute(text("SELECT config_key, config_value FROM system_config")).fetchall()
        return {r.config_key: r.config_value for r in rows}

    @staticmethod
    def _decimal(raw: Optional[str], default: Decimal) -> Decimal:
        if raw is None:
            return default
        try:
            return Decimal(str(raw).strip())
        except InvalidOperation:
            logger.warning(f"⚠️ 系统配置数值无效: {raw}，使用默认值 {default}")
            return default

    def get_task_reward(self, task_id: int) -> Decimal:
        row = self.session.execute(
            text("SELECT reward FROM tasks WHERE id = :task_id"),
            {"task_id": task_id}
        ).fetchone()
        if not row:
            raise NotFound('task', task_id)
        return to_amount(row.reward)

    def get_invite_reward_policy(self, task_id: Optional[int] = None) -> InviteRewardPolicy:
        cfg = self._load_config()
        enabled = cfg.get(SystemConfigKey.INVITE_REWARD_ENABLED.value, '1').strip().lower() in TRUTHY
        first_task_only = cfg.get(SystemConfigKey.INVITE_REWARD_FIRST_TASK_ONLY.value, '1').strip().lower() in TRUTHY
        amount = self._decimal(cfg.get(SystemConfigKey.INVITE_REWARD_AMOUNT.value), DEFAULT_INVITE_REWARD_AMOUNT)
        return InviteRewardPolicy(enabled=enabled, amount=to_amount(amount), first_task_only=first_task_only)

    def get_commission_policy(self) -> CommissionPolicy:
        cfg = self._load_config()
        raw_mode = cfg.get(SystemConfigKey.GROUP_OWNER_COMMISSION_MODE.value, CommissionMode.RATE.value).strip()
        try:
            mode = CommissionMode(raw_mode)
        except ValueError:
            logger.warning(f"⚠️ 未知的群主收益方式: {raw_mode}，按比例计算")
            mode = CommissionMode.RATE
        value = self._decimal(cfg.get(SystemConfigKey.GROUP_OWNER_COMMISSION_RATE.value), DEFAULT_GROUP_OWNER_COMMISSION_RATE)
        return CommissionPolicy(mode=mode, value=value)

    def get_max_group_members(self) -> int:
        row = self.session.execute(
            text("SELECT config_value FROM system_config WHERE config_key = :key"),
            {"key": SystemConfigKey.MAX_GROUP_MEMBERS.value}
        ).fetchone()
        if not row:
            return DEFAULT_MAX_GROUP_MEMBERS
        try:
            return int(row.config_value)
        except ValueError:
            return DEFAULT_MAX_GROUP_MEMBERS
