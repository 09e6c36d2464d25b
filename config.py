# config.py - 账单台账与群组结算配置
from decimal import Decimal
from enum import StrEnum
from typing import Final
import os
from dotenv import load_dotenv

load_dotenv()

# 数据库配置
DB_CONFIG = {
    'host': os.getenv('MYSQL_HOST', '127.0.0.1'),
    'port': int(os.getenv('MYSQL_PORT', 3306)),
    'user': os.getenv('MYSQL_USER'),
    'password': os.getenv('MYSQL_PASSWORD'),
    'database': os.getenv('MYSQL_DATABASE'),
    'charset': 'utf8mb4',
}

# 显式连接串（优先于 DB_CONFIG，本地/测试可用 sqlite:///ledger.db）
DATABASE_URL: Final[str | None] = os.getenv('DATABASE_URL')

# 支付渠道密钥加密主密钥（64位十六进制 = 32字节）
ENCRYPTION_MASTER_KEY: Final[str | None] = os.getenv('ENCRYPTION_MASTER_KEY')

# 账单编号
BILL_NO_PREFIX: Final[str] = 'BILL'
WITHDRAWAL_BILL_NO_PREFIX: Final[str] = 'WIT'
BILL_NO_MAX_RETRIES: Final[int] = int(os.getenv('BILL_NO_MAX_RETRIES', 5))

# 业务默认值（system_config 表缺省时使用）
DEFAULT_MAX_GROUP_MEMBERS: Final[int] = 200
DEFAULT_GROUP_OWNER_COMMISSION_RATE: Final[Decimal] = Decimal('0.10')
DEFAULT_INVITE_REWARD_AMOUNT: Final[Decimal] = Decimal('5.00')
AMOUNT_QUANTUM: Final[Decimal] = Decimal('0.01')

# 分页
DEFAULT_PAGE: Final[int] = 1
DEFAULT_PAGE_SIZE: Final[int] = 10
MAX_PAGE_SIZE: Final[int] = 100

# 多语言
DEFAULT_LANG: Final[str] = os.getenv('DEFAULT_LANG', 'zh-CN')


class SystemConfigKey(StrEnum):
    MAX_GROUP_MEMBERS = 'max_group_members'
    GROUP_OWNER_COMMISSION_RATE = 'group_owner_commission_rate'
    GROUP_OWNER_COMMISSION_MODE = 'group_owner_commission_mode'
    INVITE_REWARD_AMOUNT = 'invite_reward_amount'
    INVITE_REWARD_ENABLED = 'invite_reward_enabled'
    INVITE_REWARD_FIRST_TASK_ONLY = 'invite_reward_first_task_only'


# 账单类型
class BillType(StrEnum):
    TASK_REWARD = 'task_reward'
    INVITE_REWARD = 'invite_reward'
    GROUP_OWNER_COMMISSION = 'group_owner_commission'
    WITHDRAWAL = 'withdrawal'
    OTHER = 'other'


class SettlementStatus(StrEnum):
    SETTLED = 'settled'
    PENDING = 'pending'
    FAILED = 'failed'


# 允许的结算状态流转
SETTLEMENT_TRANSITIONS: Final[dict[SettlementStatus, frozenset[SettlementStatus]]] = {
    SettlementStatus.PENDING: frozenset({SettlementStatus.SETTLED, SettlementStatus.FAILED}),
    SettlementStatus.SETTLED: frozenset({SettlementStatus.FAILED}),
    SettlementStatus.FAILED: frozenset(),
}


# 提现状态
class WithdrawalStatus(StrEnum):
    PENDING = 'pending'
    SUCCESS = 'success'
    FAILED = 'failed'


class AccountAuditStatus(StrEnum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'


class TaskAuditStatus(StrEnum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'


# 自动分群结果
class AssignmentReason(StrEnum):
    ALREADY_IN_GROUP = 'alreadyInGroup'
    ASSIGNED_TO_INVITER_GROUP = 'assignedToInviterGroup'
    ASSIGNED_TO_OTHER_GROUP = 'assignedToOtherGroup'
    NO_INVITER = 'noInviter'
    INVITER_NO_GROUP = 'inviterNoGroup'
    INVITER_NO_OWNER = 'inviterNoOwner'
    INVITER_ALL_GROUP_FULL = 'inviterAllGroupFull'


# 群主收益计算方式
class CommissionMode(StrEnum):
    RATE = 'rate'
    AMOUNT = 'amount'


# 日志配置
LOG_DIR: Final[str] = os.path.join(os.path.dirname(__file__), 'logs')
LOG_FILE: Final[str] = os.path.join(LOG_DIR, 'ledger.log')
os.makedirs(LOG_DIR, exist_ok=True)
