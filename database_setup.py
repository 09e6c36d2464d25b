# database_setup.py - 台账表结构与数据库会话
import logging
import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import pymysql
from sqlalchemy import (
    BigInteger, Column, DateTime, Index, Integer, MetaData, Numeric, String, Table,
    create_engine, event, text,
)
from sqlalchemy.orm import sessionmaker, scoped_session
from sqlalchemy.pool import QueuePool

from config import (
    DB_CONFIG, DATABASE_URL, SystemConfigKey, DEFAULT_MAX_GROUP_MEMBERS,
    DEFAULT_GROUP_OWNER_COMMISSION_RATE, DEFAULT_INVITE_REWARD_AMOUNT, CommissionMode,
)

logger = logging.getLogger(__name__)

_engine = None
_SessionFactory = None

DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

# sqlite 只对 INTEGER PRIMARY KEY 自增
IdType = BigInteger().with_variant(Integer(), 'sqlite')

MYSQL_TABLE_ARGS = {
    'mysql_engine': 'InnoDB',
    'mysql_charset': 'utf8mb4',
    'mysql_collate': 'utf8mb4_unicode_ci',
}

metadata = MetaData()

members = Table(
    'members', metadata,
    Column('id', IdType, primary_key=True, autoincrement=True),
    Column('nickname', String(50), nullable=False),
    Column('inviter_id', IdType, nullable=True),
    Column('group_id', IdType, nullable=True),
    Column('create_time', DateTime, nullable=False),
    Column('update_time', DateTime, nullable=False),
    Index('idx_members_inviter', 'inviter_id'),
    Index('idx_members_group', 'group_id'),
    **MYSQL_TABLE_ARGS
)

# 成员数不落库，始终 COUNT(members.group_id)
groups = Table(
    'groups', metadata,
    Column('id', IdType, primary_key=True, autoincrement=True),
    Column('group_name', String(100), nullable=False),
    Column('owner_id', IdType, nullable=True),
    Column('max_members', Integer, nullable=True),
    Column('create_time', DateTime, nullable=False),
    Column('update_time', DateTime, nullable=False),
    Index('idx_groups_owner', 'owner_id'),
    **MYSQL_TABLE_ARGS
)

accounts = Table(
    'accounts', metadata,
    Column('id', IdType, primary_key=True, autoincrement=True),
    Column('account', String(100), nullable=False),
    Column('member_id', IdType, nullable=True),
    Column('account_audit_status', String(20), nullable=False, default='pending'),
    Column('waiter_id', IdType, nullable=True),
    Column('audit_time', DateTime, nullable=True),
    Column('create_time', DateTime, nullable=False),
    Index('idx_accounts_member', 'member_id'),
    **MYSQL_TABLE_ARGS
)

tasks = Table(
    'tasks', metadata,
    Column('id', IdType, primary_key=True, autoincrement=True),
    Column('task_name', String(255), nullable=False),
    Column('reward', Numeric(14, 2), nullable=False),
    Column('create_time', DateTime, nullable=False),
    **MYSQL_TABLE_ARGS
)

submitted_tasks = Table(
    'submitted_tasks', metadata,
    Column('id', IdType, primary_key=True, autoincrement=True),
    Column('task_id', IdType, nullable=False),
    Column('member_id', IdType, nullable=False),
    Column('task_audit_status', String(20), nullable=False, default='pending'),
    Column('related_group_id', IdType, nullable=True),
    Column('waiter_id', IdType, nullable=True),
    Column('audit_time', DateTime, nullable=True),
    Column('create_time', DateTime, nullable=False),
    Index('idx_submitted_task_member', 'task_id', 'member_id'),
    **MYSQL_TABLE_ARGS
)

bills = Table(
    'bills', metadata,
    Column('id', IdType, primary_key=True, autoincrement=True),
    Column('bill_no', String(64), nullable=False, unique=True),
    Column('member_id', IdType, nullable=False),
    Column('bill_type', String(30), nullable=False),
    Column('amount', Numeric(14, 2), nullable=False),
    Column('settlement_status', String(20), nullable=False),
    Column('task_id', IdType, nullable=True),
    Column('withdrawal_id', IdType, nullable=True),
    Column('related_member_id', IdType, nullable=True),
    Column('related_group_id', IdType, nullable=True),
    Column('remark', String(255), nullable=True),
    Column('create_time', DateTime, nullable=False),
    Column('update_time', DateTime, nullable=False),
    Index('idx_bills_task_member_type', 'task_id', 'member_id', 'bill_type'),
    Index('idx_bills_member_type_status', 'member_id', 'bill_type', 'settlement_status'),
    Index('idx_bills_related_member', 'related_member_id'),
    Index('idx_bills_create_time', 'create_time'),
    **MYSQL_TABLE_ARGS
)

withdrawals = Table(
    'withdrawals', metadata,
    Column('id', IdType, primary_key=True, autoincrement=True),
    Column('bill_no', String(64), nullable=False, unique=True),
    Column('member_id', IdType, nullable=False),
    Column('amount', Numeric(14, 2), nullable=False),
    Column('withdrawal_status', String(20), nullable=False),
    Column('reject_reason', String(255), nullable=True),
    Column('apply_time', DateTime, nullable=False),
    Column('process_time', DateTime, nullable=True),
    Index('idx_withdrawals_member_status', 'member_id', 'withdrawal_status'),
    **MYSQL_TABLE_ARGS
)

system_config = Table(
    'system_config', metadata,
    Column('id', IdType, primary_key=True, autoincrement=True),
    Column('config_key', String(64), nullable=False, unique=True),
    Column('config_value', String(255), nullable=False),
    Column('description', String(255), nullable=True),
    **MYSQL_TABLE_ARGS
)

DEFAULT_SYSTEM_CONFIG = [
    (SystemConfigKey.MAX_GROUP_MEMBERS, str(DEFAULT_MAX_GROUP_MEMBERS), '群组最大成员数'),
    (SystemConfigKey.GROUP_OWNER_COMMISSION_RATE, str(DEFAULT_GROUP_OWNER_COMMISSION_RATE), '群主收益率/固定金额'),
    (SystemConfigKey.GROUP_OWNER_COMMISSION_MODE, CommissionMode.RATE.value, '群主收益计算方式 rate|amount'),
    (SystemConfigKey.INVITE_REWARD_AMOUNT, str(DEFAULT_INVITE_REWARD_AMOUNT), '邀请奖励金额'),
    (SystemConfigKey.INVITE_REWARD_ENABLED, '1', '是否发放邀请奖励'),
    (SystemConfigKey.INVITE_REWARD_FIRST_TASK_ONLY, '1', '邀请奖励仅在被邀请人首次完成任务时发放'),
]


def _build_url() -> str:
    if DATABASE_URL:
        return DATABASE_URL
    return (
        f"mysql+pymysql://{DB_CONFIG['user']}:{DB_CONFIG['password']}"
        f"@{DB_CONFIG['host']}:{DB_CONFIG['port']}/{DB_CONFIG['database']}"
        f"?charset={DB_CONFIG['charset']}"
    )


def _enable_sqlite_immediate_transactions(engine) -> None:
    """sqlite 没有行锁：关闭驱动自带事务，改为 BEGIN IMMEDIATE，写事务整体串行"""
    sqlite3.register_adapter(Decimal, str)

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_ledger_engine(url: str, **kwargs):
    if url.startswith('sqlite'):
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=False,
            **kwargs
        )
        _enable_sqlite_immediate_transactions(engine)
        return engine
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=20,
        max_overflow=30,
        pool_timeout=30,
        pool_pre_ping=True,
        echo=False,
        **kwargs
    )


def get_engine():
    global _engine
    if _engine is None:
        try:
            _engine = create_ledger_engine(_build_url())
            logger.info(f"✅ SQLAlchemy 引擎已创建 ({_engine.dialect.name})")
        except Exception as e:
            logger.error(f"❌ SQLAlchemy 引擎创建失败: {e}")
            raise
    return _engine


def build_session_factory(engine):
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False
    )


def get_session_factory():
    global _SessionFactory
    if _SessionFactory is None:
        _SessionFactory = build_session_factory(get_engine())
        logger.info("✅ 会话工厂已创建")
    return _SessionFactory


def get_db_session():
    factory = get_session_factory()
    db = scoped_session(factory)()
    try:
        yield db
    finally:
        db.close()


def is_sqlite(session) -> bool:
    return session.get_bind().dialect.name == 'sqlite'


def lock_clause(session) -> str:
    """行锁子句；sqlite 由 BEGIN IMMEDIATE 保证串行"""
    return "" if is_sqlite(session) else " FOR UPDATE"


def db_now() -> str:
    return datetime.now().strftime(DATETIME_FORMAT)


def format_datetime(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.strftime(DATETIME_FORMAT)
    return str(value)[:19]


class DatabaseManager:
    def __init__(self, engine=None):
        self.engine = engine or get_engine()
        if self.engine.dialect.name == 'mysql':
            self._ensure_database_exists()

    def _ensure_database_exists(self):
        try:
            temp_config = DB_CONFIG.copy()
            database = temp_config.pop('database')
            conn = pymysql.connect(**temp_config)
            cursor = conn.cursor()
            cursor.execute(
                f"CREATE DATABASE IF NOT EXISTS `{database}` "
                f"DEFAULT CHARSET utf8mb4 COLLATE utf8mb4_unicode_ci"
            )
            conn.commit()
            conn.close()
            logger.info(f"✅ 数据库 `{database}` 已就绪")
        except Exception as e:
            logger.error(f"❌ 数据库初始化失败: {e}")
            raise

    def init_all_tables(self, conn):
        logger.info("=== 初始化数据库表结构 ===")
        metadata.create_all(conn)
        for table_name in metadata.tables:
            logger.info(f"✅ 表 `{table_name}` 已创建/确认")

        self._init_system_config(conn)
        logger.info("✅ 所有表结构初始化完成")

    def _init_system_config(self, conn):
        created = 0
        for key, value, description in DEFAULT_SYSTEM_CONFIG:
            exists = conn.execute(
                text("SELECT id FROM system_config WHERE config_key = :key"),
                {"key": key.value}
            ).fetchone()
            if exists:
                continue
            conn.execute(
                text("INSERT INTO system_config (config_key, config_value, description) VALUES (:key, :value, :description)"),
                {"key": key.value, "value": value, "description": description}
            )
            created += 1
        logger.info(f"✅ 系统配置就绪（新增 {created} 项）")
