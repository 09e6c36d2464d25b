import pytest
from decimal import Decimal
from sqlalchemy import text

from database_setup import create_ledger_engine, build_session_factory, DatabaseManager, db_now


class Seeder:
    """测试数据构造"""

    def __init__(self, session):
        self.session = session

    def _insert(self, sql, params):
        result = self.session.execute(text(sql), params)
        self.session.commit()
        return result.lastrowid

    def member(self, nickname="member", inviter_id=None, group_id=None):
        now = db_now()
        return self._insert(
            """INSERT INTO members (nickname, inviter_id, group_id, create_time, update_time)
               VALUES (:nickname, :inviter_id, :group_id, :now, :now)""",
            {"nickname": nickname, "inviter_id": inviter_id, "group_id": group_id, "now": now}
        )

    def members_in_group(self, group_id, count):
        return [self.member(f"filler-{group_id}-{i}", group_id=group_id) for i in range(count)]

    def group(self, name="group", owner_id=None, max_members=None):
        now = db_now()
        return self._insert(
            """INSERT INTO `groups` (group_name, owner_id, max_members, create_time, update_time)
               VALUES (:name, :owner_id, :max_members, :now, :now)""",
            {"name": name, "owner_id": owner_id, "max_members": max_members, "now": now}
        )

    def task(self, name="task", reward="10.00"):
        return self._insert(
            "INSERT INTO tasks (task_name, reward, create_time) VALUES (:name, :reward, :now)",
            {"name": name, "reward": Decimal(reward), "now": db_now()}
        )

    def account(self, member_id=None, status="pending", account="fb-account"):
        return self._insert(
            """INSERT INTO accounts (account, member_id, account_audit_status, create_time)
               VALUES (:account, :member_id, :status, :now)""",
            {"account": account, "member_id": member_id, "status": status, "now": db_now()}
        )

    def submitted_task(self, task_id, member_id, status="pending", related_group_id=None):
        return self._insert(
            """INSERT INTO submitted_tasks (task_id, member_id, task_audit_status, related_group_id, create_time)
               VALUES (:task_id, :member_id, :status, :related_group_id, :now)""",
            {"task_id": task_id, "member_id": member_id, "status": status,
             "related_group_id": related_group_id, "now": db_now()}
        )

    def bill(self, member_id, bill_type, amount="1.00", task_id=None, related_member_id=None,
             related_group_id=None, status="settled"):
        now = db_now()
        self._seq = getattr(self, "_seq", 0) + 1
        return self._insert(
            """INSERT INTO bills (bill_no, member_id, bill_type, amount, settlement_status, task_id,
                                  related_member_id, related_group_id, create_time, update_time)
               VALUES (:bill_no, :member_id, :bill_type, :amount, :status, :task_id,
                       :related_member_id, :related_group_id, :now, :now)""",
            {"bill_no": f"SEED{self._seq:06d}", "member_id": member_id, "bill_type": str(bill_type),
             "amount": Decimal(amount), "status": status, "task_id": task_id,
             "related_member_id": related_member_id, "related_group_id": related_group_id, "now": now}
        )

    def set_config(self, key, value):
        self.session.execute(
            text("UPDATE system_config SET config_value = :value WHERE config_key = :key"),
            {"key": str(key), "value": str(value)}
        )
        self.session.commit()

    def scalar(self, sql, params=None):
        value = self.session.execute(text(sql), params or {}).scalar()
        self.session.commit()
        return value


@pytest.fixture
def engine(tmp_path):
    engine = create_ledger_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    with engine.connect() as conn:
        with conn.begin():
            DatabaseManager(engine).init_all_tables(conn)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def session(session_factory):
    db = session_factory()
    yield db
    db.close()


@pytest.fixture
def seed(session_factory):
    db = session_factory()
    yield Seeder(db)
    db.close()
