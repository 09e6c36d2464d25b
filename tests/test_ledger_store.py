import pytest
from decimal import Decimal
from sqlalchemy import text

from bill_numbering import BillNumberAllocator
from config import BillType, SettlementStatus, BILL_NO_MAX_RETRIES
from database_setup import db_now
from exceptions import (
    DuplicateBillNo, ConstraintViolation, ImmutableFieldViolation, InvalidStatusTransition,
    InvalidAmount, NotFound,
)
from ledger_store import LedgerStore
from models import NewBill


def fixed_allocator(*suffixes):
    values = iter(suffixes)
    return BillNumberAllocator(clock=lambda: 1700000000.0, entropy=lambda n: next(values))


@pytest.fixture
def member_id(seed):
    return seed.member("alice")


@pytest.fixture
def task_id(seed):
    return seed.task("like-post", "10.00")


def reward(member_id, task_id=None, amount="10.00", **kwargs):
    return NewBill(member_id=member_id, bill_type=BillType.TASK_REWARD,
                   amount=Decimal(amount), task_id=task_id, **kwargs)


class TestAppend:

    def test_append_persists_entry(self, session, member_id, task_id):
        ledger = LedgerStore(session)
        bill = ledger.append(reward(member_id, task_id, bill_no="BILL-1"))
        session.commit()

        stored = ledger.get(bill.id)
        assert stored.bill_no == "BILL-1"
        assert stored.amount == Decimal("10.00")
        assert stored.settlement_status == SettlementStatus.SETTLED
        assert stored.create_time is not None

    def test_duplicate_bill_no_keeps_outer_transaction_usable(self, session, member_id, task_id):
        ledger = LedgerStore(session)
        ledger.append(reward(member_id, task_id, bill_no="BILL-1"))

        with pytest.raises(DuplicateBillNo):
            ledger.append(reward(member_id, task_id, bill_no="BILL-1"))

        ledger.append(reward(member_id, task_id, bill_no="BILL-2"))
        session.commit()
        assert session.execute(text("SELECT COUNT(*) FROM bills")).scalar() == 2

    def test_append_numbered_retries_on_collision(self, session, member_id, task_id):
        ledger = LedgerStore(session, fixed_allocator(7, 7, 8))
        first = ledger.append_numbered(reward(member_id, task_id))
        second = ledger.append_numbered(reward(member_id, task_id))
        session.commit()

        assert first.bill_no == "BILL17000000000000007"
        assert second.bill_no == "BILL17000000000000008"

    def test_append_numbered_gives_up_after_max_retries(self, session, member_id, task_id):
        ledger = LedgerStore(session, fixed_allocator(*([3] * (BILL_NO_MAX_RETRIES + 1))))
        ledger.append_numbered(reward(member_id, task_id))

        with pytest.raises(DuplicateBillNo):
            ledger.append_numbered(reward(member_id, task_id))

    def test_missing_member_is_constraint_violation(self, session, task_id):
        with pytest.raises(ConstraintViolation) as exc:
            LedgerStore(session).append(reward(9999, task_id, bill_no="BILL-X"))
        assert exc.value.field == 'member_id'

    def test_missing_task_is_constraint_violation(self, session, member_id):
        with pytest.raises(ConstraintViolation):
            LedgerStore(session).append(reward(member_id, 9999, bill_no="BILL-X"))

    def test_withdrawal_id_only_on_withdrawal_bills(self, session, member_id, task_id):
        with pytest.raises(ConstraintViolation):
            LedgerStore(session).append(reward(member_id, task_id, bill_no="BILL-X", withdrawal_id=1))

    def test_negative_reward_rejected(self, session, member_id, task_id):
        with pytest.raises(InvalidAmount):
            LedgerStore(session).append(reward(member_id, task_id, amount="-1.00", bill_no="BILL-X"))


class TestUpdate:

    def test_only_status_and_remark_are_mutable(self, session, member_id, task_id):
        ledger = LedgerStore(session)
        bill = ledger.append(reward(member_id, task_id, bill_no="BILL-1"))
        session.commit()

        for field, value in [("amount", Decimal("1.00")), ("bill_no", "BILL-2"), ("member_id", member_id)]:
            with pytest.raises(ImmutableFieldViolation):
                ledger.update(bill.id, {field: value})

        updated = ledger.update(bill.id, {"remark": "manual note"})
        assert updated.remark == "manual note"
        assert updated.bill_no == "BILL-1"

    def test_status_transitions(self, session, member_id, task_id):
        ledger = LedgerStore(session)
        bill = ledger.append(reward(member_id, task_id, bill_no="BILL-1",
                                    settlement_status=SettlementStatus.PENDING))

        assert ledger.update_status(bill.id, SettlementStatus.SETTLED).settlement_status == SettlementStatus.SETTLED
        assert ledger.update_status(bill.id, SettlementStatus.FAILED).settlement_status == SettlementStatus.FAILED

        with pytest.raises(InvalidStatusTransition):
            ledger.update_status(bill.id, SettlementStatus.SETTLED)
        with pytest.raises(InvalidStatusTransition):
            ledger.update_status(bill.id, SettlementStatus.PENDING)

    def test_settled_cannot_return_to_pending(self, session, member_id, task_id):
        ledger = LedgerStore(session)
        bill = ledger.append(reward(member_id, task_id, bill_no="BILL-1"))
        with pytest.raises(InvalidStatusTransition):
            ledger.update_status(bill.id, SettlementStatus.PENDING)

    def test_unknown_status_value(self, session, member_id, task_id):
        ledger = LedgerStore(session)
        bill = ledger.append(reward(member_id, task_id, bill_no="BILL-1"))

        with pytest.raises(InvalidStatusTransition) as exc:
            ledger.update(bill.id, {"settlement_status": "refunded"})
        assert exc.value.params["target"] == "refunded"

    def test_unknown_bill(self, session):
        with pytest.raises(NotFound):
            LedgerStore(session).update_status(12345, SettlementStatus.FAILED)


class TestQueries:

    def test_find_by_task(self, session, member_id, task_id):
        ledger = LedgerStore(session)
        ledger.append(reward(member_id, task_id, bill_no="BILL-1"))
        session.commit()

        assert ledger.find_by_task(task_id, member_id, BillType.TASK_REWARD).bill_no == "BILL-1"
        assert ledger.find_by_task(task_id, member_id, BillType.INVITE_REWARD) is None
        assert ledger.get_by_bill_no("missing") is None

    def test_list_bills_filters_and_pages(self, session, seed, member_id, task_id):
        other = seed.member("bob")
        ledger = LedgerStore(session)
        for i in range(3):
            ledger.append(reward(member_id, task_id, bill_no=f"BILL-A{i}"))
        ledger.append(reward(other, task_id, bill_no="BILL-B0"))
        ledger.append(NewBill(member_id=member_id, bill_type=BillType.OTHER, amount=Decimal("2.00"),
                              bill_no="BILL-O0", settlement_status=SettlementStatus.PENDING))
        session.commit()

        result = ledger.list_bills(member_id=member_id, bill_type='task_reward', page=1, page_size=2)
        assert result["total"] == 3
        assert [b.bill_no for b in result["list"]] == ["BILL-A2", "BILL-A1"]

        second_page = ledger.list_bills(member_id=member_id, bill_type='task_reward', page=2, page_size=2)
        assert [b.bill_no for b in second_page["list"]] == ["BILL-A0"]

        pending = ledger.list_bills(settlement_status='pending')
        assert pending["total"] == 1

        assert ledger.list_bills(end_time="2000-01-01 00:00:00")["total"] == 0

    def test_balance_counts_settled_bills_minus_pending_withdrawals(self, session, member_id, task_id):
        ledger = LedgerStore(session)
        ledger.append(reward(member_id, task_id, amount="30.00", bill_no="BILL-1"))
        ledger.append(reward(member_id, task_id, amount="5.00", bill_no="BILL-2",
                             settlement_status=SettlementStatus.PENDING))
        session.execute(
            text("""INSERT INTO withdrawals (bill_no, member_id, amount, withdrawal_status, apply_time)
                    VALUES ('WIT-1', :member_id, '12.50', 'pending', :now)"""),
            {"member_id": member_id, "now": db_now()}
        )
        session.commit()

        assert ledger.get_balance(member_id) == Decimal("17.50")

    def test_balance_of_unknown_member(self, session):
        with pytest.raises(NotFound):
            LedgerStore(session).get_balance(4242)
