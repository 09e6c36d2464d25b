import pytest
from decimal import Decimal

from sqlalchemy import text

from config import BillType, WithdrawalStatus
from exceptions import AlreadyResolved, InsufficientBalance, InvalidAmount, NotFound
from ledger_store import LedgerStore
from models import NewBill
from withdrawal_reconciler import WithdrawalReconciler


@pytest.fixture
def funded_member(seed, session_factory):
    """已结算余额 30.00 的会员"""
    member = seed.member("earner")
    task = seed.task("like-post", "30.00")
    db = session_factory()
    LedgerStore(db).append_numbered(NewBill(member_id=member, bill_type=BillType.TASK_REWARD,
                                            amount=Decimal("30.00"), task_id=task))
    db.commit()
    db.close()
    return member


def count(session, table, **where):
    clause = " AND ".join(f"{k} = :{k}" for k in where) or "1=1"
    value = session.execute(text(f"SELECT COUNT(*) FROM {table} WHERE {clause}"), where).scalar()
    session.commit()
    return value


class TestRequestWithdrawal:

    def test_insufficient_balance_persists_nothing(self, session, seed, funded_member):
        with pytest.raises(InsufficientBalance) as exc:
            WithdrawalReconciler(session).request_withdrawal(funded_member, "50.00")

        assert exc.value.available == Decimal("30.00")
        assert count(session, "withdrawals") == 0
        assert count(session, "bills", bill_type="withdrawal") == 0

    def test_pending_withdrawal_reserves_balance(self, session, funded_member):
        service = WithdrawalReconciler(session)
        withdrawal = service.request_withdrawal(funded_member, Decimal("20.00"))

        assert withdrawal.withdrawal_status == WithdrawalStatus.PENDING
        assert withdrawal.bill_no.startswith("WIT")
        assert withdrawal.amount == Decimal("20.00")
        assert service.ledger.get_balance(funded_member) == Decimal("10.00")

        with pytest.raises(InsufficientBalance):
            service.request_withdrawal(funded_member, "10.01")

    @pytest.mark.parametrize("amount", ["0", "-5", "abc"])
    def test_invalid_amount(self, session, funded_member, amount):
        with pytest.raises(InvalidAmount):
            WithdrawalReconciler(session).request_withdrawal(funded_member, amount)

    def test_unknown_member(self, session):
        with pytest.raises(NotFound):
            WithdrawalReconciler(session).request_withdrawal(404, "1.00")


class TestResolve:

    def test_success_creates_one_matching_withdrawal_bill(self, session, seed, funded_member):
        service = WithdrawalReconciler(session)
        withdrawal = service.request_withdrawal(funded_member, "20.00")

        resolved = service.resolve(withdrawal.id, WithdrawalStatus.SUCCESS)

        assert resolved.withdrawal_status == WithdrawalStatus.SUCCESS
        assert resolved.process_time is not None
        bill = service.ledger.get_by_bill_no(withdrawal.bill_no)
        assert bill.bill_type == BillType.WITHDRAWAL
        assert bill.withdrawal_id == withdrawal.id
        assert bill.amount == Decimal("-20.00")
        assert count(session, "bills", withdrawal_id=withdrawal.id) == 1
        assert service.ledger.get_balance(funded_member) == Decimal("10.00")

    def test_failed_creates_no_bill_and_releases_reservation(self, session, seed, funded_member):
        service = WithdrawalReconciler(session)
        withdrawal = service.request_withdrawal(funded_member, "20.00")

        resolved = service.resolve(withdrawal.id, WithdrawalStatus.FAILED, "bank account invalid")

        assert resolved.withdrawal_status == WithdrawalStatus.FAILED
        assert resolved.reject_reason == "bank account invalid"
        assert count(session, "bills", bill_type="withdrawal") == 0
        assert service.ledger.get_balance(funded_member) == Decimal("30.00")

    def test_second_resolution_rejected(self, session, seed, funded_member):
        service = WithdrawalReconciler(session)
        withdrawal = service.request_withdrawal(funded_member, "5.00")
        service.resolve(withdrawal.id, WithdrawalStatus.SUCCESS)

        with pytest.raises(AlreadyResolved):
            service.resolve(withdrawal.id, WithdrawalStatus.FAILED)
        with pytest.raises(AlreadyResolved):
            service.resolve(withdrawal.id, WithdrawalStatus.SUCCESS)

        assert count(session, "bills", withdrawal_id=withdrawal.id) == 1
        assert service.get(withdrawal.id).withdrawal_status == WithdrawalStatus.SUCCESS

    def test_pending_is_not_an_outcome(self, session, funded_member):
        service = WithdrawalReconciler(session)
        withdrawal = service.request_withdrawal(funded_member, "5.00")
        with pytest.raises(ValueError):
            service.resolve(withdrawal.id, WithdrawalStatus.PENDING)

    def test_batch_resolve(self, session, funded_member):
        service = WithdrawalReconciler(session)
        first = service.request_withdrawal(funded_member, "5.00")
        second = service.request_withdrawal(funded_member, "6.00")
        service.resolve(second.id, WithdrawalStatus.FAILED, "duplicate")

        batch = service.batch_resolve([first.id, second.id, 999], WithdrawalStatus.SUCCESS)

        assert (batch.success, batch.failed) == (1, 2)
        codes = {r["id"]: r.get("reason_code") for r in batch.results}
        assert codes[second.id] == 'withdrawal.alreadyResolved'
        assert codes[999] == 'ledger.notFound'

    def test_list_withdrawals(self, session, funded_member):
        service = WithdrawalReconciler(session)
        first = service.request_withdrawal(funded_member, "5.00")
        service.request_withdrawal(funded_member, "6.00")
        service.resolve(first.id, WithdrawalStatus.SUCCESS)

        pending = service.list_withdrawals(member_id=funded_member, withdrawal_status='pending')
        everything = service.list_withdrawals(member_id=funded_member, page_size=1)

        assert pending["total"] == 1
        assert pending["list"][0].amount == Decimal("6.00")
        assert everything["total"] == 2
        assert len(everything["list"]) == 1
