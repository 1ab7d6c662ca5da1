"""SQLAlchemy store tests against a throwaway SQLite file."""

import threading
from decimal import Decimal

import pytest

from returnflow.database import init_db, make_engine, make_session_factory
from returnflow.exceptions import ConcurrencyError, NotFoundError, SettlementConsistencyError
from returnflow.schemas import LedgerEntry, ReturnStatus, Wallet
from returnflow.services.sql_store import SqlStore

from conftest import ADMIN, AGENT, CUSTOMER, drive_to_quality_checked, make_draft, make_order


@pytest.fixture
def store(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'returns.db'}")
    init_db(engine)
    store = SqlStore(make_session_factory(engine))
    store.add_order(make_order())
    store.add_wallet(Wallet(user_id="cust-1"))
    yield store
    engine.dispose()


@pytest.fixture
def requested(wf):
    return wf.customer.create_return(CUSTOMER.id, make_draft())


class TestDocuments:
    def test_order_round_trip(self, store):
        order = store.get_order("order-1")
        assert order.lines[0].unit_price == Decimal("200")
        assert order.delivered_at.tzinfo is not None
        assert order.otp.code == "123456"

    def test_return_lookup_by_request_id(self, store, requested):
        assert store.get_return(requested.request_id).id == requested.id
        assert store.get_order("order-1").return_info.has_active_return is True

    def test_missing(self, store):
        with pytest.raises(NotFoundError):
            store.get_return("nope")
        with pytest.raises(NotFoundError):
            store.get_order("nope")

    def test_stale_write_rejected(self, store, requested):
        first = store.get_return(requested.id)
        second = store.get_return(requested.id)
        store.save_return(first)
        version = second.version
        with pytest.raises(ConcurrencyError):
            store.save_return(second)
        assert second.version == version
        assert store.get_return(requested.id).version == first.version

    def test_rollback(self, store, requested):
        with pytest.raises(RuntimeError):
            with store.transaction():
                ret = store.get_return(requested.id)
                ret.warehouse.assigned_manager = "wh-9"
                store.save_return(ret)
                raise RuntimeError("abort")
        assert store.list_returns(assigned_manager="wh-9") == []
        assert store.get_return(requested.id).version == requested.version

    def test_filters(self, wf, store, requested):
        wf.admin.review(ADMIN, requested.id, "approve")
        assert [r.id for r in store.list_returns(status=ReturnStatus.APPROVED)] == [requested.id]
        assert store.list_returns(status=ReturnStatus.REQUESTED) == []
        assert [r.id for r in store.list_returns(customer_id=CUSTOMER.id)] == [requested.id]

    def test_database_module_builds_nothing_on_import(self):
        import returnflow.database as database
        assert {"engine", "SessionLocal", "get_db", "settings"}.isdisjoint(vars(database))

    def test_threads_do_not_share_a_session(self, store):
        sessions = {}
        inside, release = threading.Event(), threading.Event()

        def hold_transaction():
            with store.transaction():
                sessions["worker"] = store._session
                inside.set()
                release.wait(5)

        worker = threading.Thread(target=hold_transaction)
        worker.start()
        assert inside.wait(5)
        assert store._session is None
        with store.transaction():
            sessions["main"] = store._session
            assert store.get_order("order-1").id == "order-1"
        release.set()
        worker.join(5)
        assert sessions["main"] is not sessions["worker"]


class TestLedger:
    def test_settlement(self, wf, store, clock):
        ret = drive_to_quality_checked(wf, clock)
        assert [r.id for r in store.list_returns(assigned_agent=AGENT.id)] == [ret.id]
        wf.admin.final_decision(ADMIN, ret.id, "approved")
        result = wf.admin.settle(ADMIN, ret.id)

        assert result.coins_credited == Decimal("1600.00")
        assert store.get_wallet("cust-1").balance == Decimal("1600.00")
        assert store.ledger_entry_for_return(ret.id).amount == Decimal("1600.00")
        assert store.get_return(ret.id).status == ReturnStatus.COMPLETED
        assert store.get_order("order-1").return_info.has_active_return is False

    def test_one_refund_entry_per_return(self, store):
        entry = LedgerEntry(user_id="cust-1", amount=Decimal("10"), balance_after=Decimal("10"), return_id="r-1")
        store.add_ledger_entry(entry)
        with pytest.raises(SettlementConsistencyError):
            store.add_ledger_entry(
                LedgerEntry(user_id="cust-1", amount=Decimal("10"), balance_after=Decimal("20"), return_id="r-1")
            )
        assert len(store.refund_entries()) == 1

    def test_credit_missing_wallet(self, store):
        with pytest.raises(NotFoundError):
            store.credit_wallet("nobody", Decimal("5"))
        assert store.get_wallet("nobody") is None
