"""SQLAlchemy-backed document store."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from decimal import Decimal
from typing import Iterator, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from returnflow.exceptions import ConcurrencyError, NotFoundError, SettlementConsistencyError
from returnflow.models import LedgerRecord, OrderRecord, ReturnRecord, WalletRecord
from returnflow.schemas import (
    LedgerEntry, LedgerEntryType, Order, ReturnRequest, ReturnStatus, Wallet, as_utc,
)
from returnflow.services.store import ReturnStore, ensure_history_consistent

logger = logging.getLogger(__name__)


def _order_columns(order: Order) -> dict:
    return {
        "customer_id": order.customer_id,
        "status": order.status.value,
        "has_active_return": order.return_info.has_active_return,
        "document": order.model_dump(mode="json"),
    }


def _return_columns(ret: ReturnRequest) -> dict:
    return {
        "request_id": ret.request_id,
        "order_id": ret.order_id,
        "customer_id": ret.customer_id,
        "status": ret.status.value,
        "reason": ret.reason.value,
        "assigned_manager": ret.warehouse.assigned_manager,
        "assigned_agent": ret.warehouse.pickup.assigned_agent,
        "document": ret.model_dump(mode="json"),
    }


def _wallet(row: WalletRecord) -> Wallet:
    return Wallet(
        user_id=row.user_id,
        balance=Decimal(row.balance),
        total_earned=Decimal(row.total_earned),
        version=row.version,
    )


def _ledger_entry(row: LedgerRecord) -> LedgerEntry:
    return LedgerEntry(
        id=row.id,
        user_id=row.user_id,
        type=row.type,
        amount=Decimal(row.amount),
        balance_after=Decimal(row.balance_after),
        order_id=row.order_id,
        return_id=row.return_id,
        description=row.description or "",
        details=row.details or {},
        status=row.status,
        created_at=as_utc(row.created_at),  # SQLite drops tzinfo
    )


class SqlStore(ReturnStore):
    """One session per transaction and thread; documents are versioned rows."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._local = threading.local()

    @property
    def _session(self) -> Optional[Session]:
        return getattr(self._local, "session", None)

    @_session.setter
    def _session(self, session: Optional[Session]) -> None:
        self._local.session = session

    @contextmanager
    def transaction(self) -> Iterator["SqlStore"]:
        if self._session is not None:
            yield self
            return
        session = self._session_factory()
        self._session = session
        try:
            with session.begin():
                yield self
        finally:
            self._session = None
            session.close()

    @contextmanager
    def _tx(self) -> Iterator[Session]:
        with self.transaction():
            yield self._session

    def _versioned_update(self, model, key_column, key, expected: int, values: dict, label: str) -> None:
        session = self._session
        result = session.execute(
            update(model)
            .where(key_column == key, model.version == expected)
            .values(version=expected + 1, **values)
            .execution_options(synchronize_session="evaluate")
        )
        if result.rowcount == 1:
            return
        current = session.execute(select(model.version).where(key_column == key)).scalar_one_or_none()
        if current is None:
            raise NotFoundError(f"{label} not found")
        logger.warning(f"Version conflict on {label}: stored {current}, expected {expected}")
        raise ConcurrencyError(
            f"{label} was modified concurrently",
            expected_version=expected,
            current_version=current,
        )

    # Orders

    def add_order(self, order: Order) -> Order:
        with self._tx() as session:
            session.add(OrderRecord(id=order.id, version=order.version, **_order_columns(order)))
            session.flush()
        return order

    def get_order(self, order_id: str) -> Order:
        with self._tx() as session:
            row = session.get(OrderRecord, order_id)
            if row is None:
                raise NotFoundError(f"Order not found: {order_id}")
            order = Order.model_validate(row.document)
            order.version = row.version
            return order

    def save_order(self, order: Order, expected_version: Optional[int] = None) -> Order:
        expected = order.version if expected_version is None else expected_version
        with self._tx():
            order.version = expected + 1
            try:
                self._versioned_update(
                    OrderRecord, OrderRecord.id, order.id, expected,
                    _order_columns(order), f"Order {order.id}",
                )
            except Exception:
                order.version = expected
                raise
        return order

    # Returns

    def add_return(self, ret: ReturnRequest) -> ReturnRequest:
        ensure_history_consistent(ret)
        with self._tx() as session:
            session.add(ReturnRecord(
                id=ret.id, version=ret.version, requested_at=ret.requested_at, **_return_columns(ret),
            ))
            try:
                session.flush()
            except IntegrityError:
                raise ConcurrencyError(f"Return {ret.request_id} already exists")
        return ret

    def get_return(self, return_id: str) -> ReturnRequest:
        with self._tx() as session:
            row = session.get(ReturnRecord, return_id)
            if row is None:
                row = session.execute(
                    select(ReturnRecord).where(ReturnRecord.request_id == return_id)
                ).scalar_one_or_none()
            if row is None:
                raise NotFoundError(f"Return request not found: {return_id}")
            ret = ReturnRequest.model_validate(row.document)
            ret.version = row.version
            return ret

    def save_return(self, ret: ReturnRequest, expected_version: Optional[int] = None) -> ReturnRequest:
        ensure_history_consistent(ret)
        expected = ret.version if expected_version is None else expected_version
        with self._tx():
            ret.version = expected + 1
            try:
                self._versioned_update(
                    ReturnRecord, ReturnRecord.id, ret.id, expected,
                    _return_columns(ret), f"Return {ret.request_id}",
                )
            except Exception:
                ret.version = expected
                raise
        return ret

    def list_returns(
        self,
        customer_id: Optional[str] = None,
        status: Optional[ReturnStatus] = None,
        order_id: Optional[str] = None,
        assigned_manager: Optional[str] = None,
        assigned_agent: Optional[str] = None,
    ) -> list[ReturnRequest]:
        stmt = select(ReturnRecord)
        if customer_id:
            stmt = stmt.where(ReturnRecord.customer_id == customer_id)
        if status:
            stmt = stmt.where(ReturnRecord.status == ReturnStatus(status).value)
        if order_id:
            stmt = stmt.where(ReturnRecord.order_id == order_id)
        if assigned_manager:
            stmt = stmt.where(ReturnRecord.assigned_manager == assigned_manager)
        if assigned_agent:
            stmt = stmt.where(ReturnRecord.assigned_agent == assigned_agent)
        stmt = stmt.order_by(ReturnRecord.requested_at.desc())
        with self._tx() as session:
            results = []
            for row in session.execute(stmt).scalars():
                ret = ReturnRequest.model_validate(row.document)
                ret.version = row.version
                results.append(ret)
            return results

    # Wallets and ledger

    def add_wallet(self, wallet: Wallet) -> Wallet:
        with self._tx() as session:
            session.add(WalletRecord(
                user_id=wallet.user_id,
                balance=wallet.balance,
                total_earned=wallet.total_earned,
                version=wallet.version,
            ))
            session.flush()
        return wallet

    def get_wallet(self, user_id: str) -> Optional[Wallet]:
        with self._tx() as session:
            row = session.get(WalletRecord, user_id)
            return _wallet(row) if row else None

    def credit_wallet(self, user_id: str, coins: Decimal) -> Wallet:
        with self._tx() as session:
            result = session.execute(
                update(WalletRecord)
                .where(WalletRecord.user_id == user_id)
                .values(
                    balance=WalletRecord.balance + coins,
                    total_earned=WalletRecord.total_earned + coins,
                    version=WalletRecord.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise NotFoundError(f"Wallet not found for user {user_id}")
            row = session.execute(
                select(WalletRecord).where(WalletRecord.user_id == user_id)
                .execution_options(populate_existing=True)
            ).scalar_one()
            return _wallet(row)

    def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        with self._tx() as session:
            if entry.return_id and self.ledger_entry_for_return(entry.return_id):
                raise SettlementConsistencyError(
                    f"A refund ledger entry already exists for return {entry.return_id}",
                    return_id=entry.return_id,
                )
            session.add(LedgerRecord(
                id=entry.id,
                user_id=entry.user_id,
                type=entry.type.value,
                amount=entry.amount,
                balance_after=entry.balance_after,
                order_id=entry.order_id,
                return_id=entry.return_id,
                description=entry.description,
                details=entry.details,
                status=entry.status.value,
                created_at=entry.created_at,
            ))
            try:
                session.flush()
            except IntegrityError:
                raise SettlementConsistencyError(
                    f"A refund ledger entry already exists for return {entry.return_id}",
                    return_id=entry.return_id,
                )
        return entry

    def ledger_entry_for_return(self, return_id: str) -> Optional[LedgerEntry]:
        with self._tx() as session:
            row = session.execute(
                select(LedgerRecord).where(
                    LedgerRecord.return_id == return_id,
                    LedgerRecord.type == LedgerEntryType.REFUND.value,
                )
            ).scalar_one_or_none()
            return _ledger_entry(row) if row else None

    def refund_entries(self) -> list[LedgerEntry]:
        with self._tx() as session:
            rows = session.execute(
                select(LedgerRecord)
                .where(LedgerRecord.type == LedgerEntryType.REFUND.value)
                .order_by(LedgerRecord.created_at)
            ).scalars()
            return [_ledger_entry(row) for row in rows]
