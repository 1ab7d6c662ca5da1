"""Document storage for returns, orders, wallets and the coin ledger.

``ReturnStore`` is the interface the workflow services use. Every read returns
a private copy; every save is checked against the stored ``version``. All work
for one operation happens inside ``transaction()``, which commits on normal
exit and rolls everything back on an exception.
"""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from decimal import Decimal
from typing import Iterator, Optional

from returnflow.exceptions import (
    ConcurrencyError, InvalidTransitionError, NotFoundError, SettlementConsistencyError,
)
from returnflow.schemas import LedgerEntry, LedgerEntryType, Order, ReturnRequest, ReturnStatus, Wallet

logger = logging.getLogger(__name__)


def ensure_history_consistent(ret: ReturnRequest) -> None:
    if not ret.history_consistent():
        raise InvalidTransitionError(
            f"Return {ret.request_id} status {ret.status.value} does not match its status history",
            to_status=ret.status.value,
        )


class ReturnStore:
    """Storage interface."""

    @contextmanager
    def transaction(self) -> Iterator["ReturnStore"]:
        raise NotImplementedError

    # Orders
    def add_order(self, order: Order) -> Order:
        raise NotImplementedError

    def get_order(self, order_id: str) -> Order:
        raise NotImplementedError

    def save_order(self, order: Order, expected_version: Optional[int] = None) -> Order:
        raise NotImplementedError

    # Returns
    def add_return(self, ret: ReturnRequest) -> ReturnRequest:
        raise NotImplementedError

    def get_return(self, return_id: str) -> ReturnRequest:
        raise NotImplementedError

    def save_return(self, ret: ReturnRequest, expected_version: Optional[int] = None) -> ReturnRequest:
        raise NotImplementedError

    def list_returns(
        self,
        customer_id: Optional[str] = None,
        status: Optional[ReturnStatus] = None,
        order_id: Optional[str] = None,
        assigned_manager: Optional[str] = None,
        assigned_agent: Optional[str] = None,
    ) -> list[ReturnRequest]:
        raise NotImplementedError

    # Wallets and ledger
    def add_wallet(self, wallet: Wallet) -> Wallet:
        raise NotImplementedError

    def get_wallet(self, user_id: str) -> Optional[Wallet]:
        raise NotImplementedError

    def credit_wallet(self, user_id: str, coins: Decimal) -> Wallet:
        raise NotImplementedError

    def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        raise NotImplementedError

    def ledger_entry_for_return(self, return_id: str) -> Optional[LedgerEntry]:
        raise NotImplementedError

    def refund_entries(self) -> list[LedgerEntry]:
        raise NotImplementedError

    def active_return_for_order(self, order_id: str) -> Optional[ReturnRequest]:
        for ret in self.list_returns(order_id=order_id):
            if not ret.is_terminal:
                return ret
        return None


class InMemoryStore(ReturnStore):
    """Dict-backed store; one re-entrant lock serializes transactions."""

    def __init__(self):
        self._orders: dict[str, Order] = {}
        self._returns: dict[str, ReturnRequest] = {}
        self._wallets: dict[str, Wallet] = {}
        self._ledger: dict[str, LedgerEntry] = {}
        self._lock = threading.RLock()
        self._depth = 0

    def _state(self) -> tuple:
        return (self._orders, self._returns, self._wallets, self._ledger)

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStore"]:
        with self._lock:
            outermost = self._depth == 0
            snapshot = copy.deepcopy(self._state()) if outermost else None
            self._depth += 1
            try:
                yield self
            except BaseException:
                if outermost:
                    self._orders, self._returns, self._wallets, self._ledger = snapshot
                    logger.debug("In-memory transaction rolled back")
                raise
            finally:
                self._depth -= 1

    @staticmethod
    def _bump(current_version: int, doc, expected_version: Optional[int], label: str) -> None:
        expected = doc.version if expected_version is None else expected_version
        if current_version != expected:
            logger.warning(f"Version conflict on {label}: stored {current_version}, expected {expected}")
            raise ConcurrencyError(
                f"{label} was modified concurrently",
                expected_version=expected,
                current_version=current_version,
            )
        doc.version = current_version + 1

    # Orders

    def add_order(self, order: Order) -> Order:
        with self._lock:
            if order.id in self._orders:
                raise ConcurrencyError(f"Order {order.id} already exists")
            self._orders[order.id] = order.model_copy(deep=True)
            return order

    def get_order(self, order_id: str) -> Order:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise NotFoundError(f"Order not found: {order_id}")
            return order.model_copy(deep=True)

    def save_order(self, order: Order, expected_version: Optional[int] = None) -> Order:
        with self._lock:
            stored = self._orders.get(order.id)
            if stored is None:
                raise NotFoundError(f"Order not found: {order.id}")
            self._bump(stored.version, order, expected_version, f"Order {order.id}")
            self._orders[order.id] = order.model_copy(deep=True)
            return order

    # Returns

    def add_return(self, ret: ReturnRequest) -> ReturnRequest:
        with self._lock:
            ensure_history_consistent(ret)
            if ret.id in self._returns:
                raise ConcurrencyError(f"Return {ret.id} already exists")
            if any(r.request_id == ret.request_id for r in self._returns.values()):
                raise ConcurrencyError(f"Return request id {ret.request_id} already exists")
            self._returns[ret.id] = ret.model_copy(deep=True)
            return ret

    def get_return(self, return_id: str) -> ReturnRequest:
        with self._lock:
            ret = self._returns.get(return_id)
            if ret is None:
                ret = next((r for r in self._returns.values() if r.request_id == return_id), None)
            if ret is None:
                raise NotFoundError(f"Return request not found: {return_id}")
            return ret.model_copy(deep=True)

    def save_return(self, ret: ReturnRequest, expected_version: Optional[int] = None) -> ReturnRequest:
        with self._lock:
            ensure_history_consistent(ret)
            stored = self._returns.get(ret.id)
            if stored is None:
                raise NotFoundError(f"Return request not found: {ret.id}")
            self._bump(stored.version, ret, expected_version, f"Return {ret.request_id}")
            self._returns[ret.id] = ret.model_copy(deep=True)
            return ret

    def list_returns(
        self,
        customer_id: Optional[str] = None,
        status: Optional[ReturnStatus] = None,
        order_id: Optional[str] = None,
        assigned_manager: Optional[str] = None,
        assigned_agent: Optional[str] = None,
    ) -> list[ReturnRequest]:
        with self._lock:
            results = list(self._returns.values())
        if customer_id:
            results = [r for r in results if r.customer_id == customer_id]
        if status:
            results = [r for r in results if r.status == ReturnStatus(status)]
        if order_id:
            results = [r for r in results if r.order_id == order_id]
        if assigned_manager:
            results = [r for r in results if r.warehouse.assigned_manager == assigned_manager]
        if assigned_agent:
            results = [r for r in results if r.warehouse.pickup.assigned_agent == assigned_agent]
        results.sort(key=lambda r: r.requested_at, reverse=True)
        return [r.model_copy(deep=True) for r in results]

    # Wallets and ledger

    def add_wallet(self, wallet: Wallet) -> Wallet:
        with self._lock:
            self._wallets[wallet.user_id] = wallet.model_copy(deep=True)
            return wallet

    def get_wallet(self, user_id: str) -> Optional[Wallet]:
        with self._lock:
            wallet = self._wallets.get(user_id)
            return wallet.model_copy(deep=True) if wallet else None

    def credit_wallet(self, user_id: str, coins: Decimal) -> Wallet:
        with self._lock:
            wallet = self._wallets.get(user_id)
            if wallet is None:
                raise NotFoundError(f"Wallet not found for user {user_id}")
            wallet.balance += coins
            wallet.total_earned += coins
            wallet.version += 1
            return wallet.model_copy(deep=True)

    def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        with self._lock:
            if entry.return_id and self.ledger_entry_for_return(entry.return_id):
                raise SettlementConsistencyError(
                    f"A refund ledger entry already exists for return {entry.return_id}",
                    return_id=entry.return_id,
                )
            self._ledger[entry.id] = entry.model_copy(deep=True)
            return entry

    def ledger_entry_for_return(self, return_id: str) -> Optional[LedgerEntry]:
        with self._lock:
            for entry in self._ledger.values():
                if entry.return_id == return_id and entry.type == LedgerEntryType.REFUND:
                    return entry.model_copy(deep=True)
            return None

    def refund_entries(self) -> list[LedgerEntry]:
        with self._lock:
            return [
                e.model_copy(deep=True) for e in self._ledger.values()
                if e.type == LedgerEntryType.REFUND
            ]
