"""Persisted documents.

Returns and orders are stored whole as JSON next to the columns we filter on.
``version`` is the optimistic-concurrency counter checked on every update.
"""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, Numeric, String, Text

from returnflow.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class OrderRecord(Base):
    __tablename__ = "orders"

    id = Column(String(64), primary_key=True)
    customer_id = Column(String(64), nullable=False, index=True)
    status = Column(String(32), nullable=False, index=True)
    has_active_return = Column(Boolean, default=False)
    document = Column(JSON, nullable=False)
    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class ReturnRecord(Base):
    __tablename__ = "return_requests"

    id = Column(String(64), primary_key=True)
    request_id = Column(String(32), unique=True, nullable=False, index=True)
    order_id = Column(String(64), nullable=False, index=True)
    customer_id = Column(String(64), nullable=False, index=True)
    status = Column(String(32), nullable=False, index=True)
    reason = Column(String(32), nullable=False)
    assigned_manager = Column(String(64), nullable=True, index=True)
    assigned_agent = Column(String(64), nullable=True, index=True)
    document = Column(JSON, nullable=False)
    version = Column(Integer, nullable=False, default=0)
    requested_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class WalletRecord(Base):
    __tablename__ = "wallets"

    user_id = Column(String(64), primary_key=True)
    balance = Column(Numeric(14, 2), nullable=False, default=0)
    total_earned = Column(Numeric(14, 2), nullable=False, default=0)
    version = Column(Integer, nullable=False, default=0)


class LedgerRecord(Base):
    __tablename__ = "ledger_entries"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    type = Column(String(16), nullable=False, default="REFUND")
    amount = Column(Numeric(14, 2), nullable=False)
    balance_after = Column(Numeric(14, 2), nullable=False)
    order_id = Column(String(64), nullable=True)
    # one REFUND entry per return
    return_id = Column(String(64), nullable=True, unique=True, index=True)
    description = Column(Text, default="")
    details = Column(JSON, default=dict)
    status = Column(String(16), nullable=False, default="COMPLETED")
    created_at = Column(DateTime(timezone=True), default=utcnow)
