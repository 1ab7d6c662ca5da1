"""ReturnFlow CLI management tool.

Usage:
    python -m cli policy show
    python -m cli refund calc --item 200:1 --item 200:1 --percentage 80
    python -m cli refund calc --item 400:1 --reason changed_mind
    python -m cli eligibility check --delivered-at 2024-05-01T10:00:00+00:00
    python -m cli pickup-charge --reason size_issue
    python -m cli db init --database-url sqlite:///./returnflow.db
    python -m cli settle reconcile --database-url sqlite:///./returnflow.db
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional

from returnflow.config import ReturnPolicy, get_settings
from returnflow.exceptions import ReturnsError
from returnflow.schemas import SYSTEM_ACTOR, ReturnItem, ReturnReason
from returnflow.services.eligibility import evaluate_eligibility
from returnflow.services.pickup_charge import calculate_pickup_charge, classify_reason
from returnflow.services.refund_calc import settlement_amounts, with_pickup_charge


def main(argv: Optional[list[str]] = None):
    parser = argparse.ArgumentParser(
        prog="returnflow",
        description="ReturnFlow CLI",
    )
    sub = parser.add_subparsers(dest="command", help="Top-level command")

    # ── Policy ───────────────────────────────────────────
    policy_parser = sub.add_parser("policy", help="Return policy")
    policy_sub = policy_parser.add_subparsers(dest="action")
    policy_sub.add_parser("show", help="Show effective policy constants")

    # ── Refund ───────────────────────────────────────────
    refund_parser = sub.add_parser("refund", help="Refund calculation")
    refund_sub = refund_parser.add_subparsers(dest="action")

    calc = refund_sub.add_parser("calc", help="Calculate a refund")
    calc.add_argument("--item", action="append", required=True, help="PRICE:QTY, repeatable")
    calc.add_argument("--percentage", default="100", help="Refund percentage (0-100)")
    calc.add_argument("--reason", choices=[r.value for r in ReturnReason], help="Return reason")
    calc.add_argument("--deduction", action="append", default=[], help="Extra deduction amount, repeatable")

    # ── Eligibility ──────────────────────────────────────
    elig_parser = sub.add_parser("eligibility", help="Return eligibility")
    elig_sub = elig_parser.add_subparsers(dest="action")

    check = elig_sub.add_parser("check", help="Check eligibility for a delivery date")
    check.add_argument("--delivered-at", required=True, help="Delivery timestamp (ISO 8601)")
    check.add_argument("--now", help="Evaluation time (ISO 8601, default: now)")
    check.add_argument("--status", default="delivered", help="Order status")
    check.add_argument("--active-return", action="store_true", help="Order already has an active return")

    # ── Pickup charge ────────────────────────────────────
    charge = sub.add_parser("pickup-charge", help="Pickup charge for a reason")
    charge.add_argument("--reason", required=True, choices=[r.value for r in ReturnReason])
    override = charge.add_mutually_exclusive_group()
    override.add_argument("--free", dest="override", action="store_true", default=None, help="Admin override: free")
    override.add_argument("--charged", dest="override", action="store_false", help="Admin override: charged")

    # ── Database ─────────────────────────────────────────
    db_parser = sub.add_parser("db", help="Database management")
    db_sub = db_parser.add_subparsers(dest="action")
    init = db_sub.add_parser("init", help="Create tables")
    init.add_argument("--database-url", help="Database URL (default: settings)")

    # ── Settlement ───────────────────────────────────────
    settle_parser = sub.add_parser("settle", help="Refund settlement")
    settle_sub = settle_parser.add_subparsers(dest="action")
    reconcile = settle_sub.add_parser("reconcile", help="Complete returns already credited in the ledger")
    reconcile.add_argument("--database-url", help="Database URL (default: settings)")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return

    handlers = {
        "policy": handle_policy,
        "refund": handle_refund,
        "eligibility": handle_eligibility,
        "pickup-charge": handle_pickup_charge,
        "db": handle_db,
        "settle": handle_settle,
    }
    handler = handlers.get(args.command)
    if handler:
        try:
            handler(args)
        except ReturnsError as e:
            print(f"Error: {e.message}")
            sys.exit(1)
    else:
        parser.print_help()


def _policy() -> ReturnPolicy:
    return ReturnPolicy.from_settings(get_settings())


def _parse_time(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_items(raw_items: list[str]) -> list[ReturnItem]:
    items = []
    for n, raw in enumerate(raw_items, start=1):
        price, _, qty = raw.partition(":")
        try:
            items.append(ReturnItem(
                order_line_id=f"line-{n}",
                product_id=f"item-{n}",
                unit_price=Decimal(price),
                quantity=int(qty or 1),
            ))
        except (InvalidOperation, ValueError):
            print(f"Invalid item: {raw} (expected PRICE:QTY)")
            sys.exit(2)
    return items


# ── Command Handlers ────────────────────────────────────

def handle_policy(args):
    if args.action == "show":
        print(json.dumps(_policy().to_dict(), indent=2))
    else:
        print("Usage: returnflow policy show")


def handle_refund(args):
    if args.action != "calc":
        print("Usage: returnflow refund calc --item 200:1 --percentage 80")
        return

    from returnflow.schemas import Deduction, DeductionType

    policy = _policy()
    items = _parse_items(args.item)
    deductions = [
        Deduction(type=DeductionType.PROCESSING_FEE, amount=Decimal(amount), reason="Manual deduction")
        for amount in args.deduction
    ]
    if args.reason:
        pickup = calculate_pickup_charge(args.reason, charge_amount=policy.pickup_charge_amount)
        deductions = with_pickup_charge(deductions, pickup)

    breakdown = settlement_amounts(items, args.percentage, deductions, policy.coin_conversion_rate)
    print("Refund Calculation")
    print(f"  Original Amount:  {breakdown.original_amount}")
    print(f"  Percentage:       {breakdown.percentage}%")
    print(f"  Base Refund:      {breakdown.base_refund}")
    for d in breakdown.deductions:
        print(f"  - {d.type.value:<15} {d.amount}")
    print(f"  Final Amount:     {breakdown.final_amount}")
    print(f"  Coins:            {breakdown.final_coins} (x{breakdown.conversion_rate})")


def handle_eligibility(args):
    if args.action != "check":
        print("Usage: returnflow eligibility check --delivered-at 2024-05-01T10:00:00")
        return

    now = _parse_time(args.now) if args.now else datetime.now(timezone.utc)
    result = evaluate_eligibility(
        args.status,
        _parse_time(args.delivered_at),
        args.active_return,
        now,
        window_days=_policy().return_window_days,
    )
    symbol = "✅ Eligible" if result.is_eligible else f"❌ Not eligible: {result.reason}"
    print(symbol)
    print(json.dumps(result.to_dict(), indent=2))


def handle_pickup_charge(args):
    policy = _policy()
    charge = calculate_pickup_charge(
        args.reason,
        override=args.override,
        actor_id="cli" if args.override is not None else None,
        now=datetime.now(timezone.utc) if args.override is not None else None,
        charge_amount=policy.pickup_charge_amount,
    )
    info = classify_reason(args.reason)
    label = "Free" if charge.is_free else f"Charged {charge.amount}"
    print(f"{label} ({charge.reason})")
    print(f"  Category:  {info.category}")
    print(f"  Liability: {info.liability}")
    print(f"  Priority:  {info.priority}")


def _sql_store(database_url: Optional[str]):
    from returnflow.database import init_db, make_engine, make_session_factory
    from returnflow.services.sql_store import SqlStore

    engine = make_engine(database_url or get_settings().database_url)
    init_db(engine)
    return engine, SqlStore(make_session_factory(engine))


def handle_db(args):
    if args.action == "init":
        engine, _ = _sql_store(args.database_url)
        print(f"Tables created at {engine.url}")
    else:
        print("Usage: returnflow db init")


def handle_settle(args):
    if args.action != "reconcile":
        print("Usage: returnflow settle reconcile")
        return

    from returnflow.services.settlement import SettlementProcessor

    _, store = _sql_store(args.database_url)
    processor = SettlementProcessor(store, _policy())
    repaired = processor.reconcile(SYSTEM_ACTOR)
    if repaired:
        print(f"⚠️  Reconciled {len(repaired)} return(s):")
        for return_id in repaired:
            print(f"  {return_id}")
    else:
        print("✅ Ledger and returns are consistent")


if __name__ == "__main__":
    main()
