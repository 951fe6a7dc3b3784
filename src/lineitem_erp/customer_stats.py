"""Customer purchase statistics derived from invoices.

After invoice payments are saved the affected customers get their purchase
count, total spend, total paid amount, first and last purchase date, and a
loyalty rank recomputed from their invoices.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from . import log
from .constants import Collection, CustomerRank, PaymentStatus
from .data_manager import RecordStore
from .numeric import to_decimal


CUSTOMERS = Collection.CUSTOMERS.value
INVOICES = Collection.INVOICES.value


@dataclass(frozen=True)
class RankRule:
    min_purchase_count: int
    min_total_spend: Decimal
    min_acquaintance_days: int


@dataclass(frozen=True)
class LevelingConfig:
    """Thresholds for each rank above ``normal``."""

    enabled: bool = True
    eligible_statuses: Tuple[str, ...] = ("final", "settled", "completed")
    silver: RankRule = field(default_factory=lambda: RankRule(3, Decimal("30000000"), 30))
    gold: RankRule = field(default_factory=lambda: RankRule(8, Decimal("120000000"), 120))
    vip: RankRule = field(default_factory=lambda: RankRule(15, Decimal("300000000"), 365))


@dataclass(frozen=True)
class CustomerStats:
    purchase_count: int
    total_spend: Decimal
    total_paid_amount: Decimal
    first_purchase_date: Optional[str]
    last_purchase_date: Optional[str]
    acquaintance_days: int


DEFAULT_LEVELING = LevelingConfig()


def _date_only(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    try:
        return date.fromisoformat(text[:10]).isoformat()
    except ValueError:
        return None


def _days_since(day: Optional[str], today: date) -> int:
    if not day:
        return 0
    delta = (today - date.fromisoformat(day)).days
    return delta if delta > 0 else 0


def calculate_stats(
    invoices: Iterable[Mapping[str, Any]],
    config: LevelingConfig = DEFAULT_LEVELING,
    customer_created_at: Any = None,
    today: Optional[date] = None,
) -> CustomerStats:
    """Aggregate one customer's invoices.

    Only invoices with an eligible status count as purchases; received
    payments are summed over every invoice. Acquaintance starts at the
    customer's creation date, or at the first purchase when that is unknown.
    """

    today = today or datetime.now(UTC).date()
    invoices = list(invoices)
    eligible = [invoice for invoice in invoices if str(invoice.get("status") or "") in config.eligible_statuses]

    total_spend = sum((to_decimal(invoice.get("total_invoice_amount")) for invoice in eligible), Decimal("0"))
    total_paid = Decimal("0")
    for invoice in invoices:
        payments = invoice.get("payments")
        for payment in payments if isinstance(payments, list) else ():
            if payment.get("status") == PaymentStatus.RECEIVED.value:
                total_paid += to_decimal(payment.get("amount"))

    dates = sorted(
        day for day in (_date_only(invoice.get("invoice_date") or invoice.get("created_at")) for invoice in eligible) if day
    )
    first = dates[0] if dates else None
    last = dates[-1] if dates else None
    start = _date_only(customer_created_at) or first

    return CustomerStats(
        purchase_count=len(eligible),
        total_spend=total_spend,
        total_paid_amount=total_paid,
        first_purchase_date=first,
        last_purchase_date=last,
        acquaintance_days=_days_since(start, today),
    )


def _meets(stats: CustomerStats, rule: RankRule) -> bool:
    return (
        stats.purchase_count >= rule.min_purchase_count
        and stats.total_spend >= rule.min_total_spend
        and stats.acquaintance_days >= rule.min_acquaintance_days
    )


def compute_rank(stats: CustomerStats, config: LevelingConfig = DEFAULT_LEVELING) -> CustomerRank:
    if not config.enabled:
        return CustomerRank.NORMAL
    for rank, rule in ((CustomerRank.VIP, config.vip), (CustomerRank.GOLD, config.gold), (CustomerRank.SILVER, config.silver)):
        if _meets(stats, rule):
            return rank
    return CustomerRank.NORMAL


def sync_customer_stats(
    store: RecordStore,
    customer_ids: Iterable[Any],
    config: LevelingConfig = DEFAULT_LEVELING,
    today: Optional[date] = None,
) -> Dict[str, CustomerStats]:
    """Recompute and store the statistics of each customer in ``customer_ids``.

    Unknown customers are skipped with a warning.

    Returns:
        dict[str, CustomerStats]: Statistics per updated customer id.
    """

    ids: List[str] = list(dict.fromkeys(str(cid).strip() for cid in customer_ids if cid and str(cid).strip()))
    if not ids:
        return {}

    customers = {str(row["id"]): row for row in store.read(CUSTOMERS, {"id": ids})}
    by_customer: Dict[str, List[Mapping[str, Any]]] = {cid: [] for cid in ids}
    for invoice in store.read(INVOICES, {"customer_id": ids}):
        by_customer.setdefault(str(invoice.get("customer_id")), []).append(invoice)

    results: Dict[str, CustomerStats] = {}
    for customer_id in ids:
        customer = customers.get(customer_id)
        if customer is None:
            log.warning("Customer '%s' not found; statistics not updated", customer_id)
            continue
        stats = calculate_stats(by_customer[customer_id], config, customer.get("created_at"), today)
        rank = compute_rank(stats, config)
        store.update_field(
            CUSTOMERS,
            customer_id,
            {
                "purchase_count": stats.purchase_count,
                "total_spend": stats.total_spend,
                "total_paid_amount": stats.total_paid_amount,
                "first_purchase_date": stats.first_purchase_date,
                "last_purchase_date": stats.last_purchase_date,
                "rank": rank.value,
            },
        )
        log.info("Customer '%s' statistics synced (%d purchase(s), rank %s)", customer_id, stats.purchase_count, rank.value)
        results[customer_id] = stats
    return results


__all__ = [
    "RankRule",
    "LevelingConfig",
    "CustomerStats",
    "DEFAULT_LEVELING",
    "calculate_stats",
    "compute_rank",
    "sync_customer_stats",
]
