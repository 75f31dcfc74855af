"""
Derived views over a products/purchases snapshot: customer roll-ups and the
admin dashboard statistics. Both are recomputed from scratch on every call.
"""

from collections import Counter
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Dict, List, Optional, Sequence

from schemas import (
    Customer,
    DashboardStats,
    DaySales,
    PAYMENT_METHODS,
    PaymentSales,
    Product,
    Purchase,
    StatusCount,
    TopProduct,
)

REALIZED_STATUSES = ("paid", "completed")
STATUS_LABELS = (
    ("pending", "Pending"),
    ("paid", "Paid"),
    ("processing", "Processing"),
    ("completed", "Completed"),
    ("cancelled", "Cancelled"),
)
LOW_STOCK_THRESHOLD = 5
RECENT_ORDERS_LIMIT = 10
TOP_PRODUCTS_LIMIT = 5
SALES_DAYS = 7


def is_realized(purchase: Purchase) -> bool:
    return purchase.status in REALIZED_STATUSES


def day_label(day: date) -> str:
    """Short calendar label without the year, e.g. '18 Oct'."""
    return f"{day.day} {day.strftime('%b')}"


def get_customers(purchases: Sequence[Purchase]) -> List[Customer]:
    """Group purchases by email, biggest spenders first.

    Name and phone come from the first purchase seen for an email. Ties on
    total spent keep first-seen order.
    """
    customers: Dict[str, Customer] = {}
    for purchase in purchases:
        customer = customers.get(purchase.customer_email)
        if customer is None:
            customers[purchase.customer_email] = Customer(
                email=purchase.customer_email,
                name=purchase.customer_name,
                phone=purchase.customer_phone,
                total_orders=1,
                total_spent=purchase.price,
                last_order=purchase.created_at,
                orders=[purchase],
            )
            continue
        customer.total_orders += 1
        customer.total_spent += purchase.price
        if purchase.created_at > customer.last_order:
            customer.last_order = purchase.created_at
        customer.orders.append(purchase)
    return sorted(customers.values(), key=lambda c: c.total_spent, reverse=True)


def _sales_by_day(realized: List[Purchase], today: date, tz: tzinfo) -> List[DaySales]:
    labels = [day_label(today - timedelta(days=offset)) for offset in range(SALES_DAYS - 1, -1, -1)]
    amounts = Counter()
    for p in realized:
        amounts[day_label(p.created_at.astimezone(tz).date())] += p.price
    return [DaySales(date=label, amount=amounts[label]) for label in labels]


def get_stats(products: Sequence[Product], purchases: Sequence[Purchase],
              now: Optional[datetime] = None, tz: Optional[tzinfo] = None) -> DashboardStats:
    """Dashboard numbers for the given snapshot.

    Revenue only counts paid and completed purchases. Day buckets cover the
    last 7 calendar days in ``tz`` (today last) and match purchases by their
    day/month label. Top product revenue is sales_count times the *current*
    price, so it drifts from the real takings once a price changes.
    """
    tz = tz or timezone.utc
    now = (now or datetime.now(timezone.utc)).astimezone(tz)
    realized = [p for p in purchases if is_realized(p)]

    status_counts = Counter(p.status for p in purchases)
    payment_totals = Counter()
    for p in realized:
        payment_totals[p.payment_method] += p.price

    top = sorted((p for p in products if p.sales_count > 0), key=lambda p: p.sales_count, reverse=True)

    return DashboardStats(
        total_sales=sum(p.price for p in realized),
        total_orders=len(purchases),
        total_products=sum(1 for p in products if p.is_active),
        low_stock_products=sum(1 for p in products if p.is_active and p.stock <= LOW_STOCK_THRESHOLD),
        recent_orders=list(purchases[:RECENT_ORDERS_LIMIT]),
        sales_by_day=_sales_by_day(realized, now.date(), tz),
        orders_by_status=[StatusCount(status=label, count=status_counts[status]) for status, label in STATUS_LABELS],
        sales_by_payment=[PaymentSales(method=m, amount=payment_totals[m]) for m in PAYMENT_METHODS],
        top_products=[
            TopProduct(name=p.name, sales=p.sales_count, revenue=p.sales_count * p.price)
            for p in top[:TOP_PRODUCTS_LIMIT]
        ],
    )
