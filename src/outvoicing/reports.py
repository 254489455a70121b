"""Reporting aggregator for Outvoicing.

Every function here is a read-only projection over the current invoices,
quotes, tasks and products. Nothing is cached; callers recompute after each
mutation. Date-sensitive projections accept ``today`` so they can be
evaluated for any calendar day.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from . import log
from .back_office import low_stock_products
from .constants import OPEN_INVOICE_STATUSES, InvoiceStatus, QuoteStatus, TaskStatus, ToDoKind
from .core_logic import RuntimeContext, effective_invoice_status, quantize_money, resolve_today
from .data_manager import Invoice, Product, Quote, Task


ZERO = Decimal("0")
RECENT_INVOICE_LIMIT = 5
TOP_SERVICE_LIMIT = 5
MONTHLY_REVENUE_WINDOW = 6
REVENUE_WINDOW_DAYS = 30
QUOTE_FOLLOW_UP_DAYS = 7


@dataclass(frozen=True)
class ToDoItem:
    """One actionable reminder on the daily feed."""

    item_id: str
    kind: ToDoKind
    text: str
    related_id: str


@dataclass(frozen=True)
class MonthlyRevenue:
    year: int
    month: int
    total: Decimal

    @property
    def label(self) -> str:
        return date(self.year, self.month, 1).strftime("%b %y")


@dataclass(frozen=True)
class ServiceUsage:
    description: str
    quantity: Decimal


@dataclass(frozen=True)
class ProfitSummary:
    """Revenue, cost and margin over paid invoices."""

    revenue: Decimal
    cost: Decimal
    profit: Decimal
    margin: Decimal


@dataclass(frozen=True)
class InvoiceReport:
    """Invoices issued within a date range, with summed totals."""

    start: date
    end: date
    invoices: Tuple[Invoice, ...]
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal


@dataclass(frozen=True)
class DashboardSummary:
    outstanding_total: Decimal
    open_invoice_count: int
    overdue_total: Decimal
    overdue_count: int
    revenue_last_30_days: Decimal
    profitability: ProfitSummary
    monthly_revenue: Tuple[MonthlyRevenue, ...]
    top_services: Tuple[ServiceUsage, ...]
    todo: Tuple[ToDoItem, ...]
    recent_invoices: Tuple[Invoice, ...]
    low_stock: Tuple[Product, ...]


# ---------------------------------------------------------------------------
# Balances and revenue
# ---------------------------------------------------------------------------


def outstanding_total(invoices: Iterable[Invoice]) -> Decimal:
    """Sum the unpaid balance of every Pending, Overdue or Partial invoice."""

    return sum(
        (invoice.balance_due for invoice in invoices if invoice.status in OPEN_INVOICE_STATUSES),
        ZERO,
    )


def open_invoice_count(invoices: Iterable[Invoice]) -> int:
    return sum(1 for invoice in invoices if invoice.status in OPEN_INVOICE_STATUSES)


def overdue_invoices(invoices: Iterable[Invoice], today: Optional[date] = None) -> List[Invoice]:
    """Return invoices that are stored as, or have lapsed into, ``Overdue``."""

    today = resolve_today(today)
    return [invoice for invoice in invoices if effective_invoice_status(invoice, today) == InvoiceStatus.OVERDUE]


def overdue_total(invoices: Iterable[Invoice], today: Optional[date] = None) -> Decimal:
    return sum((invoice.balance_due for invoice in overdue_invoices(invoices, today)), ZERO)


def revenue_last_30_days(invoices: Iterable[Invoice], today: Optional[date] = None) -> Decimal:
    """Sum Paid invoice totals issued in the trailing 30 days up to ``today``.

    The window is ``today - 30 < issue_date <= today``; future-dated invoices
    are not counted.
    """

    today = resolve_today(today)
    window_start = today - timedelta(days=REVENUE_WINDOW_DAYS)
    return sum(
        (
            invoice.total
            for invoice in invoices
            if invoice.status == InvoiceStatus.PAID and window_start < invoice.issue_date <= today
        ),
        ZERO,
    )


def monthly_revenue(invoices: Iterable[Invoice], *, window: int = MONTHLY_REVENUE_WINDOW) -> List[MonthlyRevenue]:
    """Group Paid invoice totals by calendar month of issue.

    Buckets are keyed by ``(year, month)`` so ordering survives year
    boundaries. The latest ``window`` months that have revenue are returned
    oldest first.
    """

    buckets: Dict[Tuple[int, int], Decimal] = {}
    for invoice in invoices:
        if invoice.status != InvoiceStatus.PAID:
            continue
        key = (invoice.issue_date.year, invoice.issue_date.month)
        buckets[key] = buckets.get(key, ZERO) + invoice.total

    series = [MonthlyRevenue(year=year, month=month, total=total) for (year, month), total in sorted(buckets.items())]
    return series[-window:] if window > 0 else []


def top_services(invoices: Iterable[Invoice], *, limit: int = TOP_SERVICE_LIMIT) -> List[ServiceUsage]:
    """Rank line-item descriptions by total quantity across all invoices.

    Descriptions are trimmed before grouping; blank descriptions are skipped.
    Ties keep the order in which the description was first seen.
    """

    counts: Dict[str, Decimal] = {}
    for invoice in invoices:
        for item in invoice.items:
            description = item.description.strip()
            if description:
                counts[description] = counts.get(description, ZERO) + item.quantity

    ranked = sorted(counts.items(), key=lambda entry: entry[1], reverse=True)
    return [ServiceUsage(description=description, quantity=quantity) for description, quantity in ranked[:limit]]


def calculate_profit_summary(invoices: Iterable[Invoice]) -> ProfitSummary:
    """Compute profit and margin over Paid invoices.

    Item cost is ``cost * quantity`` with a missing cost counting as zero. The
    margin is a percentage rounded to cents and is zero when there is no
    revenue.

    Args:
        invoices (Iterable[Invoice]): Invoices to inspect; only Paid ones count.

    Returns:
        ProfitSummary: Aggregated revenue, cost, profit and margin.
    """
    paid = [invoice for invoice in invoices if invoice.status == InvoiceStatus.PAID]
    revenue = sum((invoice.total for invoice in paid), ZERO)
    cost = sum(
        ((item.cost or ZERO) * item.quantity for invoice in paid for item in invoice.items),
        ZERO,
    )
    profit = revenue - cost
    margin = quantize_money(profit / revenue * Decimal("100")) if revenue > ZERO else ZERO
    log.debug("Profit summary: revenue=%s cost=%s profit=%s margin=%s", revenue, cost, profit, margin)
    return ProfitSummary(revenue=revenue, cost=cost, profit=profit, margin=margin)


def recent_invoices(invoices: Iterable[Invoice], *, limit: int = RECENT_INVOICE_LIMIT) -> List[Invoice]:
    """Return the latest invoices by issue date, newest first."""

    return sorted(invoices, key=lambda invoice: invoice.issue_date, reverse=True)[:limit]


# ---------------------------------------------------------------------------
# Daily to-do feed
# ---------------------------------------------------------------------------


def build_daily_todo(
    invoices: Iterable[Invoice],
    quotes: Iterable[Quote],
    tasks: Iterable[Task],
    today: Optional[date] = None,
) -> List[ToDoItem]:
    """Derive today's reminders from documents and tasks.

    The feed lists overdue invoices first, then Sent quotes expiring between
    today and a week from today (inclusive), then unfinished tasks due
    exactly today.
    """

    today = resolve_today(today)
    horizon = today + timedelta(days=QUOTE_FOLLOW_UP_DAYS)
    feed: List[ToDoItem] = []

    for invoice in overdue_invoices(invoices, today):
        feed.append(
            ToDoItem(
                item_id=f"todo-inv-{invoice.invoice_id}",
                kind=ToDoKind.INVOICE,
                text=f"Follow up on overdue invoice {invoice.invoice_number} for {invoice.client.name}.",
                related_id=invoice.invoice_id,
            )
        )

    for quote in quotes:
        if quote.status == QuoteStatus.SENT and today <= quote.expiry_date <= horizon:
            feed.append(
                ToDoItem(
                    item_id=f"todo-quote-{quote.quote_id}",
                    kind=ToDoKind.QUOTE,
                    text=(
                        f"Follow up on quote {quote.quote_number} for {quote.client.name} "
                        f"(expires {quote.expiry_date.isoformat()})."
                    ),
                    related_id=quote.quote_id,
                )
            )

    for task in tasks:
        if task.status != TaskStatus.DONE and task.due_date == today:
            feed.append(
                ToDoItem(
                    item_id=f"todo-task-{task.task_id}",
                    kind=ToDoKind.TASK,
                    text=f'Task due today: "{task.title}".',
                    related_id=task.task_id,
                )
            )

    log.debug("Daily to-do feed for %s has %d item(s)", today, len(feed))
    return feed


# ---------------------------------------------------------------------------
# Aggregate views
# ---------------------------------------------------------------------------


def filter_invoices_by_date(
    invoices: Iterable[Invoice],
    start: Optional[date] = None,
    end: Optional[date] = None,
    *,
    today: Optional[date] = None,
) -> InvoiceReport:
    """Select invoices issued between ``start`` and ``end`` inclusive.

    The range defaults to the first day of the current month through today.

    Raises:
        ValueError: If ``end`` precedes ``start``.
    """
    today = resolve_today(today)
    start = start or today.replace(day=1)
    end = end or today
    if end < start:
        raise ValueError("End date cannot be before start date")

    selected: Sequence[Invoice] = tuple(invoice for invoice in invoices if start <= invoice.issue_date <= end)
    report = InvoiceReport(
        start=start,
        end=end,
        invoices=tuple(selected),
        subtotal=sum((invoice.subtotal for invoice in selected), ZERO),
        tax_amount=sum((invoice.tax_amount for invoice in selected), ZERO),
        total=sum((invoice.total for invoice in selected), ZERO),
    )
    log.debug("Filtered %d invoice(s) between %s and %s", len(selected), start, end)
    return report


def build_dashboard(context: RuntimeContext, today: Optional[date] = None) -> DashboardSummary:
    """Assemble every dashboard projection from the current state."""

    today = resolve_today(today)
    state = context.state
    invoices = state.invoices.values()
    overdue = overdue_invoices(invoices, today)
    summary = DashboardSummary(
        outstanding_total=outstanding_total(invoices),
        open_invoice_count=open_invoice_count(invoices),
        overdue_total=sum((invoice.balance_due for invoice in overdue), ZERO),
        overdue_count=len(overdue),
        revenue_last_30_days=revenue_last_30_days(invoices, today),
        profitability=calculate_profit_summary(invoices),
        monthly_revenue=tuple(monthly_revenue(invoices)),
        top_services=tuple(top_services(invoices)),
        todo=tuple(build_daily_todo(invoices, state.quotes.values(), state.tasks.values(), today)),
        recent_invoices=tuple(recent_invoices(invoices)),
        low_stock=tuple(low_stock_products(state.products.values())),
    )
    log.info(
        "Dashboard computed: outstanding=%s overdue=%s (%d) to-do=%d",
        summary.outstanding_total,
        summary.overdue_total,
        summary.overdue_count,
        len(summary.todo),
    )
    return summary
