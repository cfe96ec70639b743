"""Migration: Add Customer Analytics And Segmentation

Backfills analytics, lifecycle, segmentation and contact preference
fields on every customer, then derives order statistics, a risk score and
a segment from each customer's transaction history.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from stockroom.db.migrations.base import BaseMigration, MigrationContext

DEFAULTS = """
    totalOrders = 0,
    totalSpent = 0,
    averageOrderValue = 0,
    lastOrderDate = NONE,
    firstOrderDate = NONE,
    customerSince = time::now(),
    lastContactDate = NONE,
    lifecycleStage = 'new',
    preferredOrderDays = [],
    averageTimeBetweenOrders = 0,
    seasonalityPattern = NONE,
    segment = 'standard',
    riskScore = 0,
    loyaltyPoints = 0,
    creditLimit = 0,
    paymentTerms = 'immediate',
    preferredContactMethod = 'email',
    marketingOptIn = true,
    notifications = {
        orderUpdates: true,
        promotions: true,
        newProducts: false,
        paymentReminders: true
    },
    company = NONE,
    taxId = NONE,
    website = NONE,
    industry = NONE,
    source = 'direct',
    deliveryInstructions = NONE,
    preferredDeliveryTime = NONE,
    isActive = true,
    isBlocked = false,
    isVip = false,
    tags = [],
    internalNotes = NONE
"""

FIELDS = [
    "totalOrders",
    "totalSpent",
    "averageOrderValue",
    "lastOrderDate",
    "firstOrderDate",
    "customerSince",
    "lastContactDate",
    "lifecycleStage",
    "preferredOrderDays",
    "averageTimeBetweenOrders",
    "seasonalityPattern",
    "segment",
    "riskScore",
    "loyaltyPoints",
    "creditLimit",
    "paymentTerms",
    "preferredContactMethod",
    "marketingOptIn",
    "notifications",
    "company",
    "taxId",
    "website",
    "industry",
    "source",
    "deliveryInstructions",
    "preferredDeliveryTime",
    "isActive",
    "isBlocked",
    "isVip",
    "tags",
    "internalNotes",
]

INDEXES = [
    ("customers_segment_index", "segment"),
    ("customers_lifecycle_stage_index", "lifecycleStage"),
    ("customers_total_spent_desc_index", "totalSpent"),
    ("customers_last_order_date_desc_index", "lastOrderDate"),
    ("customers_risk_score_desc_index", "riskScore"),
    ("customers_vip_spending_index", "isVip, totalSpent"),
    ("customers_tags_index", "tags"),
    ("customers_status_index", "isActive, isBlocked"),
]

VIP_SPEND = 10000
PREMIUM_SPEND = 5000
ACTIVE_ORDERS = 5
AT_RISK_DAYS = 90
CHURNED_DAYS = 365


def _as_datetime(value: Any, default: datetime) -> datetime:
    if isinstance(value, datetime):
        moment = value
    elif value:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            moment = datetime.fromisoformat(text)
        except ValueError:
            return default
    else:
        return default
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


def _risk_score(debt: float) -> float:
    # Debt is stored as a negative balance
    if debt < -1000:
        return min(80, abs(debt) / 100)
    if debt < -500:
        return min(50, abs(debt) / 50)
    return max(0, abs(debt) / 10)


def customer_analytics(customer: dict[str, Any], now: Optional[datetime] = None) -> dict[str, Any]:
    """Derive order statistics, risk and segmentation for one customer.

    Positive transaction amounts count as orders. Transactions without a
    date are treated as happening now.
    """
    now = now or datetime.now(timezone.utc)
    analytics: dict[str, Any] = {
        "totalOrders": 0,
        "totalSpent": 0,
        "averageOrderValue": 0,
        "lastOrderDate": None,
        "firstOrderDate": None,
        "riskScore": 0,
    }

    transactions = customer.get("transactions") or []
    if transactions:
        valid = [t for t in transactions if t.get("amount") is not None]
        if valid:
            orders = [t for t in valid if t["amount"] > 0]
            analytics["totalOrders"] = len(orders)
            analytics["totalSpent"] = sum(abs(t["amount"]) for t in orders)
            if orders:
                analytics["averageOrderValue"] = analytics["totalSpent"] / len(orders)

            dates = sorted(_as_datetime(t.get("date"), now) for t in valid)
            analytics["firstOrderDate"] = dates[0]
            analytics["lastOrderDate"] = dates[-1]

        analytics["riskScore"] = _risk_score(customer.get("debt") or 0)

    segment = "standard"
    lifecycle_stage = "new"
    is_vip = False

    if analytics["totalSpent"] > VIP_SPEND:
        segment = "vip"
        is_vip = True
        lifecycle_stage = "active"
    elif analytics["totalSpent"] > PREMIUM_SPEND:
        segment = "premium"
        lifecycle_stage = "active"
    elif analytics["totalOrders"] > ACTIVE_ORDERS:
        lifecycle_stage = "active"

    if analytics["lastOrderDate"] is not None:
        idle_days = (now - analytics["lastOrderDate"]).total_seconds() / 86400
        if idle_days > CHURNED_DAYS:
            lifecycle_stage = "churned"
        elif idle_days > AT_RISK_DAYS:
            lifecycle_stage = "at-risk"

    analytics.update(
        segment=segment,
        lifecycleStage=lifecycle_stage,
        isVip=is_vip,
        customerSince=_as_datetime(customer.get("createdAt"), now),
    )
    return analytics


class MigrationAddCustomerAnalyticsAndSegmentation(BaseMigration):
    name = "Add Customer Analytics And Segmentation"
    version = "20250721000003"
    description = "Add customer analytics, segmentation, and behavior tracking fields"

    async def up(self, ctx: MigrationContext) -> None:
        await ctx.execute(f"UPDATE customers SET {DEFAULTS}")

        customers = await ctx.execute("SELECT id, transactions, debt, createdAt FROM customers")
        for customer in customers:
            analytics = customer_analytics(customer)
            await ctx.execute(
                "UPDATE $id MERGE $data",
                {"id": customer["id"], "data": {k: v for k, v in analytics.items() if v is not None}},
            )

        for index, columns in INDEXES:
            await ctx.execute(f"DEFINE INDEX IF NOT EXISTS {index} ON TABLE customers COLUMNS {columns}")

    async def down(self, ctx: MigrationContext) -> None:
        await ctx.execute(f"UPDATE customers UNSET {', '.join(FIELDS)}")

        for index, _ in INDEXES:
            await ctx.execute(f"REMOVE INDEX IF EXISTS {index} ON TABLE customers")
