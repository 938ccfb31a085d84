"""Sales and ad insight records, store ranking and result metrics."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from trafficmanager.domain.accounts import AdAccountMetrics

SOCIAL_NETWORK = "SocialNetwork"
STORE = "Store"


@dataclass
class Sale:
    date: Optional[datetime] = None
    net_amount: float = 0.0


@dataclass
class SalesMetrics:
    total_revenue: float = 0.0
    sales_quantity: int = 0
    average_ticket: float = 0.0
    sales: list[Sale] = field(default_factory=list)


SalesByOrigin = dict[str, SalesMetrics]


@dataclass
class InsightFilters:
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


@dataclass
class ResultMetrics:
    conversion: float = 0.0
    roi: str = ""


@dataclass
class AdAccountInsightsResponse:
    ad_account_metrics: Optional[AdAccountMetrics] = None
    sales_metrics: Optional[SalesByOrigin] = None
    result_metrics: Optional[ResultMetrics] = None
    filters: Optional[InsightFilters] = None


@dataclass(kw_only=True)
class _Record:
    """Storage identity and timestamps, accepted as keywords only."""

    id: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class _AdRecord(_Record):
    account_id: str = ""
    external_id: str = ""
    ad_metrics: Optional[AdAccountMetrics] = None


@dataclass
class _SalesRecord(_Record):
    account_id: str = ""
    sales_metrics: Optional[SalesByOrigin] = None


@dataclass
class AdInsightEntry(_AdRecord):
    """Stored ad metrics of an account for a day."""

    date: Optional[datetime] = None


@dataclass
class MonthlyAdInsightEntry(_AdRecord):
    """Stored ad metrics of an account for a month; period is mm-yyyy."""

    period: str = ""


@dataclass
class SalesInsightEntry(_SalesRecord):
    """Stored sales metrics of an account for a day."""

    date: Optional[datetime] = None


@dataclass
class MonthlySalesInsightEntry(_SalesRecord):
    """Stored sales metrics of an account for a month; period is mm-yyyy."""

    period: str = ""


@dataclass
class AccountInsightEntry(AdInsightEntry):
    """Stored combination of ad, sales and result metrics for a day."""

    sales_metrics: Optional[SalesByOrigin] = None
    result_metrics: Optional[ResultMetrics] = None


@dataclass
class ReachImpressionsResponse:
    account_id: str = ""
    account_name: str = ""
    reach: int = 0
    impressions: int = 0
    start_date: str = ""
    end_date: str = ""


@dataclass
class MonthlyInsightReport:
    """Combined monthly report of an account; period is mm-yyyy."""

    account_id: str = ""
    period: str = ""
    account_name: str = ""
    external_id: str = ""
    ad_metrics: Optional[AdAccountMetrics] = None
    sales_metrics: Optional[SalesByOrigin] = None
    result_metrics: Optional[ResultMetrics] = None


@dataclass
class AvailablePeriods:
    """Monthly periods (mm-yyyy) found in the insight tables."""

    periods: list[str] = field(default_factory=list)
    years: list[str] = field(default_factory=list)
    months: list[str] = field(default_factory=list)


@dataclass
class StoreRankingItem(_Record):
    """A store's place in the monthly social-network revenue ranking.

    A positive position_change means the store moved up.
    """

    account_id: str = ""
    month: str = ""
    store_name: str = ""
    social_network_revenue: float = 0.0
    position: int = 0
    position_change: int = 0
    previous_position: int = 0


@dataclass
class StoreRankingResponse:
    ranking: list[StoreRankingItem] = field(default_factory=list)
    last_update: Optional[datetime] = None


def round_two_decimals(value: float) -> float:
    """Round to two decimal places, halves away from zero."""
    scaled = math.floor(abs(value) * 100 + 0.5) / 100
    return math.copysign(scaled, value) if scaled else 0.0


def calculate_result_metrics(
    ad_metrics: Optional[AdAccountMetrics],
    sales_metrics: Optional[SalesByOrigin],
) -> Optional[ResultMetrics]:
    """Conversion and ROI from ad results and social-network sales.

    Returns None when either side, or the social-network sales, is missing.
    """
    if ad_metrics is None or sales_metrics is None:
        return None
    social = sales_metrics.get(SOCIAL_NETWORK)
    if social is None:
        return None

    conversion = social.sales_quantity / ad_metrics.result * 100 if ad_metrics.result > 0 else 0.0
    roi = social.total_revenue / ad_metrics.spend if ad_metrics.spend > 0 else 0.0
    return ResultMetrics(conversion=round_two_decimals(conversion), roi=f"{int(roi)}x")


def combine_insights(
    ad_insight: Optional[AdInsightEntry],
    sales_insight: Optional[SalesInsightEntry],
    filters: Optional[InsightFilters],
) -> Optional[AdAccountInsightsResponse]:
    """Merge ad and sales insights into one response, or None if both are missing."""
    if ad_insight is None and sales_insight is None:
        return None

    ad_metrics = ad_insight.ad_metrics if ad_insight is not None else None
    sales_metrics = sales_insight.sales_metrics if sales_insight is not None else None
    response = AdAccountInsightsResponse(
        ad_account_metrics=ad_metrics,
        sales_metrics=sales_metrics,
        filters=filters,
    )
    if ad_metrics is not None and sales_metrics is not None:
        response.result_metrics = calculate_result_metrics(ad_metrics, sales_metrics)
    return response