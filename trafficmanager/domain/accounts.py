"""Ad accounts, business managers and campaign-level metrics."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date
from typing import Optional


class AdAccountStatus(str, enum.Enum):
    """Whether an ad account takes part in synchronisation."""

    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


@dataclass
class _Named:
    id: str = ""
    name: str = ""


@dataclass
class BusinessManager(_Named):
    """A business manager that owns ad accounts on an ad platform."""

    external_id: str = ""
    origin: str = ""


@dataclass
class Campaign(_Named):
    pass


@dataclass
class AdAccount(_Named):
    """An ad account, optionally linked to a store's sales system."""

    external_id: str = ""
    business_manager_id: str = ""
    business_manager_name: str = ""
    origin: str = ""
    cnpj: Optional[str] = None
    nickname: Optional[str] = None
    secret_name: Optional[str] = None
    status: AdAccountStatus = AdAccountStatus.ACTIVE

    def has_sales_credentials(self) -> bool:
        """True when both a CNPJ and a secret name are set and non-empty."""
        return bool(self.cnpj) and bool(self.secret_name)


@dataclass
class AdAccountResponse(_Named):
    """Ad account as exposed to API clients."""

    external_id: str = ""
    cnpj: Optional[str] = None
    nickname: Optional[str] = None
    has_token: bool = False
    status: AdAccountStatus = AdAccountStatus.ACTIVE


@dataclass
class CampaignInsight:
    """Metrics of a single campaign as reported by the ad platform."""

    campaign_id: str = ""
    campaign_name: str = ""
    clicks: str = ""
    cost_per_result: float = 0.0
    frequency: str = ""
    impressions: str = ""
    objective: str = ""
    reach: str = ""
    result: int = 0
    spend: float = 0.0


@dataclass
class AdAccountInsight:
    """Aggregated metrics of an ad account over a period."""

    account_id: str = ""
    name: str = ""
    campaigns: list[CampaignInsight] = field(default_factory=list)
    cost_per_result: float = 0.0
    frequency: float = 0.0
    impressions: int = 0
    objective: str = ""
    reach: int = 0
    result: int = 0
    spend: float = 0.0


@dataclass
class AdAccountMetrics(AdAccountInsight):
    """Account insight extended with per-date breakdowns."""

    cost_per_result_by_date: dict[str, float] = field(default_factory=dict)
    result_by_date: dict[str, int] = field(default_factory=dict)

    def is_empty(self) -> bool:
        """True when impressions, reach, result and spend are all zero."""
        return not any((self.impressions, self.reach, self.result, self.spend))


def is_same_date(date1: date, date2: date) -> bool:
    """True when both moments fall on the same calendar day."""
    return (date1.year, date1.month, date1.day) == (date2.year, date2.month, date2.day)


@dataclass
class UpdateAdAccountResponse:
    id: str = ""
    nickname: Optional[str] = None
    cnpj: Optional[str] = None
    secret_name: Optional[str] = None
    status: Optional[str] = None


@dataclass
class UpdateAdAccountRequest(UpdateAdAccountResponse):
    token: Optional[str] = field(default=None, kw_only=True)


@dataclass
class SyncAccountsResponse:
    quantity: int = 0
    message: str = ""
    error: bool = False