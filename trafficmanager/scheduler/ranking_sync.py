"""Scheduled update of the monthly store ranking by social-network revenue."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional, Protocol, Sequence

from trafficmanager.domain.accounts import AdAccount, AdAccountStatus
from trafficmanager.domain.insights import (
    SOCIAL_NETWORK,
    InsightFilters,
    SalesInsightEntry,
    StoreRankingItem,
)
from trafficmanager.scheduler.cron import CronScheduler, SyncGuard
from trafficmanager.scheduler.monthly_sync import format_period

logger = logging.getLogger(__name__)


class _Order(Protocol):
    net_amount: float
    customer_origins: Sequence[str]


class _AccountRepository(Protocol):
    def list_accounts(self, statuses: Sequence[AdAccountStatus]) -> Optional[list[AdAccount]]: ...


class _StoreRankingRepository(Protocol):
    def get_by_account_id(self, account_id: str, month: str) -> Optional[StoreRankingItem]: ...

    def save_or_update_store_ranking(self, items: list[StoreRankingItem]) -> None: ...


class _SalesIntegrator(Protocol):
    def get_sales_by_account(
        self, params: "SalesParams", filters: InsightFilters
    ) -> Optional[Sequence[_Order]]: ...


@dataclass(frozen=True)
class SalesParams:
    """Credentials identifying a store in the sales system."""

    cnpj: str
    secret_name: str


@dataclass
class TopRankingAccountsConfig:
    cron_schedule: str = "0 6 * * *"
    sync_enabled: bool = False


def _social_network_revenue(orders: Iterable[_Order]) -> float:
    return sum(
        order.net_amount for order in orders if SOCIAL_NETWORK in order.customer_origins
    )


class TopRankingAccountsService:
    """Ranks active stores by social-network revenue of the current month."""

    def __init__(
        self,
        account_repo: _AccountRepository,
        ranking_repo: _StoreRankingRepository,
        sales_service: _SalesIntegrator,
        config: Optional[TopRankingAccountsConfig] = None,
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.config = config or TopRankingAccountsConfig()
        self._accounts = account_repo
        self._rankings = ranking_repo
        self._sales = sales_service
        self._clock = clock
        self._guard = SyncGuard()
        self._scheduler: Optional[CronScheduler] = None
        self.last_sync_started_at: Optional[datetime] = None
        self.last_sync_completed_at: Optional[datetime] = None
        logger.info("Store ranking configuration loaded: %s", self.config)

    def start(self) -> bool:
        """Schedule the ranking update; False when disabled by configuration."""
        if not self.config.sync_enabled:
            logger.info("Store ranking update disabled by configuration")
            return False
        try:
            scheduler = CronScheduler(self.config.cron_schedule, self._scheduled_run, clock=self._clock)
        except ValueError as exc:
            raise ValueError(f"cannot schedule store ranking update: {exc}") from exc
        logger.info("Starting store ranking scheduler with cron %r", self.config.cron_schedule)
        self._scheduler = scheduler
        scheduler.start()
        return True

    def stop(self) -> None:
        if self._scheduler is not None:
            logger.info("Stopping store ranking scheduler")
            self._scheduler.stop()
            self._scheduler = None

    def _scheduled_run(self) -> None:
        try:
            self.update_top_ranking_accounts()
        except Exception:
            logger.exception("Store ranking update failed")

    def update_top_ranking_accounts(self) -> Optional[list[StoreRankingItem]]:
        """Rebuild the ranking as of now; None if an update is already running."""
        if not self._guard.try_acquire():
            logger.warning("Store ranking update already running")
            return None
        self.last_sync_started_at = self._clock()
        try:
            logger.info("Starting store ranking update")
            accounts = self.get_active_accounts()
            rankings = self.process_with_date(accounts, self._clock())
            logger.info("Store ranking update finished")
            return rankings
        finally:
            self.last_sync_completed_at = self._clock()
            self._guard.release()

    def get_active_accounts(self) -> list[AdAccount]:
        """Active accounts connected to the sales system."""
        accounts = self._accounts.list_accounts([AdAccountStatus.ACTIVE])
        if not accounts:
            logger.info("No account found for store ranking update")
            return []
        eligible = [account for account in accounts if account.has_sales_credentials()]
        logger.info("Found %d accounts for store ranking update", len(eligible))
        return eligible

    def process_with_date(
        self, accounts: Sequence[AdAccount], processing_date: datetime
    ) -> list[StoreRankingItem]:
        """Rank the accounts by revenue from the first of yesterday's month until yesterday."""
        yesterday = processing_date - timedelta(days=1)
        start = first_day_of_month(yesterday)
        month = format_period(yesterday)

        with ThreadPoolExecutor(max_workers=max(1, len(accounts))) as pool:
            previous_jobs = [pool.submit(self._previous_ranking, account, month) for account in accounts]
            current_jobs = [
                pool.submit(self._current_ranking, account, start, yesterday, month)
                for account in accounts
            ]
            previous = [job.result() for job in previous_jobs]
            current = [job.result() for job in current_jobs]

        before = {item.account_id: item for item in previous if item is not None and item.account_id}
        updated = [item for item in current if item is not None]
        self.update_positions(updated, before)

        try:
            self._rankings.save_or_update_store_ranking(updated)
        except Exception:
            logger.exception("Could not save updated store ranking")
            return updated

        logger.info("Store ranking updated")
        return updated

    def _previous_ranking(self, account: AdAccount, month: str) -> Optional[StoreRankingItem]:
        try:
            return self._rankings.get_by_account_id(account.id, month)
        except Exception:
            logger.exception("Could not fetch previous ranking of account %s", account.id)
            return None

    def _current_ranking(
        self, account: AdAccount, start: datetime, end: datetime, month: str
    ) -> Optional[StoreRankingItem]:
        params = SalesParams(cnpj=account.cnpj or "", secret_name=account.secret_name or "")
        filters = InsightFilters(start_date=start, end_date=end)
        logger.info(
            "Fetching sales of account %s for %s from %s to %s",
            account.id,
            month,
            start.date().isoformat(),
            end.date().isoformat(),
        )
        try:
            orders = self._sales.get_sales_by_account(params, filters)
        except Exception:
            logger.exception("Could not fetch sales of account %s", account.id)
            return None
        return StoreRankingItem(
            account_id=account.id,
            month=month,
            store_name=account.name,
            social_network_revenue=_social_network_revenue(orders or []),
        )

    def update_positions(
        self,
        updated_rankings: list[StoreRankingItem],
        rankings_before_update: dict[str, StoreRankingItem],
    ) -> None:
        """Sort by revenue, highest first, and set positions and their changes in place."""
        updated_rankings.sort(key=lambda item: item.social_network_revenue, reverse=True)
        for position, ranking in enumerate(updated_rankings, start=1):
            ranking.position = position
            before = rankings_before_update.get(ranking.account_id)
            if before is not None:
                ranking.position_change = before.position - position
                ranking.previous_position = before.position

    def sum_social_network_revenue(
        self, sales_insights: Iterable[SalesInsightEntry], ranking_item: StoreRankingItem
    ) -> StoreRankingItem:
        """Add the social-network revenue of the insights to the ranking item."""
        for insight in sales_insights:
            if insight.sales_metrics is None:
                continue
            social = insight.sales_metrics.get(SOCIAL_NETWORK)
            if social is not None:
                ranking_item.social_network_revenue += social.total_revenue
        return ranking_item

    def trigger_manual_sync(self) -> Optional[threading.Thread]:
        """Start an update in the background; None if one is already running."""
        if self._guard.running():
            logger.info("Store ranking update already running, ignoring manual request")
            return None
        logger.info("Starting manual store ranking update")
        thread = threading.Thread(target=self._scheduled_run, name="store-ranking-sync", daemon=True)
        thread.start()
        return thread

    def get_status(self) -> dict[str, Any]:
        return {
            "sync_enabled": self.config.sync_enabled,
            "sync_cron": self.config.cron_schedule,
            "last_sync_started_at": self.last_sync_started_at,
            "last_sync_completed_at": self.last_sync_completed_at,
        }


def equal_date(date1: datetime, date2: datetime) -> bool:
    """True when both moments fall on the same calendar day."""
    return (date1.year, date1.month, date1.day) == (date2.year, date2.month, date2.day)


def first_day_of_month(moment: datetime) -> datetime:
    """Midnight of the first day of the moment's month, in the same time zone."""
    return datetime(moment.year, moment.month, 1, tzinfo=moment.tzinfo)


def is_second_day_of_month(moment: datetime) -> bool:
    return moment.day == 2