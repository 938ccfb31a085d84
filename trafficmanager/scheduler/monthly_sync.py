"""Scheduled synchronisation of monthly ad and sales insights for active accounts."""

from __future__ import annotations

import calendar
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol, Sequence

from trafficmanager.domain.accounts import AdAccount, AdAccountMetrics, AdAccountStatus
from trafficmanager.domain.insights import (
    InsightFilters,
    MonthlyAdInsightEntry,
    MonthlySalesInsightEntry,
    SalesMetrics,
)
from trafficmanager.scheduler.cron import CronScheduler, SyncGuard

logger = logging.getLogger(__name__)


class _AccountRepository(Protocol):
    def list_accounts(self, statuses: Sequence[AdAccountStatus]) -> Optional[list[AdAccount]]: ...


class _MonthlyAdInsightRepository(Protocol):
    def save_or_update(self, entry: MonthlyAdInsightEntry) -> None: ...


class _MonthlySalesInsightRepository(Protocol):
    def save_or_update(self, entry: MonthlySalesInsightEntry) -> None: ...


class _MetaInsighter(Protocol):
    def get_ad_account_metrics(
        self, external_id: str, filters: InsightFilters
    ) -> Optional[AdAccountMetrics]: ...


class _SSOticaInsighter(Protocol):
    def get_sales_metrics(
        self, cnpj: str, secret_name: str, filters: InsightFilters
    ) -> Optional[dict[str, SalesMetrics]]: ...


def _shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    extra_years, month_index = divmod(month - 1 + delta, 12)
    return year + extra_years, month_index + 1


def month_bounds(moment: datetime, months_back: int) -> tuple[datetime, datetime]:
    """First and last day of the month lying the given number of months before the moment.

    The month is found by subtracting months while keeping the day of month;
    a day that does not exist in the target month rolls over into the next one,
    so the 31st of March minus one month lands in March.
    """
    year, month = _shift_month(moment.year, moment.month, -months_back)
    if moment.day > calendar.monthrange(year, month)[1]:
        year, month = _shift_month(year, month, 1)
    first = datetime(year, month, 1, tzinfo=moment.tzinfo)
    next_year, next_month = _shift_month(year, month, 1)
    last = datetime(next_year, next_month, 1, tzinfo=moment.tzinfo) - timedelta(days=1)
    return first, last


def format_period(moment: datetime) -> str:
    """The mm-yyyy period of the moment."""
    return f"{moment.month:02d}-{moment.year:04d}"


@dataclass
class MonthlyInsightsSyncConfig:
    cron_schedule: str = "0 4 1 * *"
    request_delay_seconds: int = 1
    max_concurrent_jobs: int = 5
    sync_enabled: bool = False
    month_look_back: int = 1


class MonthlyInsightsSyncService:
    """Fetches monthly ad and sales metrics for every active account and stores them."""

    def __init__(
        self,
        account_repo: _AccountRepository,
        monthly_ad_insight_repo: _MonthlyAdInsightRepository,
        monthly_sales_insight_repo: _MonthlySalesInsightRepository,
        meta_service: _MetaInsighter,
        ssotica_service: _SSOticaInsighter,
        config: Optional[MonthlyInsightsSyncConfig] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.config = config or MonthlyInsightsSyncConfig()
        self._accounts = account_repo
        self._ad_insights = monthly_ad_insight_repo
        self._sales_insights = monthly_sales_insight_repo
        self._meta = meta_service
        self._ssotica = ssotica_service
        self._sleep = sleep
        self._clock = clock
        self._guard = SyncGuard()
        self._scheduler: Optional[CronScheduler] = None
        self.last_sync_started_at: Optional[datetime] = None
        self.last_sync_completed_at: Optional[datetime] = None
        logger.info("Monthly insight sync configuration loaded: %s", self.config)

    def start(self) -> bool:
        """Schedule the sync; False when disabled by configuration."""
        if not self.config.sync_enabled:
            logger.info("Monthly insight sync disabled by configuration")
            return False
        try:
            scheduler = CronScheduler(self.config.cron_schedule, self.sync_monthly, clock=self._clock)
        except ValueError as exc:
            raise ValueError(f"cannot schedule monthly insight sync: {exc}") from exc
        logger.info("Starting monthly insight sync scheduler with cron %r", self.config.cron_schedule)
        self._scheduler = scheduler
        scheduler.start()
        return True

    def stop(self) -> None:
        if self._scheduler is not None:
            logger.info("Stopping monthly insight sync scheduler")
            self._scheduler.stop()
            self._scheduler = None

    def sync_monthly(self, today: Optional[datetime] = None) -> None:
        """Sync the metrics of each of the last month_look_back months before today."""
        if not self._guard.try_acquire():
            logger.info("Monthly insight sync already running, skipping")
            return
        try:
            self._run_sync(today)
        finally:
            self._guard.release()

    def _run_sync(self, today: Optional[datetime]) -> None:
        started = self._clock()
        self.last_sync_started_at = started
        logger.info("Starting monthly insight sync for all active accounts")

        try:
            accounts = self.get_active_accounts()
        except Exception:
            logger.exception("Could not list accounts for monthly insight sync")
            return
        if not accounts:
            logger.info("No active account found for monthly insight sync")
            return

        reference = started if today is None else today
        for months_back in range(1, self.config.month_look_back + 1):
            first, last = month_bounds(reference, months_back)
            logger.info(
                "Monthly insight sync period: %s to %s",
                first.date().isoformat(),
                last.date().isoformat(),
            )
            self._process_accounts(accounts, first, last)

        logger.info(
            "Monthly insight sync finished in %s for %d accounts",
            self._clock() - started,
            len(accounts),
        )
        self.last_sync_completed_at = self._clock()

    def get_active_accounts(self) -> list[AdAccount]:
        accounts = self._accounts.list_accounts([AdAccountStatus.ACTIVE])
        if not accounts:
            logger.info("No account found for monthly insight sync")
            return []
        logger.info("Found %d accounts for monthly insight sync", len(accounts))
        return list(accounts)

    def _process_accounts(self, accounts: list[AdAccount], first: datetime, last: datetime) -> None:
        workers = max(1, self.config.max_concurrent_jobs)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            list(pool.map(lambda account: self._process_account(account, first, last), accounts))

    def _process_account(self, account: AdAccount, first: datetime, last: datetime) -> None:
        logger.info(
            "Processing monthly insights for account %s (%s) from %s to %s",
            account.id,
            account.external_id,
            first.date().isoformat(),
            last.date().isoformat(),
        )
        filters = InsightFilters(start_date=first, end_date=last)

        try:
            self.process_monthly_ad_metrics(account, filters)
        except Exception as exc:
            logger.error("Could not process monthly ad metrics for account %s: %s", account.id, exc)

        if account.has_sales_credentials():
            try:
                self.process_monthly_sales_metrics(account, filters)
            except Exception as exc:
                logger.error(
                    "Could not process monthly sales metrics for account %s: %s", account.id, exc
                )

        self._sleep(self.config.request_delay_seconds)

    def process_monthly_ad_metrics(self, account: AdAccount, filters: InsightFilters) -> MonthlyAdInsightEntry:
        """Fetch and store the account's ad metrics for the month of filters.start_date."""
        if not account.external_id:
            raise ValueError("account has no external id")
        try:
            metrics = self._meta.get_ad_account_metrics(account.external_id, filters)
        except Exception as exc:
            raise RuntimeError(f"could not fetch ad metrics: {exc}") from exc
        if metrics is None:
            raise LookupError("no ad metrics found")

        period = format_period(filters.start_date)
        entry = MonthlyAdInsightEntry(
            account_id=account.id,
            external_id=account.external_id,
            period=period,
            ad_metrics=metrics,
        )
        try:
            self._ad_insights.save_or_update(entry)
        except Exception as exc:
            raise RuntimeError(f"could not save monthly ad metrics: {exc}") from exc

        logger.info("Saved monthly ad metrics for account %s, period %s", account.id, period)
        return entry

    def process_monthly_sales_metrics(
        self, account: AdAccount, filters: InsightFilters
    ) -> MonthlySalesInsightEntry:
        """Fetch and store the account's sales metrics for the month of filters.start_date."""
        if not account.has_sales_credentials():
            raise ValueError("account has no CNPJ or secret name")
        try:
            metrics = self._ssotica.get_sales_metrics(account.cnpj, account.secret_name, filters)
        except Exception as exc:
            raise RuntimeError(f"could not fetch sales metrics: {exc}") from exc
        if metrics is None:
            raise LookupError("no sales metrics found")

        period = format_period(filters.start_date)
        entry = MonthlySalesInsightEntry(
            account_id=account.id,
            period=period,
            sales_metrics=metrics,
        )
        try:
            self._sales_insights.save_or_update(entry)
        except Exception as exc:
            raise RuntimeError(f"could not save monthly sales metrics: {exc}") from exc

        logger.info("Saved monthly sales metrics for account %s, period %s", account.id, period)
        return entry

    def trigger_manual_sync(self) -> Optional[threading.Thread]:
        """Start a sync in the background; None if one is already running."""
        if self._guard.running():
            logger.info("Monthly insight sync already running, ignoring manual request")
            return None
        logger.info("Starting manual monthly insight sync")
        thread = threading.Thread(target=self.sync_monthly, name="monthly-insight-sync", daemon=True)
        thread.start()
        return thread

    def get_status(self) -> dict[str, Any]:
        return {
            "sync_running": self._guard.running(),
            "sync_cron": self.config.cron_schedule,
            "sync_enabled": self.config.sync_enabled,
            "last_sync_started_at": self.last_sync_started_at,
            "last_sync_completed_at": self.last_sync_completed_at,
        }