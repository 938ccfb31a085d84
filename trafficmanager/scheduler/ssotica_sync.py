"""Scheduled synchronisation of daily store sales insights for active accounts."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Protocol, Sequence

from trafficmanager.domain.accounts import AdAccount, AdAccountStatus
from trafficmanager.domain.insights import InsightFilters, SalesInsightEntry, SalesMetrics
from trafficmanager.scheduler.cron import CronScheduler, SyncGuard, lookback_dates

logger = logging.getLogger(__name__)

RETENTION_POLICY = "dados mantidos permanentemente"


class _AccountRepository(Protocol):
    def list_accounts(self, statuses: Sequence[AdAccountStatus]) -> Optional[list[AdAccount]]: ...


class _SalesInsightRepository(Protocol):
    def save_or_update(self, entry: SalesInsightEntry) -> None: ...


class _SSOticaInsighter(Protocol):
    def get_sales_metrics(
        self, cnpj: str, secret_name: str, filters: InsightFilters
    ) -> Optional[dict[str, SalesMetrics]]: ...


@dataclass
class SSOticaInsightSyncConfig:
    cron_schedule: str = "0 2 * * *"
    lookback_days: int = 7
    request_delay_seconds: int = 1
    max_concurrent_jobs: int = 5
    sync_enabled: bool = False


class SSOticaInsightSyncService:
    """Fetches daily sales metrics for every active store account and stores them."""

    def __init__(
        self,
        account_repo: _AccountRepository,
        sales_insight_repo: _SalesInsightRepository,
        ssotica_service: _SSOticaInsighter,
        config: Optional[SSOticaInsightSyncConfig] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.config = config or SSOticaInsightSyncConfig()
        self._accounts = account_repo
        self._insights = sales_insight_repo
        self._ssotica = ssotica_service
        self._sleep = sleep
        self._clock = clock
        self._guard = SyncGuard()
        self._scheduler: Optional[CronScheduler] = None
        self.last_sync_started_at: Optional[datetime] = None
        self.last_sync_completed_at: Optional[datetime] = None
        logger.info("SSOtica insight sync configuration loaded: %s", self.config)

    def start(self) -> bool:
        """Schedule the sync; False when disabled by configuration."""
        if not self.config.sync_enabled:
            logger.info("SSOtica insight sync disabled by configuration")
            return False
        try:
            scheduler = CronScheduler(self.config.cron_schedule, self.sync_all, clock=self._clock)
        except ValueError as exc:
            raise ValueError(f"cannot schedule SSOtica insight sync: {exc}") from exc
        logger.info("Starting SSOtica insight sync scheduler with cron %r", self.config.cron_schedule)
        self._scheduler = scheduler
        scheduler.start()
        return True

    def stop(self) -> None:
        if self._scheduler is not None:
            logger.info("Stopping SSOtica insight sync scheduler")
            self._scheduler.stop()
            self._scheduler = None

    def sync_all(self, today: Optional[datetime] = None) -> None:
        """Sync sales insights of all active accounts over the lookback days before today."""
        if not self._guard.try_acquire():
            logger.info("SSOtica insight sync already running, skipping")
            return
        try:
            self._run_sync(today)
        finally:
            self._guard.release()

    def _run_sync(self, today: Optional[datetime]) -> None:
        started = self._clock()
        self.last_sync_started_at = started
        logger.info("Starting SSOtica insight sync for all active accounts")

        try:
            accounts = self.get_active_accounts()
        except Exception:
            logger.exception("Could not list accounts for SSOtica insight sync")
            return
        if not accounts:
            logger.info("No active account found for SSOtica insight sync")
            return

        dates = lookback_dates(self.config.lookback_days, started if today is None else today)
        if dates:
            logger.info(
                "SSOtica insight sync period: %s to %s (%d days)",
                dates[-1].date().isoformat(),
                dates[0].date().isoformat(),
                self.config.lookback_days,
            )

        self._process_accounts(accounts, dates)

        logger.info(
            "SSOtica insight sync finished in %s for %d accounts",
            self._clock() - started,
            len(accounts),
        )
        self.last_sync_completed_at = self._clock()

    def get_active_accounts(self) -> list[AdAccount]:
        """Active accounts that carry the CNPJ and secret name the sales system needs."""
        accounts = self._accounts.list_accounts([AdAccountStatus.ACTIVE])
        if not accounts:
            logger.info("No account found for SSOtica insight sync")
            return []
        eligible = [account for account in accounts if account.has_sales_credentials()]
        logger.info("Found %d accounts for SSOtica insight sync", len(eligible))
        return eligible

    def _process_accounts(self, accounts: list[AdAccount], dates: list[datetime]) -> None:
        eligible = []
        for account in accounts:
            if not account.has_sales_credentials():
                logger.warning("Account %s has no CNPJ or token, skipping", account.id)
                continue
            eligible.append(account)

        workers = max(1, self.config.max_concurrent_jobs)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            list(pool.map(lambda account: self.process_account(account, dates), eligible))

    def process_account(self, account: AdAccount, dates: Sequence[datetime]) -> None:
        """Fetch and store the account's sales insights for each date, oldest first."""
        logger.info(
            "Processing SSOtica insights for account %s (%s), %d dates",
            account.id,
            account.name,
            len(dates),
        )
        for moment in sorted(dates):
            self._process_date(account, moment)
            self._sleep(self.config.request_delay_seconds)

    def _process_date(self, account: AdAccount, moment: datetime) -> None:
        day = moment.date().isoformat()
        filters = InsightFilters(start_date=moment, end_date=moment)
        try:
            metrics = self._ssotica.get_sales_metrics(account.cnpj, account.secret_name, filters)
        except Exception as exc:
            logger.error("Could not fetch SSOtica insights for account %s on %s: %s", account.id, day, exc)
            return
        if not metrics:
            logger.warning("No SSOtica insights for account %s on %s", account.id, day)
            return

        entry = SalesInsightEntry(account_id=account.id, date=moment, sales_metrics=metrics)
        try:
            self._insights.save_or_update(entry)
        except Exception as exc:
            logger.error("Could not save SSOtica insights for account %s on %s: %s", account.id, day, exc)
            return

        logger.info("Saved SSOtica insights for account %s on %s", account.id, day)
        self._sleep(self.config.request_delay_seconds)

    def trigger_manual_sync(self) -> Optional[threading.Thread]:
        """Start a sync in the background; None if one is already running."""
        if self._guard.running():
            logger.info("SSOtica insight sync already running, ignoring manual request")
            return None
        logger.info("Starting manual SSOtica insight sync")
        thread = threading.Thread(target=self.sync_all, name="ssotica-insight-sync", daemon=True)
        thread.start()
        return thread

    def get_status(self) -> dict[str, Any]:
        return {
            "sync_enabled": self.config.sync_enabled,
            "sync_cron": self.config.cron_schedule,
            "sync_lookback_days": self.config.lookback_days,
            "sync_max_concurrent": self.config.max_concurrent_jobs,
            "sync_request_delay_s": self.config.request_delay_seconds,
            "retention_policy": RETENTION_POLICY,
            "last_sync_started_at": self.last_sync_started_at,
            "last_sync_completed_at": self.last_sync_completed_at,
        }