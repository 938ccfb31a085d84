"""Scheduled synchronisation of daily ad-platform insights for active accounts."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Protocol, Sequence

from trafficmanager.domain.accounts import AdAccount, AdAccountMetrics, AdAccountStatus
from trafficmanager.domain.insights import AdInsightEntry, InsightFilters
from trafficmanager.scheduler.cron import CronScheduler, SyncGuard, lookback_dates

logger = logging.getLogger(__name__)

RETENTION_POLICY = "dados mantidos permanentemente"

# Status key -> configuration attribute.
_STATUS_FIELDS = {
    "sync_enabled": "sync_enabled",
    "sync_cron": "cron_schedule",
    "sync_lookback_days": "lookback_days",
    "sync_max_concurrent": "max_concurrent_jobs",
    "sync_request_delay_s": "request_delay_seconds",
}

_FAILED = object()


class _AccountSource(Protocol):
    def list_accounts(self, statuses: Sequence[AdAccountStatus]) -> Optional[list[AdAccount]]: ...


class _AdInsightStore(Protocol):
    def save_or_update(self, entry: AdInsightEntry) -> None: ...


class _MetaInsighter(Protocol):
    def get_ad_account_metrics(
        self, external_id: str, filters: InsightFilters
    ) -> Optional[AdAccountMetrics]: ...


@dataclass
class MetaInsightSyncConfig:
    cron_schedule: str = "0 3 * * *"
    lookback_days: int = 7
    request_delay_seconds: int = 1
    max_concurrent_jobs: int = 5
    sync_enabled: bool = False


class MetaInsightSyncService:
    """Fetches daily ad metrics for every active account and stores them."""

    def __init__(
        self,
        account_repo: _AccountSource,
        ad_insight_repo: _AdInsightStore,
        meta_service: _MetaInsighter,
        config: Optional[MetaInsightSyncConfig] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.config = config or MetaInsightSyncConfig()
        self._accounts = account_repo
        self._insights = ad_insight_repo
        self._meta = meta_service
        self._sleep = sleep
        self._clock = clock
        self._guard = SyncGuard()
        self._scheduler: Optional[CronScheduler] = None
        self.last_sync_started_at: Optional[datetime] = None
        self.last_sync_completed_at: Optional[datetime] = None
        logger.info("Meta insight sync configuration loaded: %s", self.config)

    def start(self) -> bool:
        """Schedule the sync; False when disabled by configuration."""
        if not self.config.sync_enabled:
            logger.info("Meta insight sync disabled by configuration")
            return False
        try:
            scheduler = CronScheduler(self.config.cron_schedule, self.sync_all, clock=self._clock)
        except ValueError as exc:
            raise ValueError(f"cannot schedule Meta insight sync: {exc}") from exc
        logger.info("Starting Meta insight sync scheduler with cron %r", self.config.cron_schedule)
        self._scheduler = scheduler
        scheduler.start()
        return True

    def stop(self) -> None:
        if self._scheduler is not None:
            logger.info("Stopping Meta insight sync scheduler")
            self._scheduler.stop()
            self._scheduler = None

    def sync_all(self, today: Optional[datetime] = None) -> None:
        """Sync insights of all active accounts over the lookback days before today."""
        if not self._guard.try_acquire():
            logger.info("Meta insight sync already running, skipping")
            return
        try:
            self._run_sync(today)
        finally:
            self._guard.release()

    def _run_sync(self, today: Optional[datetime]) -> None:
        started = self._clock()
        self.last_sync_started_at = started

        try:
            accounts = self.get_active_accounts()
        except Exception:
            logger.exception("Could not list accounts for Meta insight sync")
            return
        if not accounts:
            logger.info("No active account found for Meta insight sync")
            return

        dates = lookback_dates(self.config.lookback_days, started if today is None else today)
        if dates:
            logger.info("Meta insight sync period: %s to %s", dates[-1].date(), dates[0].date())

        eligible = [account for account in accounts if self._has_external_id(account)]
        with ThreadPoolExecutor(max_workers=max(1, self.config.max_concurrent_jobs)) as pool:
            list(pool.map(lambda account: self.process_account(account, dates), eligible))

        logger.info("Meta insight sync of %d accounts took %s", len(accounts), self._clock() - started)
        self.last_sync_completed_at = self._clock()

    @staticmethod
    def _has_external_id(account: AdAccount) -> bool:
        if not account.external_id:
            logger.warning("Account %s has no external id, skipping", account.id)
        return bool(account.external_id)

    def get_active_accounts(self) -> list[AdAccount]:
        accounts = list(self._accounts.list_accounts([AdAccountStatus.ACTIVE]) or [])
        logger.info("Found %d accounts for Meta insight sync", len(accounts))
        return accounts

    def process_account(self, account: AdAccount, dates: Sequence[datetime]) -> None:
        """Fetch and store the account's insights for each date, oldest first."""
        for moment in sorted(dates):
            self._process_date(account, moment)
            self._sleep(self.config.request_delay_seconds)

    @staticmethod
    def _attempt(action: Callable[[], Any], description: str) -> Any:
        try:
            return action()
        except Exception as exc:
            logger.error("Could not %s: %s", description, exc)
            return _FAILED

    def _process_date(self, account: AdAccount, moment: datetime) -> None:
        label = f"account {account.id} on {moment.date()}"
        filters = InsightFilters(start_date=moment, end_date=moment)
        metrics = self._attempt(
            lambda: self._meta.get_ad_account_metrics(account.external_id, filters),
            f"fetch Meta insights for {label}",
        )
        if metrics is _FAILED:
            return
        if metrics is None:
            logger.warning("No Meta insights for %s", label)
            return

        entry = AdInsightEntry(
            account_id=account.id,
            external_id=account.external_id,
            date=moment,
            ad_metrics=metrics,
        )
        if self._attempt(lambda: self._insights.save_or_update(entry), f"save Meta insights for {label}") is _FAILED:
            return
        logger.info("Saved Meta insights for %s", label)
        self._sleep(self.config.request_delay_seconds)

    def trigger_manual_sync(self) -> Optional[threading.Thread]:
        """Start a sync in the background; None if one is already running."""
        if self._guard.running():
            logger.info("Meta insight sync already running, ignoring manual request")
            return None
        thread = threading.Thread(target=self.sync_all, name="meta-insight-sync", daemon=True)
        thread.start()
        return thread

    def get_status(self) -> dict[str, Any]:
        status = {key: getattr(self.config, attr) for key, attr in _STATUS_FIELDS.items()}
        return status | {
            "retention_policy": RETENTION_POLICY,
            "last_sync_started_at": self.last_sync_started_at,
            "last_sync_completed_at": self.last_sync_completed_at,
        }