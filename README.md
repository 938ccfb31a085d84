# trafficmanager

This package holds the domain models and background synchronisation services
for an advertising traffic-management backend. The services keep daily and
monthly ad-account metrics, store sales metrics and a monthly store ranking up
to date. Each one runs a job on a cron schedule in a background thread.

It needs nothing outside the standard library.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Contents

### `trafficmanager.domain.accounts`

- `AdAccount`, which carries an `AdAccountStatus` (`ACTIVE` or `INACTIVE`).
  `has_sales_credentials()` is true when both `cnpj` and `secret_name` are
  set and not empty.
- `AdAccountInsight` and `AdAccountMetrics`. `AdAccountMetrics` adds the
  per-date breakdowns `cost_per_result_by_date` and `result_by_date`.
  `is_empty()` is true when impressions, reach, result and spend are all zero.
- `Campaign`, `CampaignInsight` and `BusinessManager`.
- The request and response shapes `AdAccountResponse`,
  `UpdateAdAccountRequest`, `UpdateAdAccountResponse` and
  `SyncAccountsResponse`.
- `is_same_date(date1, date2)`.

### `trafficmanager.domain.insights`

- `Sale` and `SalesMetrics`. Sales metrics are kept in a dict keyed by origin.
  The constants `SOCIAL_NETWORK` and `STORE` name the two origins.
- `InsightFilters`, which has `start_date` and `end_date`.
- Stored entries:
  - daily: `AdInsightEntry` and `SalesInsightEntry`;
  - monthly: `MonthlyAdInsightEntry` and `MonthlySalesInsightEntry`, whose
    `period` is in `mm-yyyy` form;
  - combined: `AccountInsightEntry`.
- Report shapes: `MonthlyInsightReport`, `ReachImpressionsResponse`,
  `AvailablePeriods` and `AdAccountInsightsResponse`.
- `StoreRankingItem` and `StoreRankingResponse`.
- `calculate_result_metrics(ad_metrics, sales_metrics)` returns a
  `ResultMetrics`:
  - `conversion` is social-network sales quantity divided by ad results, as a
    percentage rounded to two decimals;
  - `roi` is social-network revenue divided by spend, truncated and written
    like `"3x"`.
  - The result is `None` when either side or the social-network sales are
    missing.
- `combine_insights(ad_insight, sales_insight, filters)` merges an ad entry
  and a sales entry into one `AdAccountInsightsResponse`.
- `round_two_decimals(value)` rounds halves away from zero.

### `trafficmanager.domain.users`

- `User` and `UpdateUserRequest`. In an update request, a field left as
  `None` is not changed.
- `Claims` holds the token claims for a user. `Claims.from_user(user)` builds
  them from a `User`.

### `trafficmanager.scheduler.cron`

- `CronExpression.parse(text)` reads a five-field cron expression
  (`minute hour day-of-month month day-of-week`). It accepts:
  - ranges, steps and lists;
  - month and weekday names;
  - descriptors such as `@daily` and `@hourly`.

  Invalid input raises `ValueError`. `matches(moment)` tells whether the
  expression fires in that minute. `next_after(moment)` returns the next
  minute at which it fires.
- `CronScheduler(expression, job, clock=...)` runs `job` in a background
  thread each time the expression fires. Use `start()` and `stop()` to control
  it. Exceptions raised by the job are logged.
- `SyncGuard` stops two runs of the same job from overlapping. It has
  `try_acquire()`, `release()` and `running()`.
- `lookback_dates(days, today)` returns the given number of days before
  `today`, starting with yesterday.

### The services

There are four services, each in its own module:

- `meta_sync.MetaInsightSyncService` stores daily ad metrics for every active
  account that has an external id. It covers `lookback_days` days, oldest
  first.
- `ssotica_sync.SSOticaInsightSyncService` stores daily sales metrics for
  active accounts with sales credentials.
- `monthly_sync.MonthlyInsightsSyncService` stores ad metrics for each of the
  last `month_look_back` months. When the account has sales credentials it
  also stores sales metrics. The module also provides these helpers:
  - `month_bounds(moment, months_back)`;
  - `format_period(moment)`, which returns `mm-yyyy`.
- `ranking_sync.TopRankingAccountsService` ranks stores by social-network
  revenue. The revenue counts from the first day of yesterday's month up to
  yesterday.
  - `process_with_date(accounts, processing_date)` sets each store's
    `position`, `previous_position` and `position_change`. A positive change
    means the store moved up. It then saves the ranking.
  - Accounts whose sales could not be fetched are left out of the ranking.
  - The module also provides `equal_date`, `first_day_of_month` and
    `is_second_day_of_month`.

Each service is configured with a dataclass: `MetaInsightSyncConfig`,
`SSOticaInsightSyncConfig`, `MonthlyInsightsSyncConfig` or
`TopRankingAccountsConfig`. Scheduling is off unless `sync_enabled` is true.

Every service has these methods:

- `start()` returns `False` when scheduling is disabled.
- `stop()` stops the scheduler.
- `trigger_manual_sync()` returns the background thread, or `None` if a run is
  already going on.
- `get_status()` returns a dict with the configuration and the times of the
  last run.

You pass in repositories and data sources as plain objects. Any object with
the methods a service calls will do:

- `list_accounts`
- `save_or_update`
- `get_ad_account_metrics`
- `get_sales_metrics`
- `get_by_account_id`
- `save_or_update_store_ranking`
- `get_sales_by_account`

The insight services also take `sleep` and `clock` callables, and the ranking
service takes `clock`, so tests can replace them.

## Example

```python
from dataclasses import dataclass
from datetime import datetime

from trafficmanager.domain.accounts import AdAccount
from trafficmanager.scheduler.ranking_sync import TopRankingAccountsService


@dataclass
class Order:
    net_amount: float
    customer_origins: list


class Accounts:
    def list_accounts(self, statuses):
        return []


class Rankings:
    def get_by_account_id(self, account_id, month):
        return None

    def save_or_update_store_ranking(self, items):
        pass


class Sales:
    def get_sales_by_account(self, params, filters):
        return [Order(1500.0, ["SocialNetwork"])]


service = TopRankingAccountsService(Accounts(), Rankings(), Sales())
ranking = service.process_with_date(
    [AdAccount(id="ACC001", name="Loja A", cnpj="00000000000", secret_name="secret")],
    datetime(2024, 1, 16),
)
for item in ranking:
    print(item.month, item.position, item.store_name, item.social_network_revenue)
# 01-2024 1 Loja A 1500.0
```

## What this package does not do

- It has no database layer. Storage of accounts, insights and rankings is up
  to the repository objects you pass in.
- It has no clients for the ad platform or the sales system. Fetching metrics
  and orders is up to the data-source objects you pass in.
- It has no HTTP API, no command-line program and no configuration loading.
  Services are built and started from your own code.