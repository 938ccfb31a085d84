from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import pytest

from trafficmanager.domain.accounts import AdAccount, AdAccountStatus
from trafficmanager.domain.insights import SalesInsightEntry, SalesMetrics, StoreRankingItem
from trafficmanager.scheduler.ranking_sync import (
    SalesParams,
    TopRankingAccountsConfig,
    TopRankingAccountsService,
    equal_date,
    first_day_of_month,
    is_second_day_of_month,
)

UTC = timezone.utc


@dataclass
class _Order:
    net_amount: float
    customer_origins: list = field(default_factory=lambda: ["SocialNetwork"])


class FakeAccountRepo:
    def __init__(self, accounts=None, error=None):
        self.accounts = accounts
        self.error = error
        self.calls = []

    def list_accounts(self, statuses):
        self.calls.append(list(statuses))
        if self.error:
            raise self.error
        return self.accounts


class FakeRankingRepo:
    def __init__(self, existing=None, lookup_errors=(), save_error=None):
        self.existing = existing or {}
        self.lookup_errors = set(lookup_errors)
        self.save_error = save_error
        self.lookups = []
        self.saved = []

    def get_by_account_id(self, account_id, month):
        self.lookups.append((account_id, month))
        if account_id in self.lookup_errors:
            raise RuntimeError("lookup failed")
        return self.existing.get((account_id, month))

    def save_or_update_store_ranking(self, items):
        self.saved.append(list(items))
        if self.save_error:
            raise self.save_error


class FakeSales:
    def __init__(self, by_cnpj):
        self.by_cnpj = by_cnpj
        self.calls = []

    def get_sales_by_account(self, params, filters):
        self.calls.append((params, filters))
        result = self.by_cnpj.get(params.cnpj, [])
        if isinstance(result, Exception):
            raise result
        return result


def account(account_id, name, cnpj):
    return AdAccount(id=account_id, name=name, cnpj=cnpj, secret_name="secret")


ACC1 = account("ACC001", "Loja A", "cnpj-a")
ACC2 = account("ACC002", "Loja B", "cnpj-b")
ACC3 = account("ACC003", "Loja C", "cnpj-c")


def previous(account_id, name, month, revenue, position):
    return StoreRankingItem(
        account_id=account_id,
        month=month,
        store_name=name,
        social_network_revenue=revenue,
        position=position,
    )


def make_service(ranking_repo, sales, accounts_repo=None, clock=None):
    kwargs = {} if clock is None else {"clock": clock}
    return TopRankingAccountsService(
        accounts_repo or FakeAccountRepo([]), ranking_repo, sales, **kwargs
    )


REFERENCE = datetime(2024, 1, 16, tzinfo=UTC)


def test_new_account_sums_month_revenue():
    ranking = FakeRankingRepo()
    sales = FakeSales({"cnpj-a": [_Order(1000.0), _Order(1500.0)]})
    result = make_service(ranking, sales).process_with_date([ACC1], REFERENCE)
    assert len(result) == 1
    item = result[0]
    assert (item.account_id, item.month, item.store_name) == ("ACC001", "01-2024", "Loja A")
    assert item.social_network_revenue == 2500.0
    assert item.position == 1
    assert item.position_change == 0
    assert item.previous_position == 0
    assert ranking.lookups == [("ACC001", "01-2024")]
    assert ranking.saved == [result]


def test_existing_ranking_revenue_replaced_by_month_total():
    ranking = FakeRankingRepo({("ACC002", "01-2024"): previous("ACC002", "Loja B", "01-2024", 5000.0, 2)})
    sales = FakeSales({"cnpj-b": [_Order(800.0)]})
    result = make_service(ranking, sales).process_with_date([ACC2], REFERENCE)
    assert len(result) == 1
    assert result[0].social_network_revenue == 800.0
    assert result[0].position == 1
    assert result[0].position_change == 1
    assert result[0].previous_position == 2


def test_existing_ranking_two_orders():
    ranking = FakeRankingRepo({("ACC003", "01-2024"): previous("ACC003", "Loja C", "01-2024", 3000.0, 3)})
    sales = FakeSales({"cnpj-c": [_Order(600.0), _Order(700.0)]})
    result = make_service(ranking, sales).process_with_date([ACC3], REFERENCE)
    assert result[0].store_name == "Loja C"
    assert result[0].month == "01-2024"
    assert result[0].social_network_revenue == 1300.0
    assert result[0].position == 1


def test_multiple_accounts_ordered_by_revenue():
    sales = FakeSales(
        {"cnpj-a": [_Order(2500.0)], "cnpj-b": [_Order(3000.0)], "cnpj-c": [_Order(1500.0)]}
    )
    result = make_service(FakeRankingRepo(), sales).process_with_date([ACC1, ACC2, ACC3], REFERENCE)
    assert [(r.account_id, r.social_network_revenue, r.position) for r in result] == [
        ("ACC002", 3000.0, 1),
        ("ACC001", 2500.0, 2),
        ("ACC003", 1500.0, 3),
    ]
    assert all(r.month == "01-2024" for r in result)


def test_position_change_computed():
    ranking = FakeRankingRepo(
        {
            ("ACC001", "01-2024"): previous("ACC001", "Loja A", "01-2024", 2000.0, 2),
            ("ACC002", "01-2024"): previous("ACC002", "Loja B", "01-2024", 3000.0, 1),
        }
    )
    sales = FakeSales({"cnpj-a": [_Order(1500.0)], "cnpj-b": [_Order(200.0)]})
    result = make_service(ranking, sales).process_with_date([ACC1, ACC2], REFERENCE)
    first, second = result
    assert (first.account_id, first.position, first.position_change, first.previous_position) == (
        "ACC001", 1, 1, 2,
    )
    assert (second.account_id, second.position, second.position_change, second.previous_position) == (
        "ACC002", 2, -1, 1,
    )
    assert first.month == second.month == "01-2024"


def test_mid_month_keeps_positions():
    ranking = FakeRankingRepo(
        {
            ("ACC001", "01-2024"): previous("ACC001", "Loja A", "01-2024", 5000.0, 1),
            ("ACC002", "01-2024"): previous("ACC002", "Loja B", "01-2024", 3000.0, 2),
        }
    )
    sales = FakeSales({"cnpj-a": [_Order(6000.0)], "cnpj-b": [_Order(4000.0)]})
    result = make_service(ranking, sales).process_with_date(
        [ACC1, ACC2], datetime(2024, 1, 15, 6, tzinfo=UTC)
    )
    assert [(r.account_id, r.social_network_revenue, r.position, r.position_change, r.previous_position)
            for r in result] == [("ACC001", 6000.0, 1, 0, 1), ("ACC002", 4000.0, 2, 0, 2)]


def test_last_day_of_month_uses_current_month():
    ranking = FakeRankingRepo({("ACC001", "01-2024"): previous("ACC001", "Loja A", "01-2024", 15000.0, 1)})
    sales = FakeSales({"cnpj-a": [_Order(20000.0)]})
    result = make_service(ranking, sales).process_with_date([ACC1], datetime(2024, 1, 31, 6, tzinfo=UTC))
    assert result[0].month == "01-2024"
    assert result[0].social_network_revenue == 20000.0
    assert result[0].position == 1


def test_first_day_of_month_updates_previous_month():
    ranking = FakeRankingRepo({("ACC001", "01-2024"): previous("ACC001", "Loja A", "01-2024", 25000.0, 1)})
    sales = FakeSales({"cnpj-a": [_Order(30000.0)]})
    result = make_service(ranking, sales).process_with_date([ACC1], datetime(2024, 2, 1, 6, tzinfo=UTC))
    assert result[0].month == "01-2024"
    assert result[0].social_network_revenue == 30000.0
    params, filters = sales.calls[0]
    assert params == SalesParams(cnpj="cnpj-a", secret_name="secret")
    assert filters.start_date == datetime(2024, 1, 1, tzinfo=UTC)
    assert filters.end_date == datetime(2024, 1, 31, 6, tzinfo=UTC)


def test_second_day_of_month_starts_new_ranking():
    ranking = FakeRankingRepo()
    sales = FakeSales({"cnpj-a": [_Order(31000.0)], "cnpj-b": [_Order(21500.0)]})
    result = make_service(ranking, sales).process_with_date([ACC1, ACC2], datetime(2024, 2, 2, 6, tzinfo=UTC))
    assert [(r.account_id, r.month, r.social_network_revenue, r.position, r.position_change, r.previous_position)
            for r in result] == [
        ("ACC001", "02-2024", 31000.0, 1, 0, 0),
        ("ACC002", "02-2024", 21500.0, 2, 0, 0),
    ]
    assert sorted(ranking.lookups) == [("ACC001", "02-2024"), ("ACC002", "02-2024")]


SALES_BY_DAY = [
    (2, {"ACC001": 1000, "ACC002": 1500, "ACC003": 800}, ["ACC002", "ACC001", "ACC003"]),
    (5, {"ACC001": 2500, "ACC002": 3000, "ACC003": 1200}, ["ACC002", "ACC001", "ACC003"]),
    (10, {"ACC001": 5000, "ACC002": 4500, "ACC003": 2000}, ["ACC001", "ACC002", "ACC003"]),
    (15, {"ACC001": 8000, "ACC002": 6000, "ACC003": 3500}, ["ACC001", "ACC002", "ACC003"]),
    (28, {"ACC001": 12000, "ACC002": 9000, "ACC003": 5000}, ["ACC001", "ACC002", "ACC003"]),
]


@pytest.mark.parametrize("index", range(len(SALES_BY_DAY)))
def test_position_accuracy_over_month(index):
    day, revenue, expected_order = SALES_BY_DAY[index]
    existing = {}
    if index > 0:
        _, previous_revenue, previous_order = SALES_BY_DAY[index - 1]
        for acc in (ACC1, ACC2, ACC3):
            existing[(acc.id, "02-2024")] = previous(
                acc.id, acc.name, "02-2024", previous_revenue[acc.id], previous_order.index(acc.id) + 1
            )
    cnpjs = {"ACC001": "cnpj-a", "ACC002": "cnpj-b", "ACC003": "cnpj-c"}
    sales = FakeSales({cnpjs[key]: [_Order(float(value))] for key, value in revenue.items()})
    result = make_service(FakeRankingRepo(existing), sales).process_with_date(
        [ACC1, ACC2, ACC3], datetime(2024, 2, day, 6, tzinfo=UTC)
    )
    assert len(result) == 3
    assert all(r.month == "02-2024" for r in result)
    assert [r.account_id for r in result] == expected_order
    assert [r.position for r in result] == [1, 2, 3]
    assert [r.social_network_revenue for r in result] == [float(revenue[a]) for a in expected_order]


def test_account_without_sales_has_zero_revenue():
    result = make_service(FakeRankingRepo(), FakeSales({})).process_with_date(
        [ACC1], datetime(2024, 1, 15, 6, tzinfo=UTC)
    )
    assert result[0].social_network_revenue == 0.0
    assert result[0].position == 1


def test_sales_error_skips_account():
    sales = FakeSales({"cnpj-a": RuntimeError("down"), "cnpj-b": [_Order(1000.0)]})
    result = make_service(FakeRankingRepo(), sales).process_with_date(
        [ACC1, ACC2], datetime(2024, 1, 15, 6, tzinfo=UTC)
    )
    assert [(r.account_id, r.social_network_revenue) for r in result] == [("ACC002", 1000.0)]


def test_year_change_creates_new_month():
    ranking = FakeRankingRepo({("ACC001", "12-2023"): previous("ACC001", "Loja A", "12-2023", 50000.0, 1)})
    sales = FakeSales({"cnpj-a": [_Order(1000.0)]})
    result = make_service(ranking, sales).process_with_date([ACC1], datetime(2024, 1, 2, 6, tzinfo=UTC))
    assert result[0].month == "01-2024"
    assert result[0].social_network_revenue == 1000.0
    assert result[0].previous_position == 0


def test_many_accounts_sorted_descending():
    accounts = [account(f"ACC{i:03d}", f"Loja {i}", f"cnpj-{i}") for i in range(1, 11)]
    sales = FakeSales({f"cnpj-{i}": [_Order(float(i * 1000))] for i in range(1, 11)})
    result = make_service(FakeRankingRepo(), sales).process_with_date(
        accounts, datetime(2024, 1, 15, 6, tzinfo=UTC)
    )
    assert len(result) == 10
    revenues = [r.social_network_revenue for r in result]
    assert revenues == sorted(revenues, reverse=True)
    assert [r.position for r in result] == list(range(1, 11))
    assert result[0].account_id == "ACC010"


def test_equal_revenue_gets_unique_positions():
    sales = FakeSales({c: [_Order(1000.0)] for c in ("cnpj-a", "cnpj-b", "cnpj-c")})
    result = make_service(FakeRankingRepo(), sales).process_with_date(
        [ACC1, ACC2, ACC3], datetime(2024, 1, 15, 6, tzinfo=UTC)
    )
    assert all(r.social_network_revenue == 1000.0 for r in result)
    assert sorted(r.position for r in result) == [1, 2, 3]


def test_non_social_orders_ignored():
    sales = FakeSales({"cnpj-a": [_Order(500.0), _Order(900.0, ["Store"])]})
    result = make_service(FakeRankingRepo(), sales).process_with_date([ACC1], REFERENCE)
    assert result[0].social_network_revenue == 500.0


def test_save_error_still_returns_rankings():
    ranking = FakeRankingRepo(save_error=RuntimeError("db down"))
    sales = FakeSales({"cnpj-a": [_Order(100.0)]})
    result = make_service(ranking, sales).process_with_date([ACC1], REFERENCE)
    assert [(r.account_id, r.position) for r in result] == [("ACC001", 1)]


def test_lookup_error_keeps_account_without_previous_position():
    ranking = FakeRankingRepo(lookup_errors={"ACC001"})
    sales = FakeSales({"cnpj-a": [_Order(100.0)]})
    result = make_service(ranking, sales).process_with_date([ACC1], REFERENCE)
    assert result[0].previous_position == 0
    assert result[0].social_network_revenue == 100.0


def test_get_active_accounts_filters_credentials():
    accounts = [
        AdAccount(id="ACC001", cnpj="cnpj-a", secret_name="secret"),
        AdAccount(id="ACC002", cnpj="cnpj-b", secret_name="secret"),
        AdAccount(id="ACC003", cnpj=None, secret_name="secret"),
        AdAccount(id="ACC004", cnpj="", secret_name="secret"),
        AdAccount(id="ACC005", cnpj="cnpj-a", secret_name=None),
    ]
    repo = FakeAccountRepo(accounts)
    service = make_service(FakeRankingRepo(), FakeSales({}), repo)
    assert [a.id for a in service.get_active_accounts()] == ["ACC001", "ACC002"]
    assert repo.calls == [[AdAccountStatus.ACTIVE]]


def test_get_active_accounts_propagates_error():
    service = make_service(FakeRankingRepo(), FakeSales({}), FakeAccountRepo(error=RuntimeError("boom")))
    with pytest.raises(RuntimeError, match="boom"):
        service.get_active_accounts()


def test_get_active_accounts_empty():
    service = make_service(FakeRankingRepo(), FakeSales({}), FakeAccountRepo([]))
    assert service.get_active_accounts() == []


def test_update_top_ranking_uses_clock():
    now = datetime(2024, 3, 10, 6, tzinfo=UTC)
    ranking = FakeRankingRepo()
    service = make_service(
        ranking, FakeSales({"cnpj-a": [_Order(10.0)]}), FakeAccountRepo([ACC1]), clock=lambda: now
    )
    result = service.update_top_ranking_accounts()
    assert [(r.account_id, r.month) for r in result] == [("ACC001", "03-2024")]
    status = service.get_status()
    assert status["last_sync_started_at"] == now
    assert status["last_sync_completed_at"] == now


def test_update_top_ranking_error_propagates_and_releases():
    service = make_service(FakeRankingRepo(), FakeSales({}), FakeAccountRepo(error=RuntimeError("boom")))
    with pytest.raises(RuntimeError):
        service.update_top_ranking_accounts()
    assert service.last_sync_completed_at is not None
    assert service.update_top_ranking_accounts is not None
    with pytest.raises(RuntimeError):
        service.update_top_ranking_accounts()


def test_sum_social_network_revenue():
    service = make_service(FakeRankingRepo(), FakeSales({}))
    item = StoreRankingItem(account_id="ACC001", social_network_revenue=100.0)
    insights = [
        SalesInsightEntry(sales_metrics={"SocialNetwork": SalesMetrics(total_revenue=50.0)}),
        SalesInsightEntry(sales_metrics={"Store": SalesMetrics(total_revenue=70.0)}),
        SalesInsightEntry(sales_metrics=None),
        SalesInsightEntry(sales_metrics={"SocialNetwork": SalesMetrics(total_revenue=25.0)}),
    ]
    service.sum_social_network_revenue(insights, item)
    assert item.social_network_revenue == 175.0


def test_update_positions_in_place():
    service = make_service(FakeRankingRepo(), FakeSales({}))
    items = [
        StoreRankingItem(account_id="A", social_network_revenue=1.0),
        StoreRankingItem(account_id="B", social_network_revenue=3.0),
    ]
    service.update_positions(items, {"A": StoreRankingItem(account_id="A", position=1)})
    assert [(i.account_id, i.position, i.position_change, i.previous_position) for i in items] == [
        ("B", 1, 0, 0),
        ("A", 2, -1, 1),
    ]


def test_start_disabled_and_status():
    config = TopRankingAccountsConfig(cron_schedule="0 6 * * *", sync_enabled=False)
    service = TopRankingAccountsService(FakeAccountRepo([]), FakeRankingRepo(), FakeSales({}), config)
    assert service.start() is False
    assert service.get_status() == {
        "sync_enabled": False,
        "sync_cron": "0 6 * * *",
        "last_sync_started_at": None,
        "last_sync_completed_at": None,
    }


def test_start_invalid_cron_raises():
    config = TopRankingAccountsConfig(cron_schedule="not a cron", sync_enabled=True)
    service = TopRankingAccountsService(FakeAccountRepo([]), FakeRankingRepo(), FakeSales({}), config)
    with pytest.raises(ValueError, match="store ranking"):
        service.start()


def test_trigger_manual_sync_runs_update():
    ranking = FakeRankingRepo()
    service = make_service(ranking, FakeSales({"cnpj-a": [_Order(5.0)]}), FakeAccountRepo([ACC1]))
    thread = service.trigger_manual_sync()
    thread.join(timeout=5)
    assert len(ranking.saved) == 1
    assert ranking.saved[0][0].account_id == "ACC001"


@pytest.mark.parametrize(
    "first, second, expected",
    [
        (datetime(2024, 1, 15, 10, 30, tzinfo=UTC), datetime(2024, 1, 15, 20, 45, tzinfo=UTC), True),
        (datetime(2024, 1, 15, 10, 30, tzinfo=UTC), datetime(2024, 1, 16, 10, 30, tzinfo=UTC), False),
        (datetime(2024, 1, 15, 10, 30, tzinfo=UTC), datetime(2023, 1, 15, 10, 30, tzinfo=UTC), False),
        (datetime(2024, 1, 15, 10, 30, tzinfo=UTC), datetime(2024, 2, 15, 10, 30, tzinfo=UTC), False),
    ],
)
def test_equal_date(first, second, expected):
    assert equal_date(first, second) is expected


@pytest.mark.parametrize(
    "moment, expected",
    [
        (datetime(2024, 1, 2, 10, 30, 45), True),
        (datetime(2024, 1, 1, 5, 15, 30), False),
        (datetime(2024, 1, 3, 15, 45), False),
        (datetime(2024, 12, 31, 23, 59, 59), False),
        (datetime(2024, 6, 15, 12), False),
    ],
)
def test_is_second_day_of_month(moment, expected):
    assert is_second_day_of_month(moment) is expected


LOCAL = timezone(timedelta(hours=-3))


@pytest.mark.parametrize(
    "moment, expected",
    [
        (datetime(2024, 1, 15, 10, 30, 45, 123, tzinfo=UTC), datetime(2024, 1, 1, tzinfo=UTC)),
        (datetime(2024, 2, 1, 5, 15, 30, tzinfo=LOCAL), datetime(2024, 2, 1, tzinfo=LOCAL)),
        (datetime(2024, 12, 31, 23, 59, 59, 999, tzinfo=UTC), datetime(2024, 12, 1, tzinfo=UTC)),
    ],
)
def test_first_day_of_month(moment, expected):
    result = first_day_of_month(moment)
    assert result == expected
    assert result.tzinfo == expected.tzinfo