import asyncio
from decimal import Decimal

from aiohttp import test_utils

from fakes import BUYER_A, BUYER_B, record
from sale_indexer.api import SaleApi, compute_sale_stats
from sale_indexer.config import AppConfig
from sale_indexer.rebuild import rebuild_sale


def seeded_sale(storage, make_sale, **overrides):
    sale = make_sale(target_raise=Decimal(100), **overrides)
    record(storage, sale, 1, 1000, "2.5", sender=BUYER_A)
    record(storage, sale, 2, 1250, "3.25", sender=BUYER_B)
    record(storage, sale, 3, 1500, "4", sender=BUYER_A)
    rebuild_sale(storage, sale)
    return sale


def make_api(storage, rpc=None, **overrides):
    fields = dict(rpc_url="http://fake-rpc", sqlite_path=":memory:", sale_slug=None)
    fields.update(overrides)
    return SaleApi(AppConfig(**fields), storage, rpc=rpc)


def request(api, method, path, **kwargs):
    async def go():
        async with test_utils.TestClient(test_utils.TestServer(api.create_app())) as client:
            resp = await client.request(method, path, **kwargs)
            return resp.status, await resp.json()

    return asyncio.run(go())


def test_stats_during_sale(storage, make_sale):
    sale = seeded_sale(storage, make_sale)

    stats = compute_sale_stats(storage, sale, now=1600)

    assert stats["totalInvested"] == "9.75"
    assert stats["investedLastHour"] == "9.75"
    assert stats["velocityPerDayNow"] == "234"
    assert stats["timeRemainingSec"] == 400
    assert stats["percentOfTarget"] == 9.75
    assert stats["participantCount"] == 2
    assert stats["txCount"] == 3
    assert stats["capRemovedTs"] == 1000
    assert stats["postCapNewWallets"] == 2
    assert stats["avgHourlyPostCap"] == "7.25"
    assert stats["targetRaise"] == "100"
    assert stats["lastUpdatedAt"].endswith("+00:00")


def test_stats_after_cap_removal(storage, make_sale):
    sale = seeded_sale(storage, make_sale, cap_removed_ts=1250)

    stats = compute_sale_stats(storage, sale, now=1600)

    assert stats["capRemovedTs"] == 1250
    assert stats["postCapNewWallets"] == 1
    assert stats["avgHourlyPostCap"] == "4"


def test_stats_before_start_counts_down_to_start(storage, make_sale):
    sale = make_sale()
    stats = compute_sale_stats(storage, sale, now=400)
    assert stats["timeRemainingSec"] == 600
    assert stats["totalInvested"] == "0"
    assert stats["percentOfTarget"] is None


def test_health_and_sales(storage, make_sale):
    make_sale(slug="b")
    make_sale(slug="a")
    api = make_api(storage)

    assert request(api, "GET", "/health") == (200, {"ok": True, "sales": 2})
    assert request(api, "GET", "/sales") == (200, {"count": 2, "items": ["a", "b"]})


def test_stats_endpoint(storage, make_sale):
    seeded_sale(storage, make_sale)
    status, body = request(make_api(storage), "GET", "/sales/test-sale/stats")
    assert status == 200
    assert body["slug"] == "test-sale"
    assert body["totalInvested"] == "9.75"


def test_unknown_sale_is_404(storage):
    status, body = request(make_api(storage), "GET", "/sales/nope/stats")
    assert status == 404
    assert body == {"error": "Sale not found"}


def test_series(storage, make_sale):
    seeded_sale(storage, make_sale)
    api = make_api(storage)

    status, body = request(api, "GET", "/sales/test-sale/series")
    assert status == 200
    assert body == [
        {"bucketStartTs": 1200, "amount": "3.25", "txCount": 1},
        {"bucketStartTs": 1500, "amount": "4", "txCount": 1},
    ]

    status, body = request(api, "GET", "/sales/test-sale/series?fromTs=0&toTs=1200")
    assert [b["bucketStartTs"] for b in body] == [900, 1200]


def test_series_rejects_bad_params(storage, make_sale):
    make_sale()
    api = make_api(storage)
    assert request(api, "GET", "/sales/test-sale/series?bucket=1h")[0] == 400
    assert request(api, "GET", "/sales/test-sale/series?fromTs=soon")[0] == 400


def test_leaderboard(storage, make_sale):
    seeded_sale(storage, make_sale)
    api = make_api(storage)

    status, body = request(api, "GET", "/sales/test-sale/leaderboard")
    assert status == 200
    assert body == [
        {"address": BUYER_A, "totalAmount": "6.5", "txCount": 2},
        {"address": BUYER_B, "totalAmount": "3.25", "txCount": 1},
    ]

    _, first = request(api, "GET", "/sales/test-sale/leaderboard?limit=0")
    assert [e["address"] for e in first] == [BUYER_A]
    _, second = request(api, "GET", "/sales/test-sale/leaderboard?limit=1&offset=1")
    assert [e["address"] for e in second] == [BUYER_B]
    assert request(api, "GET", "/sales/test-sale/leaderboard?offset=100") == (200, [])


def test_indexer_run_requires_secret(storage, chain, make_sale):
    make_sale()
    chain.add_transfer(chain.block_at(1500), 2_500_000)
    api = make_api(storage, rpc=chain, indexer_secret="s3cret")

    assert request(api, "POST", "/indexer/run")[0] == 401
    assert request(api, "POST", "/indexer/run?secret=wrong")[0] == 401

    status, body = request(api, "POST", "/indexer/run", headers={"X-Indexer-Secret": "s3cret"})
    assert status == 200
    assert body["ok"] is True
    [result] = body["results"]
    assert result["saleSlug"] == "test-sale"
    assert result["newTransfers"] == 1
    assert result["totalAdded"] == "2.5"


def test_indexer_run_without_rpc_url(storage, chain, make_sale):
    make_sale()
    api = make_api(storage, rpc=chain, rpc_url=None)
    status, body = request(api, "GET", "/indexer/run")
    assert status == 500
    assert body["ok"] is False
    assert "RPC_URL" in body["error"]
