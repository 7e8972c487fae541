import hmac
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from aiohttp import web

from .config import AppConfig
from .errors import ConfigError
from .indexer import RunOptions, run_indexer_once
from .rpc import RPCClient
from .storage import Sale, Storage
from .utils import format_decimal, now_ts

logger = logging.getLogger(__name__)

LEADERBOARD_MAX_ENTRIES = 100
RATE_PLACES = Decimal(10) ** -6


def _iso(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def compute_sale_stats(storage: Storage, sale: Sale, now: Optional[int] = None) -> Dict[str, Any]:
    now = now_ts() if now is None else now
    state = storage.get_or_create_checkpoint(sale.id)
    hour_ago = max(0, now - 3600)
    day_ago = max(0, now - 86400)
    cap_removed_ts = sale.cap_removed_ts if sale.cap_removed_ts is not None else sale.start_ts

    invested_last_hour = storage.sum_buckets_since(sale.id, hour_ago)
    invested_last_day = storage.sum_buckets_since(sale.id, day_ago)
    post_cap_total = storage.sum_buckets_since(sale.id, cap_removed_ts)
    first_seen = storage.sender_first_seen(sale.id)
    post_cap_new_wallets = sum(1 for ts in first_seen.values() if ts >= cap_removed_ts)

    avg_hourly_post_cap = Decimal(0)
    if cap_removed_ts > 0:
        hours_since_cap = max(Decimal(1), Decimal(now - cap_removed_ts) / Decimal(3600))
        avg_hourly_post_cap = (post_cap_total / hours_since_cap).quantize(RATE_PLACES)

    if now < sale.start_ts:
        time_remaining = sale.start_ts - now
    else:
        time_remaining = max(0, sale.end_ts - now)

    percent_of_target = None
    if sale.target_raise:
        pct = state.total_invested / sale.target_raise * Decimal(100)
        percent_of_target = float(pct.quantize(Decimal("0.01")))

    return {
        "slug": sale.slug,
        "totalInvested": format_decimal(state.total_invested),
        "investedLastHour": format_decimal(invested_last_hour),
        "investedLastDay": format_decimal(invested_last_day),
        "velocityPerDayNow": format_decimal(invested_last_hour * 24),
        "avgVelocityPerDay": format_decimal(invested_last_day),
        "startTs": sale.start_ts,
        "endTs": sale.end_ts,
        "capRemovedTs": cap_removed_ts,
        "timeRemainingSec": time_remaining,
        "percentOfTarget": percent_of_target,
        "participantCount": len(first_seen),
        "txCount": storage.count_transfers(sale.id),
        "postCapNewWallets": post_cap_new_wallets,
        "avgHourlyPostCap": format_decimal(avg_hourly_post_cap),
        "targetRaise": format_decimal(sale.target_raise) if sale.target_raise is not None else None,
        "lastUpdatedAt": _iso(state.last_updated_at),
    }


class SaleApi:
    def __init__(self, cfg: AppConfig, storage: Storage, rpc: Optional[RPCClient] = None):
        self.cfg = cfg
        self.storage = storage
        self.rpc = rpc

    def _sale_or_404(self, request: web.Request) -> Sale:
        sale = self.storage.get_sale_by_slug(request.match_info["slug"])
        if sale is None:
            raise web.HTTPNotFound(
                text='{"error": "Sale not found"}', content_type="application/json"
            )
        return sale

    def is_authorized(self, request: web.Request) -> bool:
        secret = self.cfg.indexer_secret
        if not secret:
            return True
        supplied = request.query.get("secret") or request.headers.get("X-Indexer-Secret") or ""
        return hmac.compare_digest(supplied.encode(), secret.encode())

    async def health_handler(self, request: web.Request) -> web.Response:
        return web.json_response({"ok": True, "sales": len(self.storage.list_sales())})

    async def sales_handler(self, request: web.Request) -> web.Response:
        items = [s.slug for s in self.storage.list_sales()]
        return web.json_response({"count": len(items), "items": items})

    async def stats_handler(self, request: web.Request) -> web.Response:
        sale = self._sale_or_404(request)
        return web.json_response(compute_sale_stats(self.storage, sale))

    async def series_handler(self, request: web.Request) -> web.Response:
        sale = self._sale_or_404(request)
        bucket = request.query.get("bucket", "5m")
        if bucket != "5m":
            return web.json_response({"error": "Only 5m buckets are supported"}, status=400)
        try:
            from_ts = int(request.query.get("fromTs", sale.start_ts))
            to_ts = int(request.query.get("toTs", sale.end_ts or now_ts()))
        except ValueError:
            return web.json_response({"error": "fromTs/toTs must be integer"}, status=400)
        start = max(0, from_ts)
        end = max(start, to_ts)
        buckets = self.storage.list_buckets(sale.id, from_ts=start, to_ts=end)
        return web.json_response(
            [
                {
                    "bucketStartTs": b.bucket_start_ts,
                    "amount": format_decimal(b.amount),
                    "txCount": b.tx_count,
                }
                for b in buckets
            ]
        )

    async def leaderboard_handler(self, request: web.Request) -> web.Response:
        sale = self._sale_or_404(request)
        try:
            limit_n = int(request.query.get("limit", "10"))
        except ValueError:
            limit_n = 10
        try:
            offset = int(request.query.get("offset", "0"))
        except ValueError:
            offset = 0
        limit_n = min(max(limit_n, 1), LEADERBOARD_MAX_ENTRIES)
        offset = max(offset, 0)
        take = min(limit_n, max(0, LEADERBOARD_MAX_ENTRIES - offset))
        if take <= 0:
            return web.json_response([])
        return web.json_response(self.storage.query_leaderboard(sale.id, take, offset))

    async def indexer_run_handler(self, request: web.Request) -> web.Response:
        if not self.is_authorized(request):
            return web.json_response({"error": "Unauthorized"}, status=401)
        options = RunOptions(
            run_all=True,
            rpc_url=self.cfg.rpc_url,
            confirmations=self.cfg.confirmations,
            reorg_buffer_blocks=self.cfg.reorg_buffer_blocks,
            log_query_range=self.cfg.log_query_range,
            rpc_timeout_sec=self.cfg.rpc_timeout_sec,
            max_rpc_retries=self.cfg.max_rpc_retries,
        )
        try:
            results = await run_indexer_once(options, storage=self.storage, rpc=self.rpc)
        except ConfigError as e:
            logger.error("indexer run rejected: %s", e)
            return web.json_response({"ok": False, "error": str(e)}, status=500)
        return web.json_response(
            {
                "ok": all(r.error is None for r in results),
                "results": [r.to_dict() for r in results],
            }
        )

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self.health_handler)
        app.router.add_get("/sales", self.sales_handler)
        app.router.add_get("/sales/{slug}/stats", self.stats_handler)
        app.router.add_get("/sales/{slug}/series", self.series_handler)
        app.router.add_get("/sales/{slug}/leaderboard", self.leaderboard_handler)
        app.router.add_get("/indexer/run", self.indexer_run_handler)
        app.router.add_post("/indexer/run", self.indexer_run_handler)
        return app
