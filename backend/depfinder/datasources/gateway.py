"""Request gateway: the only path from this service to the GitHub API.

Every call goes through `RequestGateway.execute`, which layers, in order:

- the short-lived response cache and coalescing of identical in-flight reads
- a fail-fast check against the live primary quota (core, search, code_search)
- a paced, concurrency-bounded admission queue
- a secondary "cost points" window (reads cost 1, writes cost 5)
- conditional requests with stored ETags
- bounded retry on 403/429 rate-limit rejections, sleeping until the
  provider's reset time

Transport errors are never retried here; only rate-limit rejections carry a
well-defined resume time.
"""

import asyncio
import heapq
import itertools
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlencode

import httpx
from loguru import logger

from ..config import Settings
from ..errors import NotFoundError, ProviderError, RateLimitError, TransportError
from ..schemas import RateLimitStatus
from ..services.cache import InMemoryCache
from .base import ApiRequest

POINT_VALUES = {
    "GET": 1,
    "HEAD": 1,
    "OPTIONS": 1,
    "POST": 5,
    "PATCH": 5,
    "PUT": 5,
    "DELETE": 5,
}
READ_METHODS = {"GET", "HEAD", "OPTIONS"}
POINTS_WINDOW_SECONDS = 60.0
TRACKED_RESOURCES = ("core", "search", "code_search")

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


def request_signature(method: str, path: str, params: Optional[Dict[str, Any]] = None) -> str:
    pairs = sorted((str(k), str(v)) for k, v in (params or {}).items() if v is not None)
    normalized = "/" + path.strip("/")
    query = urlencode(pairs)
    return f"{method.upper()} {normalized}?{query}" if query else f"{method.upper()} {normalized}"


def point_cost(method: str) -> int:
    return POINT_VALUES.get(method.upper(), 1)


def next_delay(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    """Exponential backoff for the given zero-based attempt, capped."""
    return min(cap, base * (2 ** attempt))


def resource_for(path: str) -> str:
    # GitHub bills code search to its own bucket
    path = path.lstrip("/")
    if path.startswith("search/code"):
        return "code_search"
    return "search" if path.startswith("search/") else "core"


def _to_datetime(epoch: Optional[float]) -> Optional[datetime]:
    if epoch is None:
        return None
    return datetime.fromtimestamp(epoch, tz=timezone.utc)


@dataclass
class RateBudget:
    points_used: int = 0
    window_reset_at: float = 0.0
    core_remaining: Optional[int] = None
    core_reset_at: Optional[float] = None
    search_remaining: Optional[int] = None
    search_reset_at: Optional[float] = None
    code_search_remaining: Optional[int] = None
    code_search_reset_at: Optional[float] = None
    limits_fetched_at: Optional[float] = None

    def record(self, resource: str, remaining: Any, reset_at: Any):
        if resource not in TRACKED_RESOURCES:
            return
        try:
            remaining_value = int(remaining) if remaining is not None else None
            reset_value = float(reset_at) if reset_at is not None else None
        except (TypeError, ValueError):
            return
        setattr(self, f"{resource}_remaining", remaining_value)
        setattr(self, f"{resource}_reset_at", reset_value)

    def reset_at(self, resource: str) -> Optional[float]:
        return getattr(self, f"{resource}_reset_at", None)

    def is_exhausted(self, resource: str, now: float) -> bool:
        remaining = getattr(self, f"{resource}_remaining", None)
        if remaining is None or remaining > 0:
            return False
        reset_at = self.reset_at(resource)
        return reset_at is None or reset_at > now


@dataclass
class GatewayContext:
    """Process-wide shared state: both caches, the budget and the clock."""

    response_cache: InMemoryCache
    conditional_cache: InMemoryCache
    budget: RateBudget = field(default_factory=RateBudget)
    clock: Clock = time.time
    sleep: Sleep = asyncio.sleep

    @classmethod
    def from_settings(
        cls, settings: Settings, clock: Clock = time.time, sleep: Sleep = asyncio.sleep
    ) -> "GatewayContext":
        return cls(
            response_cache=InMemoryCache(
                settings.cache_ttl_seconds,
                settings.cache_max_entries,
                clock=clock,
                name="response-cache",
            ),
            conditional_cache=InMemoryCache(
                settings.etag_cache_ttl_seconds,
                settings.cache_max_entries,
                clock=clock,
                name="etag-cache",
            ),
            clock=clock,
            sleep=sleep,
        )


class PacedQueue:
    """Admits one job per interval, highest priority first, with at most
    `concurrency` jobs running at once.

    A single dispatcher task owns the pacing slot: it wakes once per
    interval and releases the highest-priority waiter. It exits when nobody
    is waiting and the next `submit` starts it again.
    """

    def __init__(self, interval: float, concurrency: int, clock: Clock, sleep: Sleep):
        self.interval = interval
        self._clock = clock
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(concurrency)
        self._waiting: list = []
        self._counter = itertools.count()
        self._next_slot = 0.0
        self._dispatcher: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return sum(1 for *_, ticket in self._waiting if not ticket.done())

    async def submit(self, job: Callable[[], Awaitable[Any]], priority: int = 0):
        ticket = asyncio.get_running_loop().create_future()
        heapq.heappush(self._waiting, (-priority, next(self._counter), ticket))
        if self._dispatcher is None:
            self._dispatcher = asyncio.ensure_future(self._dispatch_loop())
        try:
            await ticket
        finally:
            if not ticket.done():
                ticket.cancel()
        async with self._semaphore:
            return await job()

    async def _dispatch_loop(self):
        try:
            while self.pending:
                delay = self._next_slot - self._clock()
                if delay > 0:
                    await self._sleep(delay)
                if not self._release_next():
                    break
                self._next_slot = self._clock() + self.interval
                # let the released job start before the next wait
                await asyncio.sleep(0)
        finally:
            self._dispatcher = None

    def _release_next(self) -> bool:
        while self._waiting:
            _, _, ticket = heapq.heappop(self._waiting)
            if not ticket.done():
                ticket.set_result(None)
                return True
        return False


class RequestGateway:
    def __init__(self, settings: Settings, context: GatewayContext, client: httpx.AsyncClient):
        self.settings = settings
        self.context = context
        self.client = client
        self.queue = PacedQueue(
            settings.queue_interval_seconds,
            settings.max_concurrent_requests,
            context.clock,
            context.sleep,
        )
        self._inflight: Dict[str, asyncio.Future] = {}
        self._limits_lock = asyncio.Lock()

    async def execute(self, request: ApiRequest) -> Any:
        signature = request_signature(request.method, request.path, request.params)
        cached = self.context.response_cache.get(signature)
        if cached is not None:
            logger.debug(f"[gateway] cache hit {signature}")
            return cached

        if request.method.upper() not in READ_METHODS:
            return await self._admit(request, signature)

        task = self._inflight.get(signature)
        if task is None:
            task = asyncio.ensure_future(self._admit(request, signature))
            self._inflight[signature] = task
            task.add_done_callback(lambda _t, key=signature: self._inflight.pop(key, None))
        else:
            logger.debug(f"[gateway] joined in-flight {signature}")
        return await asyncio.shield(task)

    async def has_remaining_budget(self) -> bool:
        await self.refresh_limits()
        now = self.context.clock()
        budget = self.context.budget
        return not any(budget.is_exhausted(resource, now) for resource in TRACKED_RESOURCES)

    async def refresh_limits(self, force: bool = False) -> RateBudget:
        budget = self.context.budget
        async with self._limits_lock:
            now = self.context.clock()
            fresh = (
                budget.limits_fetched_at is not None
                and now - budget.limits_fetched_at < self.settings.rate_limit_status_ttl_seconds
            )
            if fresh and not force:
                return budget
            try:
                resp = await self.client.get("/rate_limit")
                resp.raise_for_status()
                resources = resp.json().get("resources") or {}
            except (httpx.HTTPError, ValueError) as exc:
                # the provider still enforces its limits, so an unknown budget is not a stop
                logger.warning(f"[gateway] could not fetch rate limits: {exc!r}")
                budget.limits_fetched_at = now
                return budget
            for resource in TRACKED_RESOURCES:
                info = resources.get(resource) or {}
                budget.record(resource, info.get("remaining"), info.get("reset"))
            budget.limits_fetched_at = now
            logger.info(
                f"[gateway] rate limits core={budget.core_remaining} search={budget.search_remaining} "
                f"code_search={budget.code_search_remaining}"
            )
            return budget

    def rate_limit_status(self) -> RateLimitStatus:
        budget = self.context.budget
        return RateLimitStatus(
            core_remaining=budget.core_remaining,
            core_reset_at=_to_datetime(budget.core_reset_at),
            search_remaining=budget.search_remaining,
            search_reset_at=_to_datetime(budget.search_reset_at),
            code_search_remaining=budget.code_search_remaining,
            code_search_reset_at=_to_datetime(budget.code_search_reset_at),
            points_used=budget.points_used,
            points_per_minute=self.settings.points_per_minute,
            queued=self.queue.pending,
            response_cache_entries=len(self.context.response_cache),
            conditional_cache_entries=len(self.context.conditional_cache),
        )

    async def _admit(self, request: ApiRequest, signature: str) -> Any:
        resource = resource_for(request.path)
        await self.refresh_limits()
        budget = self.context.budget
        if budget.is_exhausted(resource, self.context.clock()):
            raise RateLimitError(
                f"GitHub {resource} quota exhausted",
                reset_at=_to_datetime(budget.reset_at(resource)),
            )
        return await self.queue.submit(
            lambda: self._dispatch(request, signature, resource), priority=request.priority
        )

    async def _reserve_points(self, method: str):
        budget = self.context.budget
        cost = point_cost(method)
        now = self.context.clock()
        if now >= budget.window_reset_at:
            budget.points_used = 0
            budget.window_reset_at = now + POINTS_WINDOW_SECONDS
        if budget.points_used + cost > self.settings.points_per_minute:
            wait = max(0.0, budget.window_reset_at - now)
            logger.warning(f"[gateway] points budget spent, waiting {wait:.1f}s for the window")
            await self.context.sleep(wait)
            budget.points_used = 0
            budget.window_reset_at = self.context.clock() + POINTS_WINDOW_SECONDS
        budget.points_used += cost

    async def _dispatch(self, request: ApiRequest, signature: str, resource: str) -> Any:
        method = request.method.upper()
        is_read = method in READ_METHODS
        for attempt in range(self.settings.max_retries + 1):
            await self._reserve_points(method)
            headers = {}
            conditional = self.context.conditional_cache.get_entry(signature) if is_read else None
            if conditional and conditional.validator:
                headers["If-None-Match"] = conditional.validator
            try:
                resp = await self.client.request(
                    method, request.path, params=request.params or None, headers=headers
                )
            except httpx.RequestError as exc:
                raise TransportError(
                    f"GitHub request error: {type(exc).__name__} {exc!r}"
                ) from exc
            self._record_headers(resp, resource)

            if resp.status_code == 304 and conditional:
                logger.debug(f"[gateway] not modified {signature}")
                self.context.response_cache.set(signature, conditional.value)
                return conditional.value

            if self._is_rate_limited(resp):
                reset_at = self._reset_epoch(resp)
                wait = self._rate_limit_wait(resp, reset_at, attempt)
                cause = httpx.HTTPStatusError(
                    f"GitHub {resp.status_code}: {resp.text}", request=resp.request, response=resp
                )
                if attempt >= self.settings.max_retries:
                    raise RateLimitError(
                        f"GitHub rate limit hit after {attempt + 1} attempts",
                        reset_at=_to_datetime(reset_at),
                    ) from cause
                if wait > self.settings.rate_limit_max_wait_seconds:
                    raise RateLimitError(
                        f"GitHub rate limit resets in {wait:.0f}s",
                        reset_at=_to_datetime(reset_at),
                    ) from cause
                logger.warning(
                    f"[gateway] rate limited on {signature}, attempt "
                    f"{attempt + 1}/{self.settings.max_retries}, sleeping {wait:.1f}s"
                )
                await self.context.sleep(wait)
                continue

            if resp.status_code == 404:
                raise NotFoundError(f"GitHub 404: {request.path}")
            if resp.status_code >= 400:
                raise ProviderError(
                    f"GitHub {resp.status_code}: {resp.text}", status_code=resp.status_code
                )

            payload = resp.json() if resp.content else None
            if is_read:
                self.context.response_cache.set(signature, payload)
                etag = resp.headers.get("etag")
                if etag:
                    self.context.conditional_cache.set(signature, payload, validator=etag)
            return payload
        raise RateLimitError("GitHub rate limit retries exhausted")

    def _record_headers(self, resp: httpx.Response, resource: str):
        remaining = resp.headers.get("x-ratelimit-remaining")
        if remaining is None:
            return
        self.context.budget.record(
            resp.headers.get("x-ratelimit-resource", resource),
            remaining,
            resp.headers.get("x-ratelimit-reset"),
        )

    @staticmethod
    def _is_rate_limited(resp: httpx.Response) -> bool:
        if resp.status_code == 429:
            return True
        if resp.status_code != 403:
            return False
        if resp.headers.get("x-ratelimit-remaining") == "0":
            return True
        return "rate limit" in resp.text.lower()

    @staticmethod
    def _reset_epoch(resp: httpx.Response) -> Optional[float]:
        value = resp.headers.get("x-ratelimit-reset")
        try:
            return float(value) if value is not None else None
        except ValueError:
            return None

    def _rate_limit_wait(self, resp: httpx.Response, reset_at: Optional[float], attempt: int) -> float:
        retry_after = resp.headers.get("retry-after")
        if retry_after:
            try:
                return max(0.0, float(retry_after))
            except ValueError:
                pass
        if reset_at is not None:
            return max(0.0, reset_at - self.context.clock())
        return next_delay(
            attempt, self.settings.retry_base_delay_seconds, self.settings.retry_max_delay_seconds
        )
