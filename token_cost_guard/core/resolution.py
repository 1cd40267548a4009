"""
Token resolution service.

Single entry point for callers: picks the local or remote resolver per call,
caches results, fans batches and streams out with bounded concurrency, and
turns token counts into validations and usage summaries.
"""

import asyncio
import functools
import hashlib
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import (
    Any, AsyncIterable, AsyncIterator, Awaitable, Callable, Iterable, List,
    Optional, Set, Tuple, Union,
)

import aiohttp

from token_cost_guard.config.loader import TokenConfig
from token_cost_guard.utils.logger import get_logger
from .encoders import Encoder, EncoderRegistry
from .local_resolver import LocalResolver
from .models import default_max_tokens, normalize_model
from .pricing import (
    PricingTable, add_costs, calculate_cost, calculate_input_cost, calculate_output_cost,
)
from .remote_resolver import RemoteResolver
from .token_counter import (
    ServiceStats, TokenResult, UsageSummary, ValidationResult,
    efficiency_score, truncate_preview,
)

Texts = Union[Iterable[str], AsyncIterable[str]]

_DONE = object()

DEFAULT_ESTIMATE_CONCURRENCY = 5


@dataclass(frozen=True)
class BatchItem:
    """One batch or stream outcome: a result or the error that replaced it."""
    index: int
    text: str
    result: Optional[TokenResult] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class EstimateRequest:
    """A generation request to estimate: prompt, engine and output budget."""
    prompt: str
    engine: Optional[str] = None
    max_tokens: Optional[int] = None


@dataclass(frozen=True)
class HealthStatus:
    """Resolver health; overall health follows the local resolver only."""
    local_healthy: bool
    remote_healthy: bool
    remote_enabled: bool

    @property
    def overall_healthy(self) -> bool:
        return self.local_healthy


@dataclass(frozen=True)
class CombinedStats:
    """Stats snapshot for both resolvers plus the result cache."""
    local: ServiceStats
    remote: Optional[ServiceStats]
    cache_size: int

    @property
    def total_calculations(self) -> int:
        remote_total = self.remote.total_calculations if self.remote else 0
        return self.local.total_calculations + remote_total


def cache_key(text: str, model: str, route: str = "local") -> str:
    """SHA-256 over (route, model, text); the text itself is never stored as a key."""
    digest = hashlib.sha256()
    digest.update(route.encode("utf-8"))
    digest.update(b"\x00")
    digest.update(model.encode("utf-8"))
    digest.update(b"\x00")
    digest.update(text.encode("utf-8"))
    return digest.hexdigest()


class ResultCache:
    """Bounded, time-expiring cache of TokenResults.

    Reads are plain dict lookups. Writes are insert-if-absent under a short
    lock, so concurrent misses for the same key settle on one entry. When
    full, the oldest insertion is evicted.
    """

    def __init__(
        self,
        maximum_size: int,
        expire_after_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.maximum_size = maximum_size
        self.expire_after_seconds = expire_after_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, TokenResult]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[TokenResult]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, result = entry
        if self._clock() - stored_at < self.expire_after_seconds:
            return result
        with self._lock:
            if self._entries.get(key) is entry:
                del self._entries[key]
        return None

    def put_if_absent(self, key: str, result: TokenResult) -> TokenResult:
        """Store result unless a live entry exists; return whichever is cached."""
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            if entry is not None and now - entry[0] < self.expire_after_seconds:
                return entry[1]
            self._entries[key] = (now, result)
            self._entries.move_to_end(key)
            while len(self._entries) > self.maximum_size:
                self._entries.popitem(last=False)
            return result

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


async def _iterate(texts: Texts) -> AsyncIterator[str]:
    if hasattr(texts, "__aiter__"):
        async for text in texts:
            yield text
    else:
        for text in texts:
            yield text


async def _windows(texts: Texts, size: int) -> AsyncIterator[List[str]]:
    window: List[str] = []
    async for text in _iterate(texts):
        window.append(text)
        if len(window) >= size:
            yield window
            window = []
    if window:
        yield window


def _spawn(workers: Set[asyncio.Task], coro: Awaitable[Any]) -> None:
    task = asyncio.ensure_future(coro)
    workers.add(task)
    task.add_done_callback(workers.discard)


class TokenResolutionService:
    """Coordinates token resolution for single, batch and streaming callers."""

    def __init__(
        self,
        local: LocalResolver,
        remote: Optional[RemoteResolver] = None,
        config: Optional[TokenConfig] = None,
        cache: Optional[ResultCache] = None,
    ):
        """
        Args:
            local: Local resolver, always available
            remote: Remote resolver; None disables remote resolution
            config: Token configuration (defaults if omitted)
            cache: Result cache; built from config.cache when omitted and enabled
        """
        self.config = config or TokenConfig()
        self.local = local
        self.remote = remote
        self.pricing: PricingTable = local.pricing
        if cache is None and self.config.cache.enabled:
            cache = ResultCache(
                self.config.cache.maximum_size,
                self.config.cache.expire_after_seconds,
            )
        self.cache = cache
        self.logger = get_logger(self.__class__.__name__)

        self._stats_lock = threading.Lock()
        self._cache_hits = 0
        self._cache_misses = 0

        self.logger.info(
            f"Token resolution ready (remote {'enabled' if self.remote_enabled else 'disabled'}, "
            f"cache {'enabled' if self.cache is not None else 'disabled'})"
        )

    @classmethod
    def from_config(
        cls,
        config: Optional[TokenConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
        loader: Optional[Callable[[str], Encoder]] = None,
    ) -> "TokenResolutionService":
        """Wire registry, pricing and resolvers from one configuration."""
        config = config or TokenConfig()
        pricing = PricingTable.from_config(config.pricing)
        registry = EncoderRegistry(default_encoding=config.local.default_encoding, loader=loader)
        local = LocalResolver(registry=registry, pricing=pricing, config=config.local)
        remote = None
        if config.remote.enabled:
            remote = RemoteResolver(local, config=config.remote, session=session)
        return cls(local, remote=remote, config=config)

    @property
    def remote_enabled(self) -> bool:
        return self.remote is not None

    async def resolve(
        self, text: str, model: Optional[str] = None, prefer_remote: bool = False
    ) -> TokenResult:
        """Resolve the token count and input cost for one text.

        Args:
            text: Text to tokenize
            model: Engine or model identifier
            prefer_remote: Use the remote resolver (with local fallback) when enabled

        Returns:
            TokenResult, possibly served from the cache

        Raises:
            TextTooLargeError: If text exceeds the local length limit
            UnsupportedModelError: If no encoder can be loaded
        """
        canonical = normalize_model(model)
        use_remote = prefer_remote and self.remote is not None

        key = None
        if self.cache is not None and text:
            key = cache_key(text, canonical, "remote" if use_remote else "local")
            cached = self.cache.get(key)
            with self._stats_lock:
                if cached is not None:
                    self._cache_hits += 1
                else:
                    self._cache_misses += 1
            if cached is not None:
                return cached

        if use_remote:
            result = await self.remote.compute_async(text, canonical)
        else:
            result = await self.local.compute_async(text, canonical)

        if key is not None:
            result = self.cache.put_if_absent(key, result)
        return result

    async def resolve_total(
        self,
        input_text: str,
        expected_output_tokens: int,
        model: Optional[str] = None,
        prefer_remote: bool = False,
    ) -> TokenResult:
        """Request-time estimate: measured input tokens plus declared output tokens."""
        if expected_output_tokens < 0:
            raise ValueError("expected_output_tokens cannot be negative")
        result = await self.resolve(input_text, model, prefer_remote)
        total_cost = calculate_cost(
            result.model, result.input_tokens, expected_output_tokens, self.pricing
        )
        return result.with_output(expected_output_tokens, total_cost)

    async def estimate_request(
        self,
        prompt: str,
        engine: Optional[str] = None,
        max_tokens: Optional[int] = None,
        prefer_remote: bool = False,
    ) -> TokenResult:
        """Estimate a generation request; max_tokens defaults per model."""
        model = normalize_model(engine)
        expected = max_tokens if max_tokens is not None else default_max_tokens(model)
        return await self.resolve_total(prompt, expected, model, prefer_remote)

    def resolve_batch(
        self,
        texts: Texts,
        model: Optional[str] = None,
        prefer_remote: bool = False,
        concurrency_limit: Optional[int] = None,
    ) -> AsyncIterator[BatchItem]:
        """Resolve many texts concurrently.

        Yields exactly one BatchItem per input, in completion order. At most
        concurrency_limit resolutions run at once, and a worker keeps its
        slot until its item is queued, so a slow consumer stalls the input.
        Closing the iterator early cancels outstanding work.

        Args:
            texts: Iterable or async iterable of texts
            model: Engine or model identifier
            prefer_remote: Route through the remote resolver when enabled
            concurrency_limit: Max resolutions in flight; configured default if None

        Returns:
            Async iterator of BatchItem
        """
        limit = concurrency_limit if concurrency_limit is not None else self._default_concurrency(prefer_remote)
        if limit <= 0:
            raise ValueError("concurrency_limit must be > 0")

        async def produce(queue: asyncio.Queue, workers: Set[asyncio.Task]) -> None:
            slots = asyncio.Semaphore(limit)
            index = 0
            async for text in _iterate(texts):
                await slots.acquire()
                call = functools.partial(self.resolve, text, model, prefer_remote)
                _spawn(workers, self._resolve_into(queue, slots, index, text, call))
                index += 1

        return self._consume(self.config.batch.buffer_size, produce)

    def estimate_requests_batch(
        self,
        requests: Union[Iterable[EstimateRequest], AsyncIterable[EstimateRequest]],
        prefer_remote: bool = False,
        concurrency_limit: Optional[int] = None,
    ) -> AsyncIterator[BatchItem]:
        """Estimate many generation requests concurrently.

        Each request is estimated as estimate_request would. Yields one
        BatchItem per request, in completion order, with the same concurrency
        and backpressure rules as resolve_batch.
        """
        limit = concurrency_limit if concurrency_limit is not None else DEFAULT_ESTIMATE_CONCURRENCY
        if limit <= 0:
            raise ValueError("concurrency_limit must be > 0")

        async def produce(queue: asyncio.Queue, workers: Set[asyncio.Task]) -> None:
            slots = asyncio.Semaphore(limit)
            index = 0
            async for request in _iterate(requests):
                await slots.acquire()
                call = functools.partial(
                    self.estimate_request, request.prompt, request.engine,
                    request.max_tokens, prefer_remote,
                )
                _spawn(workers, self._resolve_into(queue, slots, index, request.prompt, call))
                index += 1

        return self._consume(self.config.batch.buffer_size, produce)

    def resolve_stream(
        self,
        texts: Texts,
        model: Optional[str] = None,
        prefer_remote: bool = False,
        window_size: Optional[int] = None,
        window_concurrency: Optional[int] = None,
        concurrency_limit: Optional[int] = None,
    ) -> AsyncIterator[BatchItem]:
        """Resolve an incrementally arriving stream of texts.

        Input is chunked into windows of window_size; at most
        window_concurrency windows are in progress, each through the batch
        path. Item indexes are positions in the overall stream.
        """
        batch_config = self.config.batch
        size = window_size if window_size is not None else batch_config.stream_window_size
        windows = window_concurrency if window_concurrency is not None else batch_config.stream_window_concurrency
        if size <= 0:
            raise ValueError("window_size must be > 0")
        if windows <= 0:
            raise ValueError("window_concurrency must be > 0")

        async def produce(queue: asyncio.Queue, workers: Set[asyncio.Task]) -> None:
            slots = asyncio.Semaphore(windows)
            offset = 0
            async for window in _windows(texts, size):
                await slots.acquire()
                _spawn(workers, self._run_window(
                    queue, slots, offset, window, model, prefer_remote, concurrency_limit
                ))
                offset += len(window)

        return self._consume(batch_config.stream_buffer_size, produce)

    def validate(self, token_result: TokenResult, ceiling: Optional[int] = None) -> ValidationResult:
        """Check total tokens against a ceiling (configured maximum by default)."""
        max_allowed = ceiling if ceiling is not None else self.config.limits.max_tokens_per_request
        total = token_result.total_tokens
        if total <= max_allowed:
            message = f"Token count {total} is within limit {max_allowed}"
        else:
            message = f"Token count {total} exceeds maximum allowed {max_allowed}"
        return ValidationResult(
            valid=total <= max_allowed,
            token_result=token_result,
            max_allowed=max_allowed,
            message=message,
        )

    async def summarize(
        self,
        request_text: str,
        response_text: str,
        model: Optional[str] = None,
        prefer_remote: bool = False,
    ) -> UsageSummary:
        """Resolve request and response concurrently and merge them into a UsageSummary.

        Both resolutions must succeed; there are no partial summaries.
        """
        request, response = await self.measure_exchange(
            request_text, response_text, model, prefer_remote
        )
        return self.usage_summary(request, response)

    async def measure_exchange(
        self,
        request_text: str,
        response_text: str,
        model: Optional[str] = None,
        prefer_remote: bool = False,
    ) -> Tuple[TokenResult, TokenResult]:
        """Resolve request and response texts concurrently under one model."""
        canonical = normalize_model(model)
        request, response = await asyncio.gather(
            self.resolve(request_text, canonical, prefer_remote),
            self.resolve(response_text, canonical, prefer_remote),
        )
        return request, response

    def usage_summary(self, request: TokenResult, response: TokenResult) -> UsageSummary:
        """Merge measured request and response results; total cost is the sum of both parts."""
        canonical = request.model
        input_tokens = request.input_tokens
        output_tokens = response.input_tokens
        input_cost = calculate_input_cost(canonical, input_tokens, self.pricing)
        output_cost = calculate_output_cost(canonical, output_tokens, self.pricing)

        return UsageSummary(
            total_input_tokens=input_tokens,
            total_output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            input_cost=input_cost,
            output_cost=output_cost,
            total_cost=add_costs(input_cost, output_cost),
            total_processing_time_ms=request.processing_time_ms + response.processing_time_ms,
            model=canonical,
            efficiency_score=efficiency_score(input_tokens, output_tokens),
        )

    async def health_status(self) -> HealthStatus:
        local_healthy = await self.local.is_healthy()
        remote_healthy = await self.remote.is_healthy() if self.remote is not None else False
        return HealthStatus(
            local_healthy=local_healthy,
            remote_healthy=remote_healthy,
            remote_enabled=self.remote_enabled,
        )

    def stats(self) -> CombinedStats:
        with self._stats_lock:
            hits, misses = self._cache_hits, self._cache_misses
        return CombinedStats(
            local=replace(self.local.stats(), cache_hits=hits, cache_misses=misses),
            remote=self.remote.stats() if self.remote is not None else None,
            cache_size=len(self.cache) if self.cache is not None else 0,
        )

    def clear_cache(self) -> None:
        if self.cache is not None:
            self.cache.clear()
            self.logger.info("Token result cache cleared")

    async def close(self) -> None:
        if self.remote is not None:
            await self.remote.close()

    async def __aenter__(self) -> "TokenResolutionService":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _default_concurrency(self, prefer_remote: bool) -> int:
        if prefer_remote and self.remote is not None:
            return self.config.remote.concurrency_limit
        return self.config.local.parallel_threads

    async def _resolve_item(
        self, index: int, text: str, call: Callable[[], Awaitable[TokenResult]]
    ) -> BatchItem:
        try:
            result = await call()
        except Exception as e:
            self.logger.warning(f"Token resolution failed for item {index}: {e}")
            return BatchItem(index=index, text=truncate_preview(text), error=e)
        return BatchItem(index=index, text=result.text, result=result)

    async def _resolve_into(
        self,
        queue: asyncio.Queue,
        slots: asyncio.Semaphore,
        index: int,
        text: str,
        call: Callable[[], Awaitable[TokenResult]],
    ) -> None:
        try:
            item = await self._resolve_item(index, text, call)
            await queue.put(item)
        finally:
            slots.release()

    async def _run_window(
        self,
        queue: asyncio.Queue,
        slots: asyncio.Semaphore,
        offset: int,
        window: List[str],
        model: Optional[str],
        prefer_remote: bool,
        concurrency_limit: Optional[int],
    ) -> None:
        try:
            batch = self.resolve_batch(window, model, prefer_remote, concurrency_limit)
            try:
                async for item in batch:
                    await queue.put(replace(item, index=offset + item.index))
            finally:
                await batch.aclose()
        finally:
            slots.release()

    async def _produce(
        self,
        produce: Callable[[asyncio.Queue, Set[asyncio.Task]], Awaitable[None]],
        queue: asyncio.Queue,
        workers: Set[asyncio.Task],
    ) -> None:
        try:
            await produce(queue, workers)
            pending = [task for task in workers if not task.done()]
            while pending:
                await asyncio.gather(*pending)
                pending = [task for task in workers if not task.done()]
        except Exception as e:
            self.logger.error(f"Token resolution input failed: {e}")
            await queue.put(e)
            return
        await queue.put(_DONE)

    async def _consume(
        self,
        buffer_size: int,
        produce: Callable[[asyncio.Queue, Set[asyncio.Task]], Awaitable[None]],
    ) -> AsyncIterator[BatchItem]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=buffer_size)
        workers: Set[asyncio.Task] = set()
        producer = asyncio.ensure_future(self._produce(produce, queue, workers))
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    return
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            producer.cancel()
            for task in list(workers):
                task.cancel()
            await asyncio.gather(producer, *workers, return_exceptions=True)
