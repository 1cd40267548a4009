"""
Unit tests for the token resolution service.

Tests caching, request estimates, validation, summaries, and the batch and
stream fan-out paths.
"""

import asyncio
from decimal import Decimal

import pytest

from token_cost_guard.config.loader import (
    BatchConfig,
    CacheConfig,
    LocalConfig,
    PricingConfig,
    ProviderConfig,
    RemoteConfig,
    TokenConfig,
)
from token_cost_guard.core.encoders import EncoderRegistry
from token_cost_guard.core.errors import TextTooLargeError
from token_cost_guard.core.local_resolver import LocalResolver
from token_cost_guard.core.pricing import calculate_cost
from token_cost_guard.core.remote_resolver import RemoteResolver
from token_cost_guard.core.resolution import (
    DEFAULT_ESTIMATE_CONCURRENCY,
    EstimateRequest,
    ResultCache,
    TokenResolutionService,
    cache_key,
)
from token_cost_guard.core.token_counter import TokenizationMethod, TokenResult


@pytest.fixture
def service(loader):
    return TokenResolutionService.from_config(TokenConfig(), loader=loader)


def _texts(count):
    return [" ".join(["w"] * (i + 1)) for i in range(count)]


class SlowLocalResolver(LocalResolver):
    """Local resolver that yields to the loop and records concurrency."""

    def __init__(self, registry, delay=0.01):
        super().__init__(registry=registry)
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0
        self.started = 0

    async def compute_async(self, text, model):
        self.started += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            return self.compute_sync(text, model)
        finally:
            self.in_flight -= 1


class TestResolve:
    """Test single resolution and caching."""

    @pytest.mark.asyncio
    async def test_resolve_local(self, service):
        """Verify local resolution with input cost."""
        result = await service.resolve("Hello, world!", "gpt-3.5-turbo")

        assert result.input_tokens == 2
        assert result.method == TokenizationMethod.LOCAL_BPE
        assert result.estimated_cost == calculate_cost("gpt-3.5-turbo", 2, 0)

    @pytest.mark.asyncio
    async def test_repeat_resolve_hits_cache(self, service):
        """Verify identical calls return equal results and record a hit."""
        first = await service.resolve("same text", "vllm")
        second = await service.resolve("same text", "gpt-3.5-turbo")

        assert first == second
        stats = service.stats()
        assert stats.local.cache_hits == 1
        assert stats.local.cache_misses == 1
        assert stats.local.total_calculations == 1
        assert stats.cache_size == 1

    @pytest.mark.asyncio
    async def test_cache_keyed_by_model(self, service):
        """Verify the same text under another model is a miss."""
        await service.resolve("same text", "gpt-4")
        await service.resolve("same text", "gpt-3.5-turbo")

        assert service.stats().local.cache_misses == 2

    @pytest.mark.asyncio
    async def test_cache_disabled(self, loader):
        """Verify no caching when the cache is disabled."""
        service = TokenResolutionService.from_config(
            TokenConfig(cache=CacheConfig(enabled=False)), loader=loader
        )

        await service.resolve("text", "gpt-4")
        await service.resolve("text", "gpt-4")

        stats = service.stats()
        assert service.cache is None
        assert stats.local.cache_hits == 0
        assert stats.local.total_calculations == 2

    @pytest.mark.asyncio
    async def test_clear_cache(self, service):
        """Verify clearing forces recomputation."""
        await service.resolve("text", "gpt-4")
        service.clear_cache()
        await service.resolve("text", "gpt-4")

        assert service.stats().local.total_calculations == 2

    @pytest.mark.asyncio
    async def test_prefer_remote_without_remote_uses_local(self, service):
        """Verify prefer_remote is ignored when remote is disabled."""
        result = await service.resolve("a b c", "gpt-4", prefer_remote=True)

        assert result.method == TokenizationMethod.LOCAL_BPE
        assert service.remote_enabled is False

    @pytest.mark.asyncio
    async def test_prefer_remote_falls_back(self, registry, make_session, fake_sleep):
        """Verify an unreachable remote still yields a local result."""
        local = LocalResolver(registry=registry)
        remote_config = RemoteConfig(
            enabled=True,
            openai=ProviderConfig(enabled=True, base_url="https://tok.example"),
        )
        remote = RemoteResolver(local, remote_config, session=make_session([(502, {})]), sleep=fake_sleep)
        service = TokenResolutionService(local, remote=remote)

        result = await service.resolve("a b c", "gpt-4", prefer_remote=True)

        assert result.method == TokenizationMethod.LOCAL_BPE
        assert result.input_tokens == 3
        assert service.stats().remote.fallback_usages == 1

    @pytest.mark.asyncio
    async def test_remote_results_do_not_leak_into_local_route(self, registry, make_session):
        """Verify a cached remote count never answers a local-routed call."""
        local = LocalResolver(registry=registry)
        remote_config = RemoteConfig(
            enabled=True,
            openai=ProviderConfig(enabled=True, base_url="https://tok.example"),
        )
        remote = RemoteResolver(local, remote_config, session=make_session([(200, {"tokens": [1] * 9})]))
        service = TokenResolutionService(local, remote=remote)

        remote_result = await service.resolve("a b c", "gpt-4", prefer_remote=True)
        local_result = await service.resolve("a b c", "gpt-4", prefer_remote=False)
        repeat_remote = await service.resolve("a b c", "gpt-4", prefer_remote=True)

        assert remote_result.input_tokens == 9
        assert remote_result.method == TokenizationMethod.EXTERNAL_API_A
        assert local_result.input_tokens == 3
        assert local_result.method == TokenizationMethod.LOCAL_BPE
        assert repeat_remote is remote_result

    @pytest.mark.asyncio
    async def test_hard_limit_propagates(self, loader):
        """Verify oversize text raises regardless of routing."""
        service = TokenResolutionService.from_config(
            TokenConfig(local=LocalConfig(max_text_length=5)), loader=loader
        )

        with pytest.raises(TextTooLargeError):
            await service.resolve("far too long", "gpt-4")
        with pytest.raises(TextTooLargeError):
            await service.resolve("far too long", "gpt-4", prefer_remote=True)


class TestResultCache:
    """Test cache insertion, expiry and bounds."""

    def _result(self, tokens):
        return TokenResult(
            text="t", model="gpt-4", input_tokens=tokens, output_tokens=0, total_tokens=tokens,
            estimated_cost=0.0, processing_time_ms=0.0, method=TokenizationMethod.LOCAL_BPE,
        )

    def test_insert_if_absent(self):
        """Verify a second insert keeps the first entry."""
        cache = ResultCache(maximum_size=10, expire_after_seconds=60)
        first = self._result(1)

        assert cache.put_if_absent("k", first) is first
        assert cache.put_if_absent("k", self._result(2)) is first
        assert cache.get("k") is first

    def test_entries_expire(self):
        """Verify entries older than the TTL are dropped."""
        now = [0.0]
        cache = ResultCache(maximum_size=10, expire_after_seconds=60, clock=lambda: now[0])
        cache.put_if_absent("k", self._result(1))

        now[0] = 59.0
        assert cache.get("k") is not None
        now[0] = 60.0
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_bounded_size(self):
        """Verify the oldest entry is evicted when full."""
        cache = ResultCache(maximum_size=2, expire_after_seconds=60)
        for key in ("a", "b", "c"):
            cache.put_if_absent(key, self._result(1))

        assert len(cache) == 2
        assert cache.get("a") is None
        assert cache.get("c") is not None

    def test_cache_key(self):
        """Verify keys are hex digests that separate model and text."""
        assert cache_key("text", "gpt-4") != cache_key("text", "gpt-3.5-turbo")
        assert cache_key("ab", "c") != cache_key("b", "ca")
        assert cache_key("text", "gpt-4", "remote") != cache_key("text", "gpt-4")
        assert len(cache_key("text", "gpt-4")) == 64


class TestRequestEstimates:
    """Test resolve_total, estimate_request and validate."""

    @pytest.mark.asyncio
    async def test_resolve_total_uses_declared_output(self, service):
        """Verify output tokens are exactly the declared count."""
        result = await service.resolve_total("one two three four", 50, "vllm")

        assert result.model == "gpt-3.5-turbo"
        assert result.input_tokens == 4
        assert result.output_tokens == 50
        assert result.total_tokens == 54
        assert result.estimated_cost == calculate_cost("gpt-3.5-turbo", 4, 50)

    @pytest.mark.asyncio
    async def test_resolve_total_rejects_negative_output(self, service):
        """Verify negative output declarations raise."""
        with pytest.raises(ValueError, match="cannot be negative"):
            await service.resolve_total("text", -1, "gpt-4")

    @pytest.mark.asyncio
    async def test_estimate_request_default_max_tokens(self, service):
        """Verify the per-model output default applies when none is given."""
        result = await service.estimate_request("prompt text", engine="sglang")

        assert result.model == "gpt-4"
        assert result.output_tokens == 1024

    @pytest.mark.asyncio
    async def test_estimate_request_explicit_max_tokens(self, service):
        """Verify an explicit max_tokens wins over the default."""
        result = await service.estimate_request("prompt text", engine="vllm", max_tokens=50)

        assert result.output_tokens == 50
        assert result.total_tokens == result.input_tokens + 50

    @pytest.mark.asyncio
    async def test_validate_over_ceiling(self, service):
        """Verify an over-ceiling result is invalid and names both numbers."""
        result = await service.resolve_total("a b c d e", 20, "gpt-4")

        validation = service.validate(result, ceiling=10)

        assert result.total_tokens == 25
        assert validation.valid is False
        assert validation.max_allowed == 10
        assert "25" in validation.message
        assert "10" in validation.message

    @pytest.mark.asyncio
    async def test_validate_default_ceiling(self, service):
        """Verify the configured default ceiling of 8192."""
        result = await service.resolve_total("a b", 8190, "gpt-4")

        validation = service.validate(result)

        assert validation.valid is True
        assert validation.max_allowed == 8192
        assert service.validate(result.with_output(8191, 0.0)).valid is False


class TestEstimateBatch:
    """Test batch request estimates."""

    @pytest.mark.asyncio
    async def test_every_request_estimated(self, service):
        """Verify one estimate per request with input plus output totals."""
        requests = [
            EstimateRequest(" ".join(["w"] * (i + 1)), engine="vllm", max_tokens=10 * i)
            for i in range(12)
        ]

        items = [item async for item in service.estimate_requests_batch(requests)]

        assert sorted(item.index for item in items) == list(range(12))
        for item in items:
            assert item.ok
            assert item.result.model == "gpt-3.5-turbo"
            assert item.result.input_tokens == item.index + 1
            assert item.result.output_tokens == 10 * item.index
            assert item.result.estimated_cost == calculate_cost(
                "gpt-3.5-turbo", item.index + 1, 10 * item.index
            )

    @pytest.mark.asyncio
    async def test_default_output_budget(self, service):
        """Verify requests without max_tokens use the per-model default."""
        items = [item async for item in service.estimate_requests_batch([EstimateRequest("hi", engine="sglang")])]

        assert items[0].result.output_tokens == 1024

    @pytest.mark.asyncio
    async def test_bad_request_becomes_error_item(self, service):
        """Verify an invalid request is reported without losing the others."""
        requests = [EstimateRequest("a"), EstimateRequest("b", max_tokens=-1), EstimateRequest("c")]

        items = [item async for item in service.estimate_requests_batch(requests)]

        assert len(items) == 3
        failed = [item for item in items if not item.ok]
        assert [item.index for item in failed] == [1]
        assert isinstance(failed[0].error, ValueError)

    @pytest.mark.asyncio
    async def test_default_concurrency(self, registry):
        """Verify at most five estimates run at once by default."""
        local = SlowLocalResolver(registry)
        service = TokenResolutionService(local, config=TokenConfig(cache=CacheConfig(enabled=False)))
        requests = [EstimateRequest(text) for text in _texts(20)]

        items = [item async for item in service.estimate_requests_batch(requests)]

        assert len(items) == 20
        assert 1 < local.max_in_flight <= DEFAULT_ESTIMATE_CONCURRENCY

    def test_invalid_concurrency_limit(self, service):
        """Verify a non-positive limit is rejected up front."""
        with pytest.raises(ValueError, match="concurrency_limit must be > 0"):
            service.estimate_requests_batch([EstimateRequest("a")], concurrency_limit=0)


class TestSummarize:
    """Test request/response usage summaries."""

    @pytest.mark.asyncio
    async def test_summary_merges_both_sides(self, service):
        """Verify tokens, costs and efficiency for a 2:1 response."""
        summary = await service.summarize("a b c d", "a b c d e f g h", "sglang")

        assert summary.model == "gpt-4"
        assert summary.total_input_tokens == 4
        assert summary.total_output_tokens == 8
        assert summary.total_tokens == 12
        assert summary.input_cost == calculate_cost("gpt-4", 4, 0)
        assert summary.output_cost == calculate_cost("gpt-4", 0, 8)
        assert summary.total_cost == calculate_cost("gpt-4", 4, 8)
        assert summary.efficiency_score == pytest.approx(80.0)
        assert summary.compression_ratio == 2.0

    @pytest.mark.asyncio
    async def test_total_cost_is_sum_of_rounded_parts(self, loader):
        """Verify total cost equals input cost plus output cost after rounding."""
        pricing = PricingConfig(models={
            "gpt-4": {"input": Decimal("0.000015"), "output": Decimal("0.000015")},
        })
        service = TokenResolutionService.from_config(TokenConfig(pricing=pricing), loader=loader)

        summary = await service.summarize("a", "b", "gpt-4")

        assert summary.input_cost == 2e-8
        assert summary.output_cost == 2e-8
        assert summary.total_cost == 4e-8
        assert summary.total_cost != calculate_cost("gpt-4", 1, 1, service.pricing)

    @pytest.mark.asyncio
    async def test_summary_fails_when_one_side_fails(self, loader):
        """Verify there are no partial summaries."""
        service = TokenResolutionService.from_config(
            TokenConfig(local=LocalConfig(max_text_length=10)), loader=loader
        )

        with pytest.raises(TextTooLargeError):
            await service.summarize("short", "this response is far too long", "gpt-4")


class TestBatch:
    """Test batch fan-out."""

    @pytest.mark.asyncio
    async def test_batch_completeness(self, service):
        """Verify every input yields exactly one item."""
        texts = _texts(25)

        items = [item async for item in service.resolve_batch(texts, "gpt-4", concurrency_limit=3)]

        assert sorted(item.index for item in items) == list(range(25))
        for item in items:
            assert item.ok
            assert item.result.input_tokens == item.index + 1

    @pytest.mark.asyncio
    async def test_batch_reports_item_errors(self, loader):
        """Verify a failing item becomes an error marker, not a lost result."""
        service = TokenResolutionService.from_config(
            TokenConfig(local=LocalConfig(max_text_length=20)), loader=loader
        )
        texts = ["ok one", "x" * 50, "ok two"]

        items = [item async for item in service.resolve_batch(texts, "gpt-4")]

        assert len(items) == 3
        failed = [item for item in items if not item.ok]
        assert len(failed) == 1
        assert failed[0].index == 1
        assert isinstance(failed[0].error, TextTooLargeError)

    @pytest.mark.asyncio
    async def test_batch_respects_concurrency_limit(self, registry):
        """Verify no more than concurrency_limit resolutions run at once."""
        local = SlowLocalResolver(registry)
        service = TokenResolutionService(local, config=TokenConfig(cache=CacheConfig(enabled=False)))

        items = [item async for item in service.resolve_batch(_texts(12), "gpt-4", concurrency_limit=2)]

        assert len(items) == 12
        assert local.max_in_flight <= 2

    @pytest.mark.asyncio
    async def test_small_buffer_still_completes(self, registry):
        """Verify a one-slot buffer stalls producers without losing items."""
        local = SlowLocalResolver(registry, delay=0)
        config = TokenConfig(batch=BatchConfig(buffer_size=1), cache=CacheConfig(enabled=False))
        service = TokenResolutionService(local, config=config)

        items = []
        async for item in service.resolve_batch(_texts(10), "gpt-4", concurrency_limit=4):
            await asyncio.sleep(0.001)
            items.append(item)

        assert len(items) == 10

    @pytest.mark.asyncio
    async def test_stalled_consumer_stops_new_work(self, registry):
        """Verify a consumer that stops reading caps the resolutions started."""
        local = SlowLocalResolver(registry, delay=0)
        config = TokenConfig(batch=BatchConfig(buffer_size=2), cache=CacheConfig(enabled=False))
        service = TokenResolutionService(local, config=config)

        batch = service.resolve_batch(_texts(100), "gpt-4", concurrency_limit=3)
        await batch.__anext__()
        await asyncio.sleep(0.05)
        started = local.started
        await asyncio.sleep(0.05)

        # one consumed, a full buffer, and one blocked worker per slot
        assert started <= 1 + 2 + 3
        assert local.started == started
        await batch.aclose()

    @pytest.mark.asyncio
    async def test_closing_early_cancels_outstanding_work(self, registry):
        """Verify closing the iterator stops scheduling new items."""
        local = SlowLocalResolver(registry, delay=0.05)
        config = TokenConfig(batch=BatchConfig(buffer_size=1), cache=CacheConfig(enabled=False))
        service = TokenResolutionService(local, config=config)

        batch = service.resolve_batch(_texts(50), "gpt-4", concurrency_limit=2)
        first = await batch.__anext__()
        await batch.aclose()
        started = local.started
        await asyncio.sleep(0.1)

        assert first.ok
        assert started < 50
        assert local.started == started
        assert local.in_flight == 0

    @pytest.mark.asyncio
    async def test_empty_batch(self, service):
        """Verify an empty batch yields nothing."""
        assert [item async for item in service.resolve_batch([], "gpt-4")] == []

    @pytest.mark.asyncio
    async def test_async_iterable_input(self, service):
        """Verify batches accept async iterables."""
        async def source():
            for text in _texts(5):
                yield text

        items = [item async for item in service.resolve_batch(source(), "gpt-4")]

        assert len(items) == 5

    def test_invalid_concurrency_limit(self, service):
        """Verify a non-positive limit is rejected up front."""
        with pytest.raises(ValueError, match="concurrency_limit must be > 0"):
            service.resolve_batch(["a"], "gpt-4", concurrency_limit=0)


class TestStream:
    """Test windowed stream resolution."""

    @pytest.mark.asyncio
    async def test_stream_completeness_and_indexes(self, service):
        """Verify every streamed text yields one item at its stream position."""
        texts = _texts(23)

        async def source():
            for text in texts:
                await asyncio.sleep(0)
                yield text

        items = [item async for item in service.resolve_stream(source(), "gpt-4", window_size=5)]

        assert sorted(item.index for item in items) == list(range(23))
        for item in items:
            assert item.text == texts[item.index]

    @pytest.mark.asyncio
    async def test_stream_limits_concurrent_windows(self, registry):
        """Verify window concurrency bounds total in-flight work."""
        local = SlowLocalResolver(registry)
        service = TokenResolutionService(local, config=TokenConfig(cache=CacheConfig(enabled=False)))

        items = [
            item async for item in service.resolve_stream(
                _texts(20), "gpt-4", window_size=3, window_concurrency=2, concurrency_limit=1
            )
        ]

        assert len(items) == 20
        assert local.max_in_flight <= 2

    @pytest.mark.asyncio
    async def test_stream_input_failure_propagates(self, service):
        """Verify a failing input stream surfaces to the consumer."""
        async def source():
            yield "a"
            yield "b"
            raise RuntimeError("upstream closed")

        with pytest.raises(RuntimeError, match="upstream closed"):
            async for _ in service.resolve_stream(source(), "gpt-4", window_size=1):
                pass

    @pytest.mark.asyncio
    async def test_stalled_consumer_stops_pulling_input(self, loader):
        """Verify the source stops advancing while the consumer is not reading."""
        config = TokenConfig(batch=BatchConfig(stream_buffer_size=2))
        service = TokenResolutionService.from_config(config, loader=loader)
        pulled = []

        async def source():
            for text in _texts(500):
                pulled.append(text)
                await asyncio.sleep(0)
                yield text

        stream = service.resolve_stream(source(), "gpt-4", window_size=5, window_concurrency=2)
        await stream.__anext__()
        await asyncio.sleep(0.05)
        pulled_while_stalled = len(pulled)
        await asyncio.sleep(0.05)

        # two windows in progress plus the window waiting for a slot
        assert pulled_while_stalled <= 3 * 5
        assert len(pulled) == pulled_while_stalled
        await stream.aclose()

    def test_invalid_window_size(self, service):
        """Verify a non-positive window size is rejected up front."""
        with pytest.raises(ValueError, match="window_size must be > 0"):
            service.resolve_stream(["a"], "gpt-4", window_size=0)


class TestHealthAndStats:
    """Test health reporting and stats snapshots."""

    @pytest.mark.asyncio
    async def test_health_without_remote(self, service):
        """Verify overall health follows the local resolver."""
        status = await service.health_status()

        assert status.local_healthy is True
        assert status.remote_enabled is False
        assert status.remote_healthy is False
        assert status.overall_healthy is True

    @pytest.mark.asyncio
    async def test_remote_failure_does_not_affect_overall_health(self, registry, make_session):
        """Verify a down remote provider leaves overall health green."""
        local = LocalResolver(registry=registry)
        remote_config = RemoteConfig(
            enabled=True,
            openai=ProviderConfig(enabled=True, base_url="https://tok.example"),
        )
        remote = RemoteResolver(local, remote_config, session=make_session([(500, {})]))
        service = TokenResolutionService(local, remote=remote)

        status = await service.health_status()

        assert status.remote_enabled is True
        assert status.remote_healthy is False
        assert status.overall_healthy is True

    @pytest.mark.asyncio
    async def test_unhealthy_local(self, make_loader):
        """Verify an unusable local encoder makes the service unhealthy."""
        registry = EncoderRegistry(loader=make_loader(unavailable={"cl100k_base"}))
        service = TokenResolutionService(LocalResolver(registry=registry))

        assert (await service.health_status()).overall_healthy is False

    @pytest.mark.asyncio
    async def test_combined_stats(self, service):
        """Verify totals across resolvers."""
        await service.resolve("one", "gpt-4")
        await service.resolve("two", "gpt-4")

        stats = service.stats()
        assert stats.remote is None
        assert stats.total_calculations == 2

    def test_from_config_with_remote(self, loader, make_session):
        """Verify enabling remote wires a RemoteResolver."""
        config = TokenConfig(remote=RemoteConfig(enabled=True))

        service = TokenResolutionService.from_config(config, session=make_session([]), loader=loader)

        assert service.remote_enabled is True
        assert service.remote.local is service.local
