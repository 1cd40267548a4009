"""
Remote token counting through external tokenizer APIs.

Providers are tried with bounded exponential backoff. Any provider failure
ends in the local resolver, so an external outage never reaches the caller;
only local failures (text too large, no encoder) propagate.
"""

import asyncio
import threading
import time
from dataclasses import replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import aiohttp

from token_cost_guard.config.loader import ProviderConfig, RemoteConfig
from token_cost_guard.utils.logger import get_logger
from .local_resolver import HEALTH_CHECK_TEXT, LocalResolver
from .models import DEFAULT_MODEL, is_gpt_family, normalize_model
from .pricing import calculate_input_cost
from .token_counter import ServiceStats, TokenizationMethod, TokenResult, truncate_preview


class ProviderKind(Enum):
    """Remote tokenization providers, in priority order."""
    OPENAI = "openai"
    HUGGINGFACE = "huggingface"

    @property
    def method(self) -> TokenizationMethod:
        if self is ProviderKind.OPENAI:
            return TokenizationMethod.EXTERNAL_API_A
        return TokenizationMethod.EXTERNAL_API_B


class RemoteProviderError(Exception):
    """A provider call failed: timeout, transport error, bad status or payload."""


_HUGGINGFACE_MODELS: Dict[str, str] = {
    "gpt-3.5-turbo": "gpt2",
    "gpt-4": "gpt2",
    "claude": "bert-base-uncased",
}


def openai_model_for(model: str) -> str:
    """Model name sent to the OpenAI tokenizer endpoint."""
    canonical = normalize_model(model)
    return canonical if is_gpt_family(canonical) else DEFAULT_MODEL


def huggingface_model_for(model: str) -> str:
    """Hugging Face repository used to tokenize for a canonical model."""
    canonical = normalize_model(model)
    if canonical in _HUGGINGFACE_MODELS:
        return _HUGGINGFACE_MODELS[canonical]
    if canonical.startswith("claude"):
        return _HUGGINGFACE_MODELS["claude"]
    return "gpt2"


class RemoteResolver:
    """Counts tokens via an external API, falling back to a LocalResolver."""

    service_type = "External API (OpenAI/HuggingFace)"

    def __init__(
        self,
        local: LocalResolver,
        config: Optional[RemoteConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Args:
            local: Fallback resolver; also enforces the text length limit
            config: Provider and retry settings
            session: Shared aiohttp session; one is created lazily if omitted
            sleep: Backoff scheduler, replaceable in tests
        """
        self.local = local
        self.config = config or RemoteConfig()
        self.pricing = local.pricing
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep
        self.logger = get_logger(self.__class__.__name__)

        self._stats_lock = threading.Lock()
        self._total_calculations = 0
        self._total_processing_ms = 0.0
        self._api_errors = 0
        self._fallback_usages = 0

        for kind in self.configured_providers():
            self.logger.info(f"{kind.value} tokenizer client configured")

    def configured_providers(self) -> Tuple[ProviderKind, ...]:
        providers = []
        if self.config.openai.enabled:
            providers.append(ProviderKind.OPENAI)
        if self.config.huggingface.enabled:
            providers.append(ProviderKind.HUGGINGFACE)
        return tuple(providers)

    def select_provider(self, model: Optional[str]) -> Optional[ProviderKind]:
        """Pick OpenAI for GPT-family models, Hugging Face otherwise, None if neither fits."""
        providers = self.configured_providers()
        if ProviderKind.OPENAI in providers and is_gpt_family(model):
            return ProviderKind.OPENAI
        if ProviderKind.HUGGINGFACE in providers:
            return ProviderKind.HUGGINGFACE
        return None

    async def compute_async(self, text: str, model: Optional[str]) -> TokenResult:
        """Count tokens remotely, falling back to local computation on any provider failure.

        Args:
            text: Text to tokenize; None or empty yields a zero estimate
            model: Engine or model identifier

        Returns:
            TokenResult tagged with the provider method, or local-bpe after fallback

        Raises:
            TextTooLargeError: If text is longer than the local limit
            UnsupportedModelError: If fallback is needed and no encoder loads
        """
        canonical = normalize_model(model)
        if not text:
            return self._empty_result(canonical)

        self.local.check_length(text)

        start = time.perf_counter()
        with self._stats_lock:
            self._total_calculations += 1

        provider = self.select_provider(canonical)
        if provider is None:
            self.logger.debug(f"No remote provider for {canonical}, using local tokenizer")
            return await self._fallback(text, canonical, start)

        try:
            token_count = await self._call_with_retry(provider, text, canonical)
        except RemoteProviderError as e:
            with self._stats_lock:
                self._api_errors += 1
            self.logger.warning(f"External API call failed ({provider.value}): {e}")
            return await self._fallback(text, canonical, start)

        elapsed_ms = self._record_time(start)
        return TokenResult(
            text=truncate_preview(text),
            model=canonical,
            input_tokens=token_count,
            output_tokens=0,
            total_tokens=token_count,
            estimated_cost=calculate_input_cost(canonical, token_count, self.pricing),
            processing_time_ms=elapsed_ms,
            method=provider.method,
        )

    async def is_healthy(self) -> bool:
        """Check the first configured provider once, without retries."""
        providers = self.configured_providers()
        if not providers:
            return False
        provider = self.select_provider(DEFAULT_MODEL) or providers[0]
        try:
            await self._request_token_count(provider, HEALTH_CHECK_TEXT, DEFAULT_MODEL)
            return True
        except RemoteProviderError as e:
            self.logger.warning(f"Remote health check failed ({provider.value}): {e}")
            return False

    def stats(self) -> ServiceStats:
        with self._stats_lock:
            calculations = self._total_calculations
            total_ms = self._total_processing_ms
            api_errors = self._api_errors
            fallbacks = self._fallback_usages
        return ServiceStats(
            service_type=self.service_type,
            total_calculations=calculations,
            cache_hits=0,
            cache_misses=calculations,
            average_processing_time_ms=total_ms / calculations if calculations else 0.0,
            api_errors=api_errors,
            fallback_usages=fallbacks,
        )

    async def close(self) -> None:
        """Close the HTTP session if this resolver created it."""
        if not self._owns_session or self._session is None:
            return
        if not self._session.closed:
            await self._session.close()
        self._session = None

    async def _fallback(self, text: str, canonical: str, start: float) -> TokenResult:
        with self._stats_lock:
            self._fallback_usages += 1
        self.logger.debug(f"Falling back to local token calculation for model: {canonical}")
        result = await self.local.compute_async(text, canonical)
        return replace(result, processing_time_ms=self._record_time(start))

    def _record_time(self, start: float) -> float:
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        with self._stats_lock:
            self._total_processing_ms += elapsed_ms
        return elapsed_ms

    async def _call_with_retry(self, provider: ProviderKind, text: str, model: str) -> int:
        attempts = self.config.retry_attempts + 1
        last_error: Optional[RemoteProviderError] = None
        for attempt in range(attempts):
            try:
                return await self._request_token_count(provider, text, model)
            except RemoteProviderError as e:
                last_error = e
                if attempt + 1 >= attempts:
                    break
                delay = self.config.retry_base_delay * (2 ** attempt)
                self.logger.debug(
                    f"{provider.value} attempt {attempt + 1}/{attempts} failed: {e}; retrying in {delay:.2f}s"
                )
                await self._sleep(delay)
        raise last_error

    def _provider_config(self, provider: ProviderKind) -> ProviderConfig:
        if provider is ProviderKind.OPENAI:
            return self.config.openai
        return self.config.huggingface

    def _build_request(
        self, provider: ProviderKind, text: str, model: str
    ) -> Tuple[str, Dict[str, Any]]:
        base_url = self._provider_config(provider).base_url.rstrip("/")
        if provider is ProviderKind.OPENAI:
            return f"{base_url}/tokenizer", {"model": openai_model_for(model), "input": text}
        return (
            f"{base_url}/models/{huggingface_model_for(model)}",
            {"inputs": text, "options": {"use_cache": False}},
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _request_token_count(self, provider: ProviderKind, text: str, model: str) -> int:
        provider_config = self._provider_config(provider)
        timeout = self.config.timeout_for(provider_config)
        url, payload = self._build_request(provider, text, model)
        headers = {"Content-Type": "application/json"}
        if provider_config.api_token:
            headers["Authorization"] = f"Bearer {provider_config.api_token}"

        session = await self._get_session()
        try:
            async with session.post(
                url,
                json=payload,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                if response.status != 200:
                    raise RemoteProviderError(f"{url} returned status {response.status}")
                data = await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise RemoteProviderError(f"{url} timed out after {timeout}s") from e
        except aiohttp.ClientError as e:
            raise RemoteProviderError(f"{url} request failed: {e}") from e
        except ValueError as e:
            raise RemoteProviderError(f"{url} returned invalid JSON: {e}") from e

        return self._parse_token_count(provider, data)

    @staticmethod
    def _parse_token_count(provider: ProviderKind, data: Any) -> int:
        if provider is ProviderKind.OPENAI:
            tokens = data.get("tokens") if isinstance(data, dict) else None
            if not isinstance(tokens, list):
                raise RemoteProviderError("No tokens field (or not a list) in tokenizer response")
            return len(tokens)

        if isinstance(data, dict):
            for key in ("token_count", "tokenCount"):
                count = data.get(key)
                if isinstance(count, int) and not isinstance(count, bool) and count >= 0:
                    return count
            tokens = data.get("tokens")
            if isinstance(tokens, list):
                return len(tokens)
        elif isinstance(data, list):
            return len(data)
        raise RemoteProviderError("No token count in Hugging Face response")

    def _empty_result(self, canonical: str) -> TokenResult:
        return TokenResult(
            text="",
            model=canonical,
            input_tokens=0,
            output_tokens=0,
            total_tokens=0,
            estimated_cost=0.0,
            processing_time_ms=0.0,
            method=TokenizationMethod.SIMPLE_ESTIMATE,
        )


__all__ = [
    "ProviderKind",
    "RemoteProviderError",
    "RemoteResolver",
    "huggingface_model_for",
    "openai_model_for",
]
