"""
Local token counting with BPE encoders.

Deterministic and fast; the resolver of last resort when remote
tokenization is unavailable.
"""

import asyncio
import threading
import time
from typing import Optional

from token_cost_guard.config.loader import LocalConfig
from token_cost_guard.utils.logger import get_logger
from .encoders import EncoderRegistry
from .errors import TextTooLargeError
from .models import normalize_model
from .pricing import DEFAULT_PRICING_TABLE, PricingTable, calculate_input_cost
from .token_counter import ServiceStats, TokenizationMethod, TokenResult, truncate_preview

HEALTH_CHECK_TEXT = "Hello, world!"


class LocalResolver:
    """Counts tokens by encoding the full text with the model's encoder."""

    service_type = "Local BPE"

    def __init__(
        self,
        registry: Optional[EncoderRegistry] = None,
        pricing: PricingTable = DEFAULT_PRICING_TABLE,
        config: Optional[LocalConfig] = None,
    ):
        """
        Args:
            registry: Encoder registry (a new one using config's default encoding if omitted)
            pricing: Pricing table for input cost
            config: Local limits; defaults apply if omitted
        """
        self.config = config or LocalConfig()
        self.registry = registry or EncoderRegistry(default_encoding=self.config.default_encoding)
        self.pricing = pricing
        self.logger = get_logger(self.__class__.__name__)

        self._stats_lock = threading.Lock()
        self._total_calculations = 0
        self._total_processing_ms = 0.0

    @property
    def max_text_length(self) -> int:
        return self.config.max_text_length

    def check_length(self, text: str) -> None:
        """Raise TextTooLargeError if text is over the hard length limit."""
        if text is not None and len(text) > self.config.max_text_length:
            raise TextTooLargeError(len(text), self.config.max_text_length)

    def compute_sync(self, text: str, model: Optional[str]) -> TokenResult:
        """Count tokens for text on the calling thread.

        Args:
            text: Text to tokenize; None or empty yields a zero result
            model: Engine or model identifier

        Returns:
            TokenResult with input tokens and input cost

        Raises:
            TextTooLargeError: If text is longer than max_text_length
            UnsupportedModelError: If no encoder can be loaded
        """
        canonical = normalize_model(model)
        if not text:
            return self._empty_result(canonical)

        self.check_length(text)

        start = time.perf_counter()
        encoder = self.registry.get_encoder(canonical)
        token_count = len(encoder.encode(text, disallowed_special=()))
        elapsed_ms = (time.perf_counter() - start) * 1000.0

        with self._stats_lock:
            self._total_calculations += 1
            self._total_processing_ms += elapsed_ms

        self.logger.debug(f"Counted {token_count} tokens for {canonical} in {elapsed_ms:.2f}ms")

        return TokenResult(
            text=truncate_preview(text),
            model=canonical,
            input_tokens=token_count,
            output_tokens=0,
            total_tokens=token_count,
            estimated_cost=calculate_input_cost(canonical, token_count, self.pricing),
            processing_time_ms=elapsed_ms,
            method=TokenizationMethod.LOCAL_BPE,
        )

    async def compute_async(self, text: str, model: Optional[str]) -> TokenResult:
        """Same contract as compute_sync, run in a worker thread."""
        return await asyncio.to_thread(self.compute_sync, text, model)

    def supports_model(self, model: Optional[str]) -> bool:
        return self.registry.supports_model(model)

    async def is_healthy(self) -> bool:
        """Tokenize a short health-check text; any failure reports unhealthy."""
        try:
            await self.compute_async(HEALTH_CHECK_TEXT, None)
            return True
        except Exception as e:
            self.logger.warning(f"Local health check failed: {e}")
            return False

    def stats(self) -> ServiceStats:
        with self._stats_lock:
            calculations = self._total_calculations
            total_ms = self._total_processing_ms
        return ServiceStats(
            service_type=self.service_type,
            total_calculations=calculations,
            cache_hits=0,
            cache_misses=0,
            average_processing_time_ms=total_ms / calculations if calculations else 0.0,
        )

    def _empty_result(self, canonical: str) -> TokenResult:
        return TokenResult(
            text="",
            model=canonical,
            input_tokens=0,
            output_tokens=0,
            total_tokens=0,
            estimated_cost=0.0,
            processing_time_ms=0.0,
            method=TokenizationMethod.LOCAL_BPE,
        )
