"""
Metered LLM client.

Wraps an inference dispatch call with a request-time token estimate, limit
enforcement and a usage summary of the completed exchange.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Optional

from openai import OpenAI

from ..config.loader import LimitsConfig
from ..core.guardrails import check_request_limits
from ..core.models import normalize_model
from ..core.resolution import TokenResolutionService
from ..core.token_counter import TokenResult, UsageSummary
from ..utils.logger import get_logger

# (prompt, engine, max_tokens, temperature) -> generated text
Dispatch = Callable[[str, Optional[str], Optional[int], Optional[float]], str]


@dataclass(frozen=True)
class MeteredCompletion:
    """Generated text with its request estimate, measured response and usage."""
    text: str
    request_tokens: TokenResult
    response_tokens: TokenResult
    usage: UsageSummary


class OpenAIDispatcher:
    """Dispatch over OpenAI chat completions.

    API errors are propagated without modification.
    """

    def __init__(self, model: Optional[str] = None, client: Optional[OpenAI] = None):
        """
        Args:
            model: OpenAI model name; the normalized engine is used if omitted
            client: Configured OpenAI client (a default client if omitted)
        """
        self.model = model
        self.client = client or OpenAI()

    def __call__(
        self,
        prompt: str,
        engine: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        response = self.client.chat.completions.create(
            model=self.model or normalize_model(engine),
            messages=[{"role": "user", "content": prompt}],
            max_tokens=max_tokens,
            temperature=temperature,
        )
        if not response.choices:
            raise ValueError("OpenAI response missing choices")
        return response.choices[0].message.content or ""


class MeteredLLMClient:
    """Estimates, limits and summarizes every generation it dispatches."""

    def __init__(
        self,
        service: TokenResolutionService,
        dispatch: Dispatch,
        limits: Optional[LimitsConfig] = None,
    ):
        """
        Args:
            service: Token resolution service used for all counting
            dispatch: Inference call returning generated text
            limits: Default ceilings (the service's configured limits if omitted)
        """
        self.service = service
        self.dispatch = dispatch
        self.limits = limits or service.config.limits
        self.logger = get_logger(self.__class__.__name__)

    async def generate(
        self,
        prompt: str,
        engine: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        token_ceiling: Optional[int] = None,
        cost_ceiling: Optional[float] = None,
    ) -> MeteredCompletion:
        """Generate a completion within token and cost ceilings.

        The output budget that was estimated and checked is the one sent to
        dispatch.

        Args:
            prompt: Prompt text (required)
            engine: Engine or model identifier
            max_tokens: Expected output tokens; per-model default if omitted
            temperature: Sampling temperature passed to dispatch
            token_ceiling: Max total tokens; configured limit if omitted
            cost_ceiling: Max estimated cost in USD; configured limit if omitted

        Returns:
            MeteredCompletion

        Raises:
            ValueError: If prompt is empty
            TokenLimitExceededError: If the estimate breaks a ceiling
            Dispatch errors: Propagated without modification
        """
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required and cannot be empty")

        start = time.perf_counter()
        estimate = await self.service.estimate_request(prompt, engine, max_tokens)
        check_request_limits(
            estimate,
            max_tokens=token_ceiling if token_ceiling is not None else self.limits.max_tokens_per_request,
            max_cost=cost_ceiling if cost_ceiling is not None else self.limits.max_cost_per_request,
        ).raise_for_limit()

        try:
            text = await asyncio.to_thread(
                self.dispatch, prompt, engine, estimate.output_tokens, temperature
            )
        except Exception as e:
            self.logger.error(f"Generation failed: engine={engine}, error={e}")
            raise

        request_measured, response_measured = await self.service.measure_exchange(
            prompt, text, estimate.model
        )
        usage = self.service.usage_summary(request_measured, response_measured)
        response_tokens = response_measured.as_output(usage.output_cost)

        elapsed_ms = (time.perf_counter() - start) * 1000.0
        self.logger.info(
            f"Generation complete: engine={engine}, totalTime={elapsed_ms:.0f}ms, "
            f"totalTokens={usage.total_tokens}, totalCost=${usage.total_cost:.4f}"
        )
        return MeteredCompletion(
            text=text,
            request_tokens=estimate,
            response_tokens=response_tokens,
            usage=usage,
        )
