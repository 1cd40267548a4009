"""
Token counting results and usage summaries.

Immutable value types produced by the resolvers and the resolution service.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional

from .errors import TokenLimitExceededError

PREVIEW_LENGTH = 100


class TokenizationMethod(Enum):
    """How a token count was obtained."""
    LOCAL_BPE = "local-bpe"
    EXTERNAL_API_A = "external-api-A"  # OpenAI-style tokenizer endpoint
    EXTERNAL_API_B = "external-api-B"  # Hugging Face inference endpoint
    SIMPLE_ESTIMATE = "simple-estimate"

    @property
    def description(self) -> str:
        return _METHOD_DESCRIPTIONS[self]


_METHOD_DESCRIPTIONS = {
    TokenizationMethod.LOCAL_BPE: "Local BPE tokenizer",
    TokenizationMethod.EXTERNAL_API_A: "OpenAI tokenizer API",
    TokenizationMethod.EXTERNAL_API_B: "Hugging Face tokenizer API",
    TokenizationMethod.SIMPLE_ESTIMATE: "Simple character estimate",
}


def truncate_preview(text: str) -> str:
    """Return a diagnostic preview of at most PREVIEW_LENGTH characters plus ellipsis."""
    if text is None:
        return ""
    if len(text) <= PREVIEW_LENGTH:
        return text
    return text[:PREVIEW_LENGTH] + "..."


@dataclass(frozen=True)
class TokenResult:
    """Token count and cost for one text/model pair.

    Holds only a preview of the text so results stay small in caches and logs.
    Never mutated: derived results are new instances.
    """
    text: str
    model: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    estimated_cost: float
    processing_time_ms: float
    method: TokenizationMethod
    calculated_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        """Validate counts are consistent and non-negative."""
        if self.input_tokens < 0:
            raise ValueError("input_tokens cannot be negative")
        if self.output_tokens < 0:
            raise ValueError("output_tokens cannot be negative")
        if self.total_tokens != self.input_tokens + self.output_tokens:
            raise ValueError("total_tokens must equal input_tokens + output_tokens")
        if self.estimated_cost < 0:
            raise ValueError("estimated_cost cannot be negative")
        if self.processing_time_ms < 0:
            raise ValueError("processing_time_ms cannot be negative")

    def with_output(self, output_tokens: int, estimated_cost: float) -> "TokenResult":
        """Copy with a declared output token count and a new total cost."""
        return replace(
            self,
            output_tokens=output_tokens,
            total_tokens=self.input_tokens + output_tokens,
            estimated_cost=estimated_cost,
        )

    def as_output(self, estimated_cost: float) -> "TokenResult":
        """Copy that counts the measured tokens as output instead of input."""
        return replace(
            self,
            input_tokens=0,
            output_tokens=self.input_tokens,
            total_tokens=self.input_tokens,
            estimated_cost=estimated_cost,
        )

    @property
    def average_chars_per_token(self) -> float:
        if self.input_tokens == 0:
            return 0.0
        return len(self.text) / self.input_tokens

    @property
    def token_density(self) -> float:
        if not self.text:
            return 0.0
        return self.input_tokens / len(self.text)

    @property
    def cost_per_character(self) -> float:
        if not self.text:
            return 0.0
        return self.estimated_cost / len(self.text)


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of checking a TokenResult against a ceiling.

    max_allowed is always the token ceiling; max_cost is the cost ceiling
    when one was checked.
    """
    valid: bool
    token_result: TokenResult
    max_allowed: int
    message: str
    max_cost: Optional[float] = None

    def raise_for_limit(self) -> None:
        """Raise TokenLimitExceededError when the check failed."""
        if not self.valid:
            raise TokenLimitExceededError(
                self.message,
                requested=self.token_result.total_tokens,
                allowed=self.max_allowed,
                model=self.token_result.model,
            )


def efficiency_score(input_tokens: int, output_tokens: int) -> float:
    """Score the output/input token ratio on a 0-100 scale.

    A 1:1 ratio scores 100. Lower ratios scale linearly down to 0; higher
    ratios lose 20 points per unit above 1, clamped at 0.
    """
    if input_tokens == 0:
        return 0.0
    ratio = output_tokens / input_tokens
    if ratio <= 1.0:
        return ratio * 100
    return max(0.0, 100 - (ratio - 1) * 20)


@dataclass(frozen=True)
class UsageSummary:
    """Aggregated tokens and costs for one request/response pair."""
    total_input_tokens: int
    total_output_tokens: int
    total_tokens: int
    input_cost: float
    output_cost: float
    total_cost: float
    total_processing_time_ms: float
    model: str
    efficiency_score: float

    @property
    def cost_efficiency(self) -> float:
        """Cost per 1K tokens."""
        if self.total_tokens == 0:
            return 0.0
        return self.total_cost / self.total_tokens * 1000

    @property
    def compression_ratio(self) -> float:
        """Output tokens per input token."""
        if self.total_input_tokens == 0:
            return 0.0
        return self.total_output_tokens / self.total_input_tokens


@dataclass(frozen=True)
class ServiceStats:
    """Point-in-time counters for one resolver."""
    service_type: str
    total_calculations: int
    cache_hits: int
    cache_misses: int
    average_processing_time_ms: float
    api_errors: int = 0
    fallback_usages: int = 0
