"""
Request limit guardrails.

Checks an estimated request against token and cost ceilings before it is
dispatched to an inference engine.

Enforcement Order:
1. Token ceiling - Requests the engine would reject or truncate
2. Cost ceiling - Prevents catastrophic single-request costs
"""

from typing import Optional

from .token_counter import TokenResult, ValidationResult

DEFAULT_MAX_TOKENS = 8192
DEFAULT_MAX_COST = 1.0


def check_cost_limit(token_result: TokenResult, max_cost: float) -> bool:
    """True if the estimated cost is within max_cost."""
    return token_result.estimated_cost <= max_cost


def check_request_limits(
    token_result: TokenResult,
    max_tokens: Optional[int] = DEFAULT_MAX_TOKENS,
    max_cost: Optional[float] = DEFAULT_MAX_COST,
) -> ValidationResult:
    """
    Check a request estimate against its ceilings in order of precedence.

    The first violated ceiling decides the message. The result carries the
    token ceiling as max_allowed and the cost ceiling as max_cost.

    Args:
        token_result: Request-time estimate (input plus expected output)
        max_tokens: Token ceiling; None uses DEFAULT_MAX_TOKENS
        max_cost: Cost ceiling in USD; None uses DEFAULT_MAX_COST

    Returns:
        ValidationResult; call raise_for_limit() to turn a violation into
        TokenLimitExceededError
    """
    if max_tokens is None:
        max_tokens = DEFAULT_MAX_TOKENS
    if max_cost is None:
        max_cost = DEFAULT_MAX_COST

    total = token_result.total_tokens
    cost = token_result.estimated_cost

    # 1. Token ceiling
    if total > max_tokens:
        return ValidationResult(
            valid=False,
            token_result=token_result,
            max_allowed=max_tokens,
            max_cost=max_cost,
            message=f"Request exceeds token limit: {total} > {max_tokens}",
        )

    # 2. Cost ceiling
    if not check_cost_limit(token_result, max_cost):
        return ValidationResult(
            valid=False,
            token_result=token_result,
            max_allowed=max_tokens,
            max_cost=max_cost,
            message=f"Request exceeds cost limit: ${cost:.4f} > ${max_cost:.4f}",
        )

    return ValidationResult(
        valid=True,
        token_result=token_result,
        max_allowed=max_tokens,
        max_cost=max_cost,
        message=f"Request within limits: {total} tokens, ${cost:.4f}",
    )
