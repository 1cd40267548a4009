"""
Error taxonomy for token accounting.

Hard input errors and unsupported models propagate to the caller;
limit violations carry the requested and allowed values for diagnostics.
Remote provider failures never appear here: they are absorbed by fallback.
"""


class TokenAccountingError(Exception):
    """Base class for errors surfaced by token resolution."""


class TextTooLargeError(TokenAccountingError):
    """Raised when text exceeds the configured maximum length.

    This is a hard limit: never retried and never routed to a fallback.
    """
    def __init__(self, length: int, max_length: int):
        super().__init__(
            f"Text length {length:,} exceeds maximum allowed: {max_length:,}"
        )
        self.length = length
        self.max_length = max_length


class UnsupportedModelError(TokenAccountingError):
    """Raised when neither a model-specific nor the default encoding can be loaded."""
    def __init__(self, model: str, encoding: str):
        super().__init__(f"No encoder available for model {model!r} (encoding {encoding!r})")
        self.model = model
        self.encoding = encoding


class TokenLimitExceededError(TokenAccountingError):
    """Raised when a request exceeds its token or cost ceiling."""
    def __init__(self, message: str, requested: int, allowed: int, model: str):
        super().__init__(
            f"{message} (requested: {requested} tokens, maximum: {allowed} tokens, model: {model})"
        )
        self.requested = requested
        self.allowed = allowed
        self.model = model

    @property
    def excess_ratio(self) -> float:
        """Requested tokens as a multiple of the allowed amount."""
        if self.allowed == 0:
            return 0.0
        return self.requested / self.allowed
