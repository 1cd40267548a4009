"""
Encoder registry for local BPE tokenization.

Maps canonical model names to tiktoken encodings. Encodings load their
vocabulary tables on construction, so each scheme is built at most once per
registry and reused for the life of the process.
"""

import threading
from typing import Callable, Dict, Optional, Protocol, Sequence

import tiktoken

from token_cost_guard.utils.logger import get_logger
from .errors import UnsupportedModelError
from .models import normalize_model

DEFAULT_ENCODING = "cl100k_base"

MODEL_ENCODINGS: Dict[str, str] = {
    "gpt-3.5-turbo": "cl100k_base",
    "gpt-4": "cl100k_base",
    "gpt-4-turbo": "cl100k_base",
    "text-davinci-003": "p50k_base",
    "text-davinci-002": "p50k_base",
    "code-davinci-002": "p50k_base",
    # Claude has no public BPE table; cl100k_base is the closest approximation
    "claude-3-haiku": "cl100k_base",
    "claude-3-sonnet": "cl100k_base",
    "claude-3-opus": "cl100k_base",
}


class Encoder(Protocol):
    """Anything that turns text into a sequence of token ids."""

    def encode(self, text: str, **kwargs) -> Sequence[int]:
        ...


class EncoderRegistry:
    """Lazily builds and caches one encoder per encoding scheme.

    Lookups of already-built encoders take no lock; construction is
    serialized so racing first uses collapse to a single build.
    """

    def __init__(
        self,
        default_encoding: str = DEFAULT_ENCODING,
        loader: Optional[Callable[[str], Encoder]] = None,
    ):
        """
        Args:
            default_encoding: Encoding used for models without a mapping
            loader: Builds an encoder from an encoding name (tiktoken by default)
        """
        self.default_encoding = default_encoding
        self._loader = loader or tiktoken.get_encoding
        self._encoders: Dict[str, Encoder] = {}
        self._lock = threading.Lock()
        self.logger = get_logger(self.__class__.__name__)

    def encoding_name_for(self, model: Optional[str]) -> str:
        """Encoding scheme for a model, or the default scheme if unmapped."""
        return MODEL_ENCODINGS.get(normalize_model(model), self.default_encoding)

    def supports_model(self, model: Optional[str]) -> bool:
        """True if the model has an explicit encoding mapping."""
        return normalize_model(model) in MODEL_ENCODINGS

    def get_encoder(self, model: Optional[str]) -> Encoder:
        """Return the encoder for a model, falling back to the default encoding.

        Args:
            model: Engine or model identifier

        Returns:
            Cached encoder instance

        Raises:
            UnsupportedModelError: If neither the model's nor the default encoding loads
        """
        encoding_name = self.encoding_name_for(model)
        try:
            return self._get_or_create(encoding_name)
        except UnsupportedModelError:
            if encoding_name == self.default_encoding:
                raise UnsupportedModelError(normalize_model(model), encoding_name)
            self.logger.warning(
                f"Encoding {encoding_name} unavailable for {model}, using {self.default_encoding}"
            )
        try:
            return self._get_or_create(self.default_encoding)
        except UnsupportedModelError:
            raise UnsupportedModelError(normalize_model(model), self.default_encoding)

    def loaded_encodings(self) -> Sequence[str]:
        return sorted(self._encoders)

    def _get_or_create(self, encoding_name: str) -> Encoder:
        encoder = self._encoders.get(encoding_name)
        if encoder is not None:
            return encoder

        with self._lock:
            encoder = self._encoders.get(encoding_name)
            if encoder is not None:
                return encoder
            try:
                encoder = self._loader(encoding_name)
            except (ValueError, KeyError, OSError) as e:
                self.logger.error(f"Failed to load encoding {encoding_name}: {e}")
                raise UnsupportedModelError("", encoding_name) from e
            self._encoders[encoding_name] = encoder
            self.logger.debug(f"Initialized encoding {encoding_name}")
            return encoder
