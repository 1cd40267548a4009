"""
Configuration management and loading.

Handles tokenizer, remote provider, cache, concurrency and pricing settings.
"""

import os
import re
from dataclasses import dataclass, field, replace
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


_ENV_PATTERN = re.compile(r"^\$\{([A-Za-z_][A-Za-z0-9_]*)(?::([^}]*))?\}$")


@dataclass(frozen=True)
class LocalConfig:
    """Local BPE tokenization settings."""
    default_encoding: str = "cl100k_base"
    max_text_length: int = 100000
    parallel_threads: int = 4

    def __post_init__(self):
        """Validate local limits are positive."""
        if self.max_text_length <= 0:
            raise ValueError("max_text_length must be > 0")
        if self.parallel_threads <= 0:
            raise ValueError("parallel_threads must be > 0")


@dataclass(frozen=True)
class ProviderConfig:
    """Connection settings for one remote tokenization provider."""
    enabled: bool = False
    base_url: str = ""
    api_token: str = ""
    timeout: Optional[float] = None  # None inherits RemoteConfig.timeout

    def __post_init__(self):
        """Validate provider timeout and address."""
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("provider timeout must be > 0")
        if self.enabled and not self.base_url:
            raise ValueError("enabled provider requires base_url")


@dataclass(frozen=True)
class RemoteConfig:
    """Remote tokenization settings shared by all providers."""
    enabled: bool = False
    timeout: float = 10.0
    retry_attempts: int = 3
    retry_base_delay: float = 0.5
    concurrency_limit: int = 5
    openai: ProviderConfig = field(default_factory=lambda: ProviderConfig(
        base_url="https://api.openai.com/v1",
        timeout=10.0,
    ))
    huggingface: ProviderConfig = field(default_factory=lambda: ProviderConfig(
        base_url="https://api-inference.huggingface.co",
        timeout=15.0,
    ))

    def __post_init__(self):
        """Validate retry and concurrency settings."""
        if self.timeout <= 0:
            raise ValueError("remote timeout must be > 0")
        if self.retry_attempts < 0:
            raise ValueError("retry_attempts cannot be negative")
        if self.retry_base_delay < 0:
            raise ValueError("retry_base_delay cannot be negative")
        if self.concurrency_limit <= 0:
            raise ValueError("concurrency_limit must be > 0")

    def timeout_for(self, provider: ProviderConfig) -> float:
        """Provider timeout, or the shared remote timeout when the provider sets none."""
        return provider.timeout if provider.timeout is not None else self.timeout


@dataclass(frozen=True)
class CacheConfig:
    """Result cache sizing and expiry."""
    enabled: bool = True
    maximum_size: int = 10000
    expire_after_seconds: float = 3600.0

    def __post_init__(self):
        """Validate cache sizing."""
        if self.maximum_size <= 0:
            raise ValueError("maximum_size must be > 0")
        if self.expire_after_seconds <= 0:
            raise ValueError("expire_after_seconds must be > 0")


@dataclass(frozen=True)
class BatchConfig:
    """Buffering and windowing for batch and stream resolution."""
    buffer_size: int = 1000
    stream_window_size: int = 10
    stream_window_concurrency: int = 2
    stream_buffer_size: int = 500

    def __post_init__(self):
        """Validate buffer and window sizes are positive."""
        for name in ("buffer_size", "stream_window_size",
                     "stream_window_concurrency", "stream_buffer_size"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")


@dataclass(frozen=True)
class LimitsConfig:
    """Default per-request ceilings."""
    max_tokens_per_request: int = 8192
    max_cost_per_request: float = 1.0

    def __post_init__(self):
        """Validate ceilings are positive."""
        if self.max_tokens_per_request <= 0:
            raise ValueError("max_tokens_per_request must be > 0")
        if self.max_cost_per_request <= 0:
            raise ValueError("max_cost_per_request must be > 0")


def _default_model_prices() -> Dict[str, Dict[str, Decimal]]:
    return {
        "gpt-3.5-turbo": {"input": Decimal("0.0015"), "output": Decimal("0.002")},
        "gpt-4": {"input": Decimal("0.03"), "output": Decimal("0.06")},
        "gpt-4-turbo": {"input": Decimal("0.01"), "output": Decimal("0.03")},
        "text-davinci-003": {"input": Decimal("0.02"), "output": Decimal("0.02")},
        "claude-3-haiku": {"input": Decimal("0.00025"), "output": Decimal("0.00125")},
        "claude-3-sonnet": {"input": Decimal("0.003"), "output": Decimal("0.015")},
        "claude-3-opus": {"input": Decimal("0.015"), "output": Decimal("0.075")},
    }


@dataclass(frozen=True)
class PricingConfig:
    """Per-1K-token USD prices keyed by canonical model name."""
    models: Dict[str, Dict[str, Decimal]] = field(default_factory=_default_model_prices)
    default: Dict[str, Decimal] = field(default_factory=lambda: {
        "input": Decimal("0.002"),
        "output": Decimal("0.002"),
    })


@dataclass(frozen=True)
class TokenConfig:
    """Complete token accounting configuration."""
    local: LocalConfig = field(default_factory=LocalConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)


def load_token_config(path: str) -> TokenConfig:
    """Load and validate token accounting configuration from a YAML file.

    Every section is optional and falls back to its defaults, but keys that
    are present are validated strictly so a typo never silently disables a
    limit or a provider.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated TokenConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Token config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = {'local', 'remote', 'cache', 'batch', 'limits', 'pricing'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    return TokenConfig(
        local=_parse_local(_section(raw_config, 'local')),
        remote=_parse_remote(_section(raw_config, 'remote')),
        cache=_parse_cache(_section(raw_config, 'cache')),
        batch=_parse_batch(_section(raw_config, 'batch')),
        limits=_parse_limits(_section(raw_config, 'limits')),
        pricing=_parse_pricing(_section(raw_config, 'pricing')),
    )


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _check_keys(data: Dict, allowed_keys: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _number(data: Dict, key: str, path: str, default: Any) -> Any:
    if key not in data:
        return default
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    if isinstance(default, int) and not isinstance(default, bool):
        if not isinstance(value, int):
            raise ValueError(f"'{key}' in {path} must be an integer")
        return int(value)
    return float(value)


def _flag(data: Dict, key: str, path: str, default: bool) -> bool:
    if key not in data:
        return default
    value = data[key]
    if not isinstance(value, bool):
        raise ValueError(f"'{key}' in {path} must be a boolean")
    return value


def _string(data: Dict, key: str, path: str, default: str) -> str:
    if key not in data:
        return default
    value = data[key]
    if value is None:
        return default
    if not isinstance(value, str):
        raise ValueError(f"'{key}' in {path} must be a string")
    return value


def expand_env(value: str) -> str:
    """Expand a ``${NAME}`` or ``${NAME:default}`` reference from the environment.

    Values that are not a single reference are returned unchanged.
    """
    match = _ENV_PATTERN.match(value or "")
    if not match:
        return value
    name, default = match.group(1), match.group(2)
    return os.environ.get(name, default or "")


def _parse_local(data: Dict) -> LocalConfig:
    path = "local"
    _check_keys(data, {'default_encoding', 'max_text_length', 'parallel_threads'}, path)
    defaults = LocalConfig()
    return LocalConfig(
        default_encoding=_string(data, 'default_encoding', path, defaults.default_encoding),
        max_text_length=_number(data, 'max_text_length', path, defaults.max_text_length),
        parallel_threads=_number(data, 'parallel_threads', path, defaults.parallel_threads),
    )


def _parse_provider(data: Any, path: str, defaults: ProviderConfig) -> ProviderConfig:
    if data is None:
        return defaults
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    _check_keys(data, {'enabled', 'base_url', 'api_token', 'timeout'}, path)
    return ProviderConfig(
        enabled=_flag(data, 'enabled', path, defaults.enabled),
        base_url=_string(data, 'base_url', path, defaults.base_url).rstrip("/"),
        api_token=expand_env(_string(data, 'api_token', path, defaults.api_token)),
        timeout=_number(data, 'timeout', path, defaults.timeout),
    )


def _parse_remote(data: Dict) -> RemoteConfig:
    path = "remote"
    _check_keys(data, {
        'enabled', 'timeout', 'retry_attempts', 'retry_base_delay',
        'concurrency_limit', 'openai', 'huggingface',
    }, path)
    defaults = RemoteConfig()
    openai_defaults, huggingface_defaults = defaults.openai, defaults.huggingface
    if 'timeout' in data:
        # An explicit shared timeout applies to providers that set none
        openai_defaults = replace(openai_defaults, timeout=None)
        huggingface_defaults = replace(huggingface_defaults, timeout=None)
    return RemoteConfig(
        enabled=_flag(data, 'enabled', path, defaults.enabled),
        timeout=_number(data, 'timeout', path, defaults.timeout),
        retry_attempts=_number(data, 'retry_attempts', path, defaults.retry_attempts),
        retry_base_delay=_number(data, 'retry_base_delay', path, defaults.retry_base_delay),
        concurrency_limit=_number(data, 'concurrency_limit', path, defaults.concurrency_limit),
        openai=_parse_provider(data.get('openai'), "remote.openai", openai_defaults),
        huggingface=_parse_provider(data.get('huggingface'), "remote.huggingface", huggingface_defaults),
    )


def _parse_cache(data: Dict) -> CacheConfig:
    path = "cache"
    _check_keys(data, {'enabled', 'maximum_size', 'expire_after_seconds'}, path)
    defaults = CacheConfig()
    return CacheConfig(
        enabled=_flag(data, 'enabled', path, defaults.enabled),
        maximum_size=_number(data, 'maximum_size', path, defaults.maximum_size),
        expire_after_seconds=_number(data, 'expire_after_seconds', path, defaults.expire_after_seconds),
    )


def _parse_batch(data: Dict) -> BatchConfig:
    path = "batch"
    _check_keys(data, {
        'buffer_size', 'stream_window_size', 'stream_window_concurrency', 'stream_buffer_size',
    }, path)
    defaults = BatchConfig()
    return BatchConfig(
        buffer_size=_number(data, 'buffer_size', path, defaults.buffer_size),
        stream_window_size=_number(data, 'stream_window_size', path, defaults.stream_window_size),
        stream_window_concurrency=_number(
            data, 'stream_window_concurrency', path, defaults.stream_window_concurrency
        ),
        stream_buffer_size=_number(data, 'stream_buffer_size', path, defaults.stream_buffer_size),
    )


def _parse_limits(data: Dict) -> LimitsConfig:
    path = "limits"
    _check_keys(data, {'max_tokens_per_request', 'max_cost_per_request'}, path)
    defaults = LimitsConfig()
    return LimitsConfig(
        max_tokens_per_request=_number(data, 'max_tokens_per_request', path, defaults.max_tokens_per_request),
        max_cost_per_request=_number(data, 'max_cost_per_request', path, defaults.max_cost_per_request),
    )


def _parse_price(data: Any, path: str) -> Dict[str, Decimal]:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    _check_keys(data, {'input', 'output'}, path)
    price = {}
    for key in ('input', 'output'):
        if key not in data:
            raise ValueError(f"Missing required '{key}' in {path}")
        value = data[key]
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise ValueError(f"'{key}' in {path} must be a non-negative number")
        # str() keeps the YAML literal exact instead of the binary float
        price[key] = Decimal(str(value))
    return price


def _parse_pricing(data: Dict) -> PricingConfig:
    path = "pricing"
    _check_keys(data, {'models', 'default'}, path)
    defaults = PricingConfig()

    models: Optional[Dict[str, Dict[str, Decimal]]] = None
    if 'models' in data:
        models_data = data['models'] or {}
        if not isinstance(models_data, dict):
            raise ValueError("'pricing.models' must be a dictionary")
        models = {
            str(name): _parse_price(price, f"pricing.models.{name}")
            for name, price in models_data.items()
        }

    default = defaults.default
    if 'default' in data:
        default = _parse_price(data['default'], "pricing.default")

    return PricingConfig(
        models=models if models is not None else defaults.models,
        default=default,
    )
