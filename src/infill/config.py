"""Configuration loader for Infill.

Loads from infill.toml with sensible defaults when file is absent.
Configuration is loaded once at startup and passed via dependency injection.
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from infill.prompts.fim import FillFormat, infer_fill_format

DEFAULT_ENDPOINT = "http://127.0.0.1:11434"


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""


def normalize_endpoint(endpoint: str) -> str:
    """Strip whitespace and trailing slashes; empty means the local Ollama port."""
    value = (endpoint or "").strip()
    while value.endswith("/"):
        value = value[:-1].strip()
    return value or DEFAULT_ENDPOINT


@dataclass(frozen=True)
class InferenceConfig:
    """Resolved model/endpoint settings for one completion request."""

    endpoint: str = DEFAULT_ENDPOINT
    bearer_token: str = ""
    model: str = "qwen2.5-coder:7b"
    fill_format: str = ""  # "" = infer from model name
    backend_type: str = ""  # "" = detect from endpoint
    max_lines: int = 16
    max_tokens: int = 256
    temperature: float = 0.2
    stop: tuple[str, ...] = ()
    timeout_seconds: float | None = None
    max_context_tokens: int = 0  # 0 = use the backend's window

    @property
    def resolved_fill_format(self) -> FillFormat:
        if self.fill_format:
            return FillFormat(self.fill_format)
        return infer_fill_format(self.model)

    def __repr__(self) -> str:
        token_display = f"***{self.bearer_token[-4:]}" if self.bearer_token else ""
        return (
            f"InferenceConfig(endpoint={self.endpoint!r}, model={self.model!r}, "
            f"backend_type={self.backend_type!r}, bearer_token={token_display!r})"
        )


@dataclass(frozen=True)
class CacheConfig:
    max_size: int = 100
    ttl_seconds: float = 300.0
    enable_normalization: bool = True
    min_prefix_length: int = 10


@dataclass(frozen=True)
class SessionConfig:
    session_ttl_seconds: float = 300.0
    max_sessions: int = 10
    prune_interval_seconds: float = 60.0


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 10.0
    backoff_multiplier: float = 2.0
    enable_jitter: bool = True


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(frozen=True)
class Config:
    """Top-level Infill configuration."""

    inference: InferenceConfig = field(default_factory=InferenceConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _parse_inference_config(data: dict) -> InferenceConfig:
    """Parse the [inference] section."""
    stop = data.get("stop", [])
    if isinstance(stop, str):
        stop = [stop]

    fill_format = str(data.get("fill_format", "") or "").strip().lower()
    if fill_format and fill_format not in {f.value for f in FillFormat}:
        raise ConfigError(
            f"Unknown fill_format {fill_format!r}; expected one of "
            f"{', '.join(f.value for f in FillFormat)}"
        )

    timeout = data.get("timeout_seconds")
    if timeout is not None:
        try:
            timeout = float(timeout)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid timeout_seconds: {timeout!r}") from e
        if timeout <= 0:
            timeout = None

    return InferenceConfig(
        endpoint=normalize_endpoint(data.get("endpoint", "")),
        bearer_token=data.get("bearer_token", ""),
        model=data.get("model", "qwen2.5-coder:7b"),
        fill_format=fill_format,
        backend_type=str(data.get("backend_type", "") or "").strip().lower(),
        max_lines=data.get("max_lines", 16),
        max_tokens=data.get("max_tokens", 256),
        temperature=data.get("temperature", 0.2),
        stop=tuple(str(s) for s in stop),
        timeout_seconds=timeout,
        max_context_tokens=data.get("max_context_tokens", 0),
    )


def load_config(path: Path | None = None) -> Config:
    """Load configuration from a TOML file.

    If path is None, searches for infill.toml in current directory then ~/.infill/.
    Returns default config if no file is found.
    """
    if path is None:
        candidates = [
            Path.cwd() / "infill.toml",
            Path.home() / ".infill" / "infill.toml",
        ]
        for candidate in candidates:
            if candidate.exists():
                path = candidate
                break

    if path is None or not path.exists():
        return Config()

    try:
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e

    inference = _parse_inference_config(raw.get("inference", {}))

    cache_data = raw.get("cache", {})
    cache = CacheConfig(
        max_size=cache_data.get("max_size", 100),
        ttl_seconds=cache_data.get("ttl_seconds", 300.0),
        enable_normalization=cache_data.get("enable_normalization", True),
        min_prefix_length=cache_data.get("min_prefix_length", 10),
    )

    session_data = raw.get("sessions", {})
    sessions = SessionConfig(
        session_ttl_seconds=session_data.get("session_ttl_seconds", 300.0),
        max_sessions=session_data.get("max_sessions", 10),
        prune_interval_seconds=session_data.get("prune_interval_seconds", 60.0),
    )

    retry_data = raw.get("retry", {})
    max_attempts = int(retry_data.get("max_attempts", 3) or 3)
    retry = RetryConfig(
        max_attempts=max(1, min(10, max_attempts)),
        initial_delay_seconds=max(0.0, float(retry_data.get("initial_delay_seconds", 1.0))),
        max_delay_seconds=max(0.0, float(retry_data.get("max_delay_seconds", 10.0))),
        backoff_multiplier=max(1.0, float(retry_data.get("backoff_multiplier", 2.0))),
        enable_jitter=bool(retry_data.get("enable_jitter", True)),
    )

    log_data = raw.get("logging", {})
    logging_cfg = LoggingConfig(level=str(log_data.get("level", "INFO")).upper())

    return Config(
        inference=inference,
        cache=cache,
        sessions=sessions,
        retry=retry,
        logging=logging_cfg,
    )
