"""Tests for configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from infill.config import (
    DEFAULT_ENDPOINT,
    Config,
    ConfigError,
    InferenceConfig,
    load_config,
    normalize_endpoint,
)
from infill.prompts.fim import FillFormat


class TestLoadConfig:
    def test_missing_file_returns_defaults(self, tmp_path: Path):
        config = load_config(tmp_path / "nope.toml")
        assert config == Config()
        assert config.inference.endpoint == DEFAULT_ENDPOINT
        assert config.inference.max_lines == 16
        assert config.cache.max_size == 100
        assert config.sessions.max_sessions == 10

    def test_full_file(self, tmp_path: Path):
        path = tmp_path / "infill.toml"
        path.write_text(
            '[inference]\n'
            'endpoint = "http://gpu-box:8000/"\n'
            'model = "deepseek-coder:6.7b"\n'
            'backend_type = "VLLM"\n'
            'max_lines = 8\n'
            'stop = "\\n\\n"\n'
            'timeout_seconds = 12\n'
            '\n'
            '[cache]\n'
            'max_size = 5\n'
            'ttl_seconds = 30\n'
            '\n'
            '[sessions]\n'
            'max_sessions = 3\n'
            '\n'
            '[retry]\n'
            'max_attempts = 50\n'
            '\n'
            '[logging]\n'
            'level = "debug"\n'
        )
        config = load_config(path)

        assert config.inference.endpoint == "http://gpu-box:8000"
        assert config.inference.backend_type == "vllm"
        assert config.inference.max_lines == 8
        assert config.inference.stop == ("\n\n",)
        assert config.inference.timeout_seconds == 12.0
        assert config.inference.resolved_fill_format == FillFormat.DEEPSEEK
        assert config.cache.max_size == 5
        assert config.cache.ttl_seconds == 30
        assert config.sessions.max_sessions == 3
        assert config.retry.max_attempts == 10
        assert config.logging.level == "DEBUG"

    def test_invalid_toml(self, tmp_path: Path):
        path = tmp_path / "infill.toml"
        path.write_text("[inference\nmodel = ")
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(path)

    def test_unknown_fill_format(self, tmp_path: Path):
        path = tmp_path / "infill.toml"
        path.write_text('[inference]\nfill_format = "starcoder"\n')
        with pytest.raises(ConfigError, match="fill_format"):
            load_config(path)

    def test_non_positive_timeout_means_none(self, tmp_path: Path):
        path = tmp_path / "infill.toml"
        path.write_text("[inference]\ntimeout_seconds = 0\n")
        assert load_config(path).inference.timeout_seconds is None


class TestInferenceConfig:
    def test_explicit_fill_format_wins(self):
        config = InferenceConfig(model="deepseek-coder:1.3b", fill_format="qwen")
        assert config.resolved_fill_format == FillFormat.QWEN

    def test_repr_masks_token(self):
        config = InferenceConfig(bearer_token="sk-secret-1234")
        text = repr(config)
        assert "sk-secret" not in text
        assert "***1234" in text

    @pytest.mark.parametrize("raw,expected", [
        ("http://host:1234/", "http://host:1234"),
        ("  http://host//  ", "http://host"),
        ("", DEFAULT_ENDPOINT),
    ])
    def test_normalize_endpoint(self, raw: str, expected: str):
        assert normalize_endpoint(raw) == expected
