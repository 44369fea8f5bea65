"""
Tests for config.py

Covers:
- ModelConfig parsing from config.json
- TokenizerConfig special-token overrides
- Artifact lists per tokenizer variant
- RuntimeSettings resolution from environment variables
"""

import json

import pytest

from pocketmt.config import (
    DEFAULT_BASE_URL,
    ModelConfig,
    RuntimeSettings,
    TokenizerConfig,
    default_artifacts,
)
from pocketmt.errors import TokenizerConfigError


class TestModelConfig:
    """Tests for config.json parsing."""

    def test_known_fields(self) -> None:
        payload = {
            "vocab_size": 128112,
            "decoder_start_token_id": 2,
            "eos_token_id": 2,
            "num_beams": 5,
            "max_length": 256,
            "_name_or_path": "alirezamsh/small100",
            "architectures": ["M2M100ForConditionalGeneration"],
            "d_model": 1024,
        }
        config = ModelConfig.from_json_bytes(json.dumps(payload).encode())
        assert config.vocab_size == 128112
        assert config.num_beams == 5
        assert config.max_length == 256
        assert config.extra == {"d_model": 1024}
        assert config.to_info()["model_name"] == "alirezamsh/small100"

    def test_missing_decoding_defaults(self) -> None:
        config = ModelConfig.from_dict({"vocab_size": 10, "num_beams": None})
        assert config.num_beams == 4
        assert config.max_length == 200
        assert config.model_name == "N/A"

    def test_missing_vocab_size(self) -> None:
        with pytest.raises(TokenizerConfigError, match="vocab_size"):
            ModelConfig.from_dict({})

    def test_invalid_json(self) -> None:
        with pytest.raises(TokenizerConfigError, match="not valid JSON"):
            ModelConfig.from_json_bytes(b"{")


class TestTokenizerConfig:
    """Tests for tokenizer_config.json parsing."""

    def test_string_and_object_values(self) -> None:
        config = TokenizerConfig.from_dict({
            "eos_token": "</s>",
            "unk_token": {"content": "<unk>", "id": 3},
            "added_tokens": [{"content": "__en__", "id": 128022}],
            "model_max_length": 1024,
        })
        assert config.eos_token == "</s>"
        assert config.unk_token == "<unk>"
        assert config.token_ids == {"unk_token": 3}
        assert config.added_tokens == {"__en__": 128022}
        assert config.model_max_length == 1024

    def test_top_level_wins_over_special_tokens_map(self) -> None:
        config = TokenizerConfig.from_dict({
            "special_tokens_map": {"pad_token": "<pad>", "bos_token": "<s>"},
            "pad_token": "<blank>",
        })
        assert config.pad_token == "<blank>"
        assert config.bos_token == "<s>"

    def test_invalid_value_type(self) -> None:
        with pytest.raises(TokenizerConfigError, match="pad_token"):
            TokenizerConfig.from_dict({"pad_token": 5})


class TestDefaultArtifacts:
    """Tests for artifact lists."""

    def test_vocab_variant(self) -> None:
        specs = {spec.name: spec.required for spec in default_artifacts("vocab")}
        assert specs == {
            "model.onnx": True,
            "vocab.json": True,
            "config.json": True,
            "tokenizer_config.json": False,
        }

    def test_variant_specific_files(self) -> None:
        assert "sentencepiece.bpe.model" in [s.name for s in default_artifacts("sentencepiece")]
        assert "merges.txt" in [s.name for s in default_artifacts("bpe")]

    def test_unknown_variant(self) -> None:
        with pytest.raises(TokenizerConfigError, match="Unknown tokenizer kind"):
            default_artifacts("wordpiece")


class TestRuntimeSettings:
    """Tests for environment-driven settings."""

    def test_defaults(self) -> None:
        settings = RuntimeSettings.from_env({})
        assert settings.base_url == DEFAULT_BASE_URL
        assert settings.cache_backend == "sqlite"
        assert settings.tokenizer_kind == "vocab"
        assert settings.num_beams is None
        assert settings.source_language_as_eos is True

    def test_overrides(self) -> None:
        settings = RuntimeSettings.from_env({
            "POCKETMT_BASE_URL": "https://mirror.test/models",
            "POCKETMT_CACHE_BACKEND": "FileSystem",
            "POCKETMT_CACHE_PATH": "/tmp/pocketmt",
            "POCKETMT_TOKENIZER": "bpe",
            "POCKETMT_MAX_RETRIES": "5",
            "POCKETMT_RETRY_DELAY": "0.25",
            "POCKETMT_NUM_BEAMS": "2",
            "POCKETMT_MAX_LENGTH": "64",
            "POCKETMT_SOURCE_LANGUAGE_AS_EOS": "false",
        })
        assert settings.base_url == "https://mirror.test/models/"
        assert settings.cache_backend == "filesystem"
        assert settings.cache_path == "/tmp/pocketmt"
        assert settings.tokenizer_kind == "bpe"
        assert settings.max_retries == 5
        assert settings.retry_delay == 0.25
        assert settings.num_beams == 2
        assert settings.max_length == 64
        assert settings.source_language_as_eos is False
        assert "merges.txt" in [spec.name for spec in settings.artifacts]

    def test_invalid_values_fall_back(self, caplog) -> None:
        settings = RuntimeSettings.from_env({
            "POCKETMT_CACHE_BACKEND": "redis",
            "POCKETMT_TOKENIZER": "wordpiece",
            "POCKETMT_MAX_RETRIES": "zero",
            "POCKETMT_RETRY_DELAY": "-1",
        })
        assert settings.cache_backend == "sqlite"
        assert settings.tokenizer_kind == "vocab"
        assert settings.max_retries == 3
        assert settings.retry_delay == 1.0
