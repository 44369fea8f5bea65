"""
Configuration for PocketMT.

- ModelConfig: the model's ``config.json`` artifact
- TokenizerConfig: the optional ``tokenizer_config.json`` artifact
- ArtifactSpec: the files the translation system keeps in its cache
- RuntimeSettings: process settings resolved from POCKETMT_* environment variables
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from .errors import TokenizerConfigError
from .utils import logger


DEFAULT_BASE_URL = "https://huggingface.co/fukayatti0/small100-quantized-int8/resolve/main/"

MODEL_FILE = "model.onnx"
VOCAB_FILE = "vocab.json"
MODEL_CONFIG_FILE = "config.json"
TOKENIZER_CONFIG_FILE = "tokenizer_config.json"
SENTENCEPIECE_FILE = "sentencepiece.bpe.model"
MERGES_FILE = "merges.txt"

TOKENIZER_KINDS = {"vocab", "bpe", "sentencepiece"}
CACHE_BACKENDS = {"memory", "sqlite", "filesystem"}

DEFAULT_NUM_BEAMS = 4
DEFAULT_MAX_LENGTH = 200


def _load_json_object(data: bytes, filename: str) -> Dict[str, Any]:
    try:
        payload = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise TokenizerConfigError(f"{filename} is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise TokenizerConfigError(
            f"{filename} must contain a JSON object, got {type(payload).__name__}"
        )
    return payload


# ============================================================================
# MODEL CONFIG
# ============================================================================

@dataclass
class ModelConfig:
    """
    Minimal model configuration loaded from ``config.json``.

    Only the fields used by tokenization and decoding are kept; everything
    else in the file is preserved in ``extra``.
    """

    vocab_size: int
    decoder_start_token_id: Optional[int] = None
    eos_token_id: Optional[int] = None
    pad_token_id: Optional[int] = None
    unk_token_id: Optional[int] = None
    num_beams: int = DEFAULT_NUM_BEAMS
    max_length: int = DEFAULT_MAX_LENGTH
    model_name: str = "N/A"
    model_type: Optional[str] = None
    architectures: List[str] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ModelConfig":
        if "vocab_size" not in payload:
            raise TokenizerConfigError("config.json is missing 'vocab_size'")

        known = {
            "vocab_size", "decoder_start_token_id", "eos_token_id", "pad_token_id",
            "unk_token_id", "num_beams", "max_length", "_name_or_path",
            "model_type", "architectures",
        }
        try:
            return cls(
                vocab_size=int(payload["vocab_size"]),
                decoder_start_token_id=_optional_int(payload.get("decoder_start_token_id")),
                eos_token_id=_optional_int(payload.get("eos_token_id")),
                pad_token_id=_optional_int(payload.get("pad_token_id")),
                unk_token_id=_optional_int(payload.get("unk_token_id")),
                # 0 / null in config.json means "use the default"
                num_beams=int(payload.get("num_beams") or DEFAULT_NUM_BEAMS),
                max_length=int(payload.get("max_length") or DEFAULT_MAX_LENGTH),
                model_name=str(payload.get("_name_or_path") or "N/A"),
                model_type=payload.get("model_type"),
                architectures=list(payload.get("architectures") or []),
                extra={k: v for k, v in payload.items() if k not in known},
            )
        except (TypeError, ValueError) as e:
            raise TokenizerConfigError(f"config.json has an invalid field: {e}") from e

    @classmethod
    def from_json_bytes(cls, data: bytes) -> "ModelConfig":
        return cls.from_dict(_load_json_object(data, MODEL_CONFIG_FILE))

    def to_info(self) -> Dict[str, Any]:
        """Summary shown to callers (model name, sizes, decoding defaults)."""
        return {
            "model_name": self.model_name,
            "vocab_size": self.vocab_size,
            "num_beams": self.num_beams,
            "max_length": self.max_length,
            "architectures": list(self.architectures),
        }


def _optional_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    return int(value)


# ============================================================================
# TOKENIZER CONFIG
# ============================================================================

SpecialTokenValue = Union[str, Mapping[str, Any]]

SPECIAL_TOKEN_ROLES = ("pad_token", "bos_token", "eos_token", "unk_token")


@dataclass
class TokenizerConfig:
    """
    Special-token overrides read from ``tokenizer_config.json``.

    Each role holds either a token string or an explicit id. Entries may be
    given at top level or inside ``special_tokens_map``; values may be plain
    strings or ``{"content": ..., "id": ...}`` objects.
    """

    pad_token: Optional[str] = None
    bos_token: Optional[str] = None
    eos_token: Optional[str] = None
    unk_token: Optional[str] = None
    token_ids: Dict[str, int] = field(default_factory=dict)
    added_tokens: Dict[str, int] = field(default_factory=dict)
    model_max_length: Optional[int] = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "TokenizerConfig":
        config = cls()
        sources: List[Mapping[str, Any]] = []
        special_map = payload.get("special_tokens_map")
        if isinstance(special_map, Mapping):
            sources.append(special_map)
        # Top-level entries win over special_tokens_map
        sources.append(payload)

        for source in sources:
            for role in SPECIAL_TOKEN_ROLES:
                if role not in source or source[role] is None:
                    continue
                content, token_id = _parse_special_value(source[role], role)
                if content is not None:
                    setattr(config, role, content)
                if token_id is not None:
                    config.token_ids[role] = token_id

        for entry in payload.get("added_tokens") or []:
            if isinstance(entry, Mapping) and "content" in entry and "id" in entry:
                config.added_tokens[str(entry["content"])] = int(entry["id"])

        max_len = payload.get("model_max_length")
        if isinstance(max_len, int):
            config.model_max_length = max_len
        return config

    @classmethod
    def from_json_bytes(cls, data: bytes) -> "TokenizerConfig":
        return cls.from_dict(_load_json_object(data, TOKENIZER_CONFIG_FILE))


def _parse_special_value(value: SpecialTokenValue, role: str):
    if isinstance(value, str):
        return value, None
    if isinstance(value, Mapping):
        content = value.get("content")
        token_id = value.get("id")
        return (
            str(content) if content is not None else None,
            int(token_id) if token_id is not None else None,
        )
    raise TokenizerConfigError(
        f"tokenizer_config.json: '{role}' must be a string or an object, got {type(value).__name__}"
    )


# ============================================================================
# ARTIFACTS
# ============================================================================

@dataclass(frozen=True)
class ArtifactSpec:
    """A cached file and whether translation can proceed without it."""

    name: str
    required: bool = True
    size_hint: str = ""


def default_artifacts(tokenizer_kind: str = "vocab") -> List[ArtifactSpec]:
    """
    Files needed for a given tokenizer variant.

    The SentencePiece model is required only by the ``sentencepiece``
    variant and merge rules only by ``bpe``; the tokenizer config is always
    optional.
    """
    if tokenizer_kind not in TOKENIZER_KINDS:
        raise TokenizerConfigError(
            f"Unknown tokenizer kind '{tokenizer_kind}'. Expected one of: {sorted(TOKENIZER_KINDS)}"
        )
    artifacts = [
        ArtifactSpec(MODEL_FILE, required=True, size_hint="~150MB"),
        ArtifactSpec(VOCAB_FILE, required=True, size_hint="~3.5MB"),
        ArtifactSpec(MODEL_CONFIG_FILE, required=True, size_hint="~1KB"),
        ArtifactSpec(TOKENIZER_CONFIG_FILE, required=False, size_hint="~2KB"),
    ]
    if tokenizer_kind == "sentencepiece":
        artifacts.append(ArtifactSpec(SENTENCEPIECE_FILE, required=True, size_hint="~2.4MB"))
    elif tokenizer_kind == "bpe":
        artifacts.append(ArtifactSpec(MERGES_FILE, required=True, size_hint="~1MB"))
    return artifacts


# ============================================================================
# RUNTIME SETTINGS
# ============================================================================

@dataclass
class RuntimeSettings:
    """Process-level settings for the translation system."""

    base_url: str = DEFAULT_BASE_URL
    cache_backend: str = "sqlite"
    cache_path: str = "~/.cache/pocketmt/artifacts.sqlite3"
    tokenizer_kind: str = "vocab"
    max_retries: int = 3
    retry_delay: float = 1.0
    request_timeout: float = 60.0
    num_beams: Optional[int] = None
    max_length: Optional[int] = None
    source_language_as_eos: bool = True
    max_subword_length: int = 16
    num_madeup_words: int = 8

    @property
    def artifacts(self) -> List[ArtifactSpec]:
        return default_artifacts(self.tokenizer_kind)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RuntimeSettings":
        """Build settings from POCKETMT_* variables; invalid values fall back with a warning."""
        env = os.environ if environ is None else environ
        settings = cls()

        base_url = env.get("POCKETMT_BASE_URL")
        if base_url:
            settings.base_url = base_url if base_url.endswith("/") else base_url + "/"

        backend = (env.get("POCKETMT_CACHE_BACKEND") or settings.cache_backend).lower()
        if backend not in CACHE_BACKENDS:
            logger.warning("Unsupported cache backend '%s'. Falling back to 'sqlite'.", backend)
            backend = "sqlite"
        settings.cache_backend = backend

        if env.get("POCKETMT_CACHE_PATH"):
            settings.cache_path = env["POCKETMT_CACHE_PATH"]

        kind = (env.get("POCKETMT_TOKENIZER") or settings.tokenizer_kind).lower()
        if kind not in TOKENIZER_KINDS:
            logger.warning("Unsupported tokenizer kind '%s'. Falling back to 'vocab'.", kind)
            kind = "vocab"
        settings.tokenizer_kind = kind

        settings.max_retries = _env_int(env, "POCKETMT_MAX_RETRIES", settings.max_retries, minimum=1)
        settings.retry_delay = _env_float(env, "POCKETMT_RETRY_DELAY", settings.retry_delay)
        settings.request_timeout = _env_float(env, "POCKETMT_TIMEOUT", settings.request_timeout)
        if env.get("POCKETMT_NUM_BEAMS"):
            settings.num_beams = _env_int(env, "POCKETMT_NUM_BEAMS", DEFAULT_NUM_BEAMS, minimum=1)
        if env.get("POCKETMT_MAX_LENGTH"):
            settings.max_length = _env_int(env, "POCKETMT_MAX_LENGTH", DEFAULT_MAX_LENGTH, minimum=2)

        eos_flag = env.get("POCKETMT_SOURCE_LANGUAGE_AS_EOS")
        if eos_flag is not None:
            settings.source_language_as_eos = eos_flag.strip().lower() in {"1", "true", "yes", "on"}
        return settings


def _env_int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s: '%s'. Using %d.", name, raw, default)
        return default
    if value < minimum:
        logger.warning("%s must be >= %d, got %d. Using %d.", name, minimum, value, default)
        return default
    return value


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid number for %s: '%s'. Using %s.", name, raw, default)
        return default
    if value < 0:
        logger.warning("%s must be non-negative, got %s. Using %s.", name, value, default)
        return default
    return value
