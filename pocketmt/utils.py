"""
Shared helpers for PocketMT
Package logger, request validation, and size/duration formatting
"""

import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

import torch


# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

DEFAULT_LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logger(
    name: str = "pocketmt",
    level: int = logging.INFO,
    log_file: Optional[str] = None,
    format_string: Optional[str] = None,
) -> logging.Logger:
    """
    Configure a PocketMT logger writing to stdout and, optionally, a file.

    Calling it again for the same name replaces the handlers rather than
    stacking them, so the CLI and the API server can both reconfigure the
    package logger.

    Args:
        name: Logger name ("pocketmt" for the package logger)
        level: Level applied to the logger and each handler
        log_file: Extra log file; parent directories are created
        format_string: Record format (defaults to DEFAULT_LOG_FORMAT)

    Returns:
        The configured logger
    """
    configured = logging.getLogger(name)
    configured.setLevel(level)
    configured.handlers = []

    formatter = logging.Formatter(format_string or DEFAULT_LOG_FORMAT)

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        configured.addHandler(handler)

    return configured


def resolve_log_level(default: int = logging.INFO) -> int:
    """Read POCKETMT_LOG_LEVEL, falling back to ``default`` for unknown names."""
    env_value = (os.getenv("POCKETMT_LOG_LEVEL") or "").strip().upper()
    if not env_value:
        return default
    level = logging.getLevelName(env_value)
    if not isinstance(level, int):
        return default
    return level


# Package logger shared by every pocketmt module
logger = setup_logger(level=resolve_log_level())


# ============================================================================
# INPUT VALIDATION
# ============================================================================

class InputValidator:
    """Checks translation request arguments before any artifact is touched."""

    @staticmethod
    def validate_text(
        text: str,
        max_length: int = 10000,
        param_name: str = "text"
    ) -> None:
        """
        Reject source text that is not a non-blank string of bounded length.

        Raises:
            TypeError: Not a string
            ValueError: Blank, or longer than ``max_length`` characters
        """
        if not isinstance(text, str):
            raise TypeError(
                f"{param_name} must be a string, got {type(text).__name__}"
            )

        if not text.strip():
            raise ValueError(f"{param_name} cannot be empty")

        if len(text) > max_length:
            raise ValueError(
                f"{param_name} too long: {len(text)} characters > {max_length} max"
            )

        logger.debug(f"Validated {param_name}: {len(text)} characters")

    @staticmethod
    def validate_language_code(
        lang_code: str,
        supported_languages: List[str],
        param_name: str = "language"
    ) -> None:
        """
        Check that a (normalized) language code has a language tag.

        Args:
            lang_code: Language code (e.g., 'en', 'ja')
            supported_languages: Codes known to the tokenizer
            param_name: Role used in error messages ("source language", ...)

        Raises:
            TypeError: If the code is not a string
            UnsupportedLanguageError: If the code is not in ``supported_languages``
        """
        from .errors import UnsupportedLanguageError

        if not isinstance(lang_code, str):
            raise TypeError(
                f"{param_name} must be a string, got {type(lang_code).__name__}"
            )

        if lang_code not in supported_languages:
            raise UnsupportedLanguageError(lang_code, supported_languages, role=param_name)

        logger.debug(f"Validated {param_name}: {lang_code}")

    @staticmethod
    def validate_positive_int(
        value: int,
        name: str,
        min_value: int = 1,
        max_value: Optional[int] = None,
    ) -> None:
        """
        Check a decoding limit such as ``num_beams`` or ``max_length``.

        Raises:
            TypeError: Not an int (bools are rejected)
            ValueError: Outside ``[min_value, max_value]``
        """
        if not isinstance(value, int) or isinstance(value, bool):
            raise TypeError(f"{name} must be an integer, got {type(value).__name__}")

        if value < min_value:
            raise ValueError(f"{name} must be >= {min_value}, got {value}")

        if max_value is not None and value > max_value:
            raise ValueError(f"{name} must be <= {max_value}, got {value}")

        logger.debug(f"Validated {name}: {value}")


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

_SIZE_UNITS = ('B', 'KB', 'MB', 'GB', 'TB')


def format_size(num_bytes: float) -> str:
    """Render an artifact size with binary units, e.g. ``"150.0 MB"``."""
    size = float(num_bytes)
    for unit in _SIZE_UNITS:
        if size < 1024.0:
            return f"{size:.1f} {unit}"
        size /= 1024.0
    return f"{size:.1f} PB"


def format_time(seconds: float) -> str:
    """Render a download or load duration, e.g. ``"45.0s"`` or ``"1h 1m 5s"``."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(seconds, 60)
    if minutes < 60:
        return f"{int(minutes)}m {secs:.0f}s"
    hours, minutes = divmod(int(minutes), 60)
    return f"{hours}h {minutes}m {secs:.0f}s"


def get_device(prefer_cuda: bool = True) -> torch.device:
    """Device for TorchModelRunner: CUDA when available and preferred, else CPU."""
    if prefer_cuda and torch.cuda.is_available():
        logger.info(f"TorchModelRunner on CUDA device: {torch.cuda.get_device_name(0)}")
        return torch.device('cuda')
    logger.info("TorchModelRunner on CPU")
    return torch.device('cpu')
