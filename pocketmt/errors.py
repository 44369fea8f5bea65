"""
Exception types raised by PocketMT.

Each error also subclasses the built-in type callers would catch for the
same situation (RuntimeError for failed operations, ValueError for bad
input or configuration), so ``except ValueError`` keeps working.
"""

from __future__ import annotations

from typing import Optional, Sequence


class PocketMTError(Exception):
    """Base class for all PocketMT errors."""


# ============================================================================
# TRANSPORT
# ============================================================================

class ArtifactDownloadError(PocketMTError, RuntimeError):
    """A remote artifact could not be fetched after all retry attempts."""

    def __init__(self, filename: str, attempts: int, last_error: Optional[BaseException]) -> None:
        self.filename = filename
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Failed to download '{filename}' after {attempts} attempt(s): {last_error}"
        )


# ============================================================================
# STORAGE
# ============================================================================

class ArtifactStorageError(PocketMTError, RuntimeError):
    """The artifact store backend failed."""

    def __init__(self, operation: str, name: Optional[str], cause: BaseException) -> None:
        self.operation = operation
        self.name = name
        self.cause = cause
        target = f" '{name}'" if name is not None else ""
        super().__init__(f"Artifact store {operation}{target} failed: {cause}")


# ============================================================================
# CONFIGURATION
# ============================================================================

class TokenizerConfigError(PocketMTError, ValueError):
    """Vocabulary, merge rules or tokenizer configuration are malformed."""


class TokenizerNotLoadedError(PocketMTError, RuntimeError):
    """Encode/decode was called before a vocabulary was loaded."""

    def __init__(self, message: str = "Tokenizer is not initialized: load a vocabulary before encoding/decoding.") -> None:
        super().__init__(message)


class UnsupportedLanguageError(PocketMTError, ValueError):
    """A language code has no entry in the language table."""

    def __init__(self, code: str, supported: Sequence[str], role: str = "language") -> None:
        self.code = code
        self.supported = list(supported)
        self.role = role
        super().__init__(
            f"Unsupported {role}: '{code}'. Supported languages: {', '.join(self.supported)}"
        )


class MissingArtifactError(PocketMTError, RuntimeError):
    """A required artifact is still absent after a download attempt."""

    def __init__(self, filename: str) -> None:
        self.filename = filename
        super().__init__(f"Required artifact '{filename}' is missing after download")


# ============================================================================
# DECODING
# ============================================================================

class NoTranslationError(PocketMTError, RuntimeError):
    """Beam search finished without any candidate sequence."""


class DecodingCancelledError(PocketMTError, RuntimeError):
    """Beam search was cancelled between steps."""

    def __init__(self, step: int) -> None:
        self.step = step
        super().__init__(f"Decoding cancelled at step {step}")
