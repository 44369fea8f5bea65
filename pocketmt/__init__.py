"""Core package for the PocketMT offline translation project."""

__version__ = "0.1.0"

from .artifact_store import (
    ArtifactInfo,
    ArtifactStore,
    InMemoryArtifactStore,
    SQLiteArtifactStore,
    FileSystemArtifactStore,
    create_artifact_store,
)
from .config import ModelConfig, RuntimeSettings, TokenizerConfig, default_artifacts
from .errors import (
    PocketMTError,
    ArtifactDownloadError,
    ArtifactStorageError,
    TokenizerConfigError,
    TokenizerNotLoadedError,
    UnsupportedLanguageError,
    MissingArtifactError,
    NoTranslationError,
    DecodingCancelledError,
)
from .fetcher import ModelFetcher
from .generation_utils import (
    BeamHypothesis,
    BeamSearchResult,
    generate_with_beam_search,
    stable_softmax,
    top_k_candidates,
)
from .languages import FAIRSEQ_LANGUAGE_CODES, normalize_language_code
from .model_runner import ModelRunner, OnnxModelRunner, TorchModelRunner
from .translation_system import StatusMessage, TranslationSystem
from .translation_tokenizer import (
    LanguagePairIds,
    TranslationTokenizer,
    Vocabulary,
    build_tokenizer,
)
from .utils import InputValidator, setup_logger, logger, format_size, format_time

__all__ = [
    "ArtifactInfo",
    "ArtifactStore",
    "InMemoryArtifactStore",
    "SQLiteArtifactStore",
    "FileSystemArtifactStore",
    "create_artifact_store",
    "ModelConfig",
    "RuntimeSettings",
    "TokenizerConfig",
    "default_artifacts",
    "PocketMTError",
    "ArtifactDownloadError",
    "ArtifactStorageError",
    "TokenizerConfigError",
    "TokenizerNotLoadedError",
    "UnsupportedLanguageError",
    "MissingArtifactError",
    "NoTranslationError",
    "DecodingCancelledError",
    "ModelFetcher",
    "BeamHypothesis",
    "BeamSearchResult",
    "generate_with_beam_search",
    "stable_softmax",
    "top_k_candidates",
    "FAIRSEQ_LANGUAGE_CODES",
    "normalize_language_code",
    "ModelRunner",
    "OnnxModelRunner",
    "TorchModelRunner",
    "StatusMessage",
    "TranslationSystem",
    "LanguagePairIds",
    "TranslationTokenizer",
    "Vocabulary",
    "build_tokenizer",
    "InputValidator",
    "setup_logger",
    "logger",
    "format_size",
    "format_time",
]
