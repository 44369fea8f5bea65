"""
Translation System
Artifact lifecycle, model loading and end-to-end translation
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .artifact_store import ArtifactInfo, ArtifactStore, create_artifact_store
from .config import (
    MERGES_FILE,
    MODEL_CONFIG_FILE,
    MODEL_FILE,
    SENTENCEPIECE_FILE,
    TOKENIZER_CONFIG_FILE,
    VOCAB_FILE,
    ArtifactSpec,
    ModelConfig,
    RuntimeSettings,
    TokenizerConfig,
)
from .errors import ArtifactDownloadError, MissingArtifactError
from .fetcher import ModelFetcher
from .generation_utils import BeamStepInfo, generate_with_beam_search
from .languages import FAIRSEQ_LANGUAGE_CODES, normalize_language_code
from .model_runner import ModelRunner, OnnxModelRunner
from .translation_tokenizer import TranslationTokenizer, build_tokenizer
from .utils import InputValidator, format_size, format_time, logger

__all__ = ["StatusMessage", "TranslationSystem"]


@dataclass(frozen=True)
class StatusMessage:
    """User-facing progress event."""

    type: str
    message: str
    progress: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type, "message": self.message}
        if self.progress is not None:
            payload["progress"] = self.progress
        return payload


StatusCallback = Callable[[StatusMessage], None]
# (filename, fraction, bytes_loaded, bytes_total)
FileProgressCallback = Callable[[str, float, int, int], None]
# (filename, byte_length)
FileCompleteCallback = Callable[[str, int], None]
RunnerFactory = Callable[[bytes], ModelRunner]


class TranslationSystem:
    """
    Composes the artifact store, fetcher, tokenizer, model runner and
    beam search into a single translate call.

    Loading is lazy: the first ``translate`` downloads whatever is missing
    from the cache, then builds the tokenizer and the model runner.
    """

    def __init__(
        self,
        store: ArtifactStore,
        fetcher: ModelFetcher,
        settings: Optional[RuntimeSettings] = None,
        runner_factory: RunnerFactory = OnnxModelRunner.from_bytes,
        languages: Optional[List[str]] = None,
    ) -> None:
        """
        Args:
            store: Artifact cache
            fetcher: Downloader for missing artifacts
            settings: Runtime settings (defaults to ``RuntimeSettings()``)
            runner_factory: Builds a model runner from ``model.onnx`` bytes
            languages: Ordered language codes (defaults to the SMALL-100 list)
        """
        self.store = store
        self.fetcher = fetcher
        self.settings = settings or RuntimeSettings()
        self.runner_factory = runner_factory
        self.languages = list(languages) if languages is not None else list(FAIRSEQ_LANGUAGE_CODES)

        self.tokenizer: Optional[TranslationTokenizer] = None
        self.runner: Optional[ModelRunner] = None
        self.model_config: Optional[ModelConfig] = None
        self._lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Optional[RuntimeSettings] = None,
        runner_factory: RunnerFactory = OnnxModelRunner.from_bytes,
    ) -> "TranslationSystem":
        """Build a system with the store and fetcher described by ``settings``."""
        settings = settings or RuntimeSettings.from_env()
        store = create_artifact_store(settings.cache_backend, settings.cache_path)
        fetcher = ModelFetcher(
            base_url=settings.base_url,
            files=settings.artifacts,
            max_retries=settings.max_retries,
            retry_delay=settings.retry_delay,
            timeout=settings.request_timeout,
        )
        return cls(store, fetcher, settings=settings, runner_factory=runner_factory)

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    @property
    def artifacts(self) -> List[ArtifactSpec]:
        return self.settings.artifacts

    @property
    def required_files(self) -> List[str]:
        return [spec.name for spec in self.artifacts if spec.required]

    def ensure_artifacts(
        self,
        on_progress: Optional[StatusCallback] = None,
        on_file_progress: Optional[FileProgressCallback] = None,
        on_file_complete: Optional[FileCompleteCallback] = None,
    ) -> List[str]:
        """
        Make sure every artifact is cached, downloading only missing ones.

        Cached files are reported as complete. Optional files that fail to
        download are skipped with a warning.

        Returns:
            Names of the files downloaded by this call

        Raises:
            ArtifactDownloadError: A required file could not be downloaded
            MissingArtifactError: A required file is absent afterwards
        """
        notify = on_progress or (lambda _msg: None)
        specs = self.artifacts
        total = len(specs)
        missing: List[ArtifactSpec] = []

        for spec in specs:
            info = self.store.info(spec.name)
            if info is None:
                missing.append(spec)
                continue
            logger.debug("Artifact %s found in cache (%s)", spec.name, format_size(info.size))
            if on_file_progress is not None:
                on_file_progress(spec.name, 1.0, info.size, info.size)
            if on_file_complete is not None:
                on_file_complete(spec.name, info.size)

        if not missing:
            notify(StatusMessage("info", "All model files are present in the cache.", 1.0))
            return []

        names = ", ".join(spec.name for spec in missing)
        logger.info("Downloading missing artifacts: %s", names)
        notify(StatusMessage("info", f"Downloading required model files ({names})..."))

        downloaded: List[str] = []
        done = total - len(missing)
        for spec in missing:
            def report(loaded: int, size: int, _name: str = spec.name, _done: int = done) -> None:
                fraction = min(loaded / size, 1.0) if size > 0 else 0.0
                overall = (_done + fraction) / total
                if on_file_progress is not None:
                    on_file_progress(_name, fraction, loaded, size)
                notify(StatusMessage(
                    "progress", f"Downloading {_name} ({round(fraction * 100)}%)", overall
                ))

            try:
                data = self.fetcher.fetch(spec.name, on_progress=report)
            except ArtifactDownloadError as e:
                if spec.required:
                    notify(StatusMessage("error", f"Model download failed: {e}"))
                    raise
                logger.warning("Optional artifact %s unavailable: %s", spec.name, e)
                done += 1
                continue

            self.store.put(spec.name, data)
            downloaded.append(spec.name)
            done += 1
            if on_file_complete is not None:
                on_file_complete(spec.name, len(data))
            notify(StatusMessage(
                "info", f"Downloaded {spec.name} ({format_size(len(data))})", done / total
            ))

        for name in self.required_files:
            if not self.store.has(name):
                error = MissingArtifactError(name)
                notify(StatusMessage("error", str(error)))
                raise error

        notify(StatusMessage("success", "Model files downloaded and cached.", 1.0))
        return downloaded

    def list_cached_artifacts(self) -> List[ArtifactInfo]:
        return self.store.list_info()

    def clear_cache(self) -> None:
        """Remove every cached artifact and unload the model."""
        with self._lock:
            self.store.clear()
            self._unload()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def is_loaded(self) -> bool:
        return self.tokenizer is not None and self.runner is not None

    def load(self, on_progress: Optional[StatusCallback] = None) -> None:
        """Ensure artifacts and build the tokenizer and model runner (idempotent)."""
        notify = on_progress or (lambda _msg: None)
        with self._lock:
            if self.is_loaded():
                return
            try:
                self._load(notify)
            except Exception as e:
                notify(StatusMessage("error", f"Model loading failed: {e}"))
                self._unload()
                raise

    def _load(self, notify: StatusCallback) -> None:
        start = time.time()
        self.ensure_artifacts(on_progress=notify)
        notify(StatusMessage("info", "Loading model..."))

        model_config = ModelConfig.from_json_bytes(self._read(MODEL_CONFIG_FILE))

        tokenizer_config = None
        raw_tokenizer_config = self.store.get(TOKENIZER_CONFIG_FILE)
        if raw_tokenizer_config is not None:
            tokenizer_config = TokenizerConfig.from_json_bytes(raw_tokenizer_config)

        kind = self.settings.tokenizer_kind
        tokenizer = build_tokenizer(
            kind,
            self._read(VOCAB_FILE),
            languages=self.languages,
            tokenizer_config=tokenizer_config,
            merges=self._read(MERGES_FILE) if kind == "bpe" else None,
            sp_model=self._read(SENTENCEPIECE_FILE) if kind == "sentencepiece" else None,
            max_subword_length=self.settings.max_subword_length,
            num_madeup_words=self.settings.num_madeup_words,
        )
        if tokenizer.get_vocab_size() != model_config.vocab_size:
            logger.warning(
                "Tokenizer output size %d does not match config.json vocab_size %d",
                tokenizer.get_vocab_size(), model_config.vocab_size,
            )
        notify(StatusMessage("info", "Tokenizer initialized."))

        runner = self.runner_factory(self._read(MODEL_FILE))
        notify(StatusMessage("info", "Model runner initialized."))

        self.model_config = model_config
        self.tokenizer = tokenizer
        self.runner = runner
        logger.info("Model loaded in %s", format_time(time.time() - start))
        notify(StatusMessage("success", "Model loaded.", 1.0))

    def _read(self, name: str) -> bytes:
        data = self.store.get(name)
        if data is None:
            raise MissingArtifactError(name)
        return data

    def _unload(self) -> None:
        if self.runner is not None:
            self.runner.close()
        self.runner = None
        self.tokenizer = None
        self.model_config = None

    # ------------------------------------------------------------------
    # Translation
    # ------------------------------------------------------------------

    def supported_languages(self) -> List[str]:
        return list(self.languages)

    def get_model_info(self) -> Dict[str, Any]:
        info: Dict[str, Any] = {
            "loaded": self.is_loaded(),
            "tokenizer": self.settings.tokenizer_kind,
            "languages": len(self.languages),
        }
        if self.model_config is not None:
            info.update(self.model_config.to_info())
        if self.tokenizer is not None:
            info["base_vocab_size"] = self.tokenizer.vocab_size
            info["output_vocab_size"] = self.tokenizer.get_vocab_size()
        return info

    def translate(
        self,
        text: str,
        source_lang: str,
        target_lang: str,
        on_progress: Optional[StatusCallback] = None,
        *,
        num_beams: Optional[int] = None,
        max_length: Optional[int] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> str:
        """
        Translate text from ``source_lang`` to ``target_lang``.

        Args:
            text: Input text
            source_lang: Source language code (2- or 3-letter)
            target_lang: Target language code (2- or 3-letter)
            on_progress: Receives StatusMessage events
            num_beams: Beam width override
            max_length: Maximum decoder length override
            should_cancel: Checked between decoding steps

        Returns:
            Translated text

        Raises:
            UnsupportedLanguageError: Unknown source or target language
            DecodingCancelledError: ``should_cancel`` returned True
        """
        notify = on_progress or (lambda _msg: None)
        InputValidator.validate_text(text)
        src = normalize_language_code(source_lang)
        tgt = normalize_language_code(target_lang)
        InputValidator.validate_language_code(src, self.languages, "source language")
        InputValidator.validate_language_code(tgt, self.languages, "target language")
        if num_beams is not None:
            InputValidator.validate_positive_int(num_beams, "num_beams")
        if max_length is not None:
            InputValidator.validate_positive_int(max_length, "max_length")

        self.load(on_progress=on_progress)
        tokenizer, runner, model_config = self.tokenizer, self.runner, self.model_config
        if tokenizer is None or runner is None or model_config is None:
            raise RuntimeError("Translation system was unloaded before decoding started")

        try:
            notify(StatusMessage("info", "Starting translation..."))
            pair = tokenizer.language_pair_ids(
                src, tgt, source_language_as_eos=self.settings.source_language_as_eos
            )
            input_ids = tokenizer.encode(text, src_lang=src, mode="source", eos_id=pair.eos_id)["input_ids"][0]
            logger.debug("Encoded %s -> %s: %s", src, tgt, input_ids)

            beams = num_beams or self.settings.num_beams or model_config.num_beams
            limit = max_length or self.settings.max_length or model_config.max_length

            def on_step(info: BeamStepInfo) -> None:
                notify(StatusMessage(
                    "progress", f"Decoding (step {info.step}/{limit})", info.step / limit
                ))

            result = generate_with_beam_search(
                runner,
                input_ids,
                decoder_start_id=pair.decoder_start_id,
                eos_id=pair.eos_id,
                num_beams=beams,
                max_length=limit,
                should_cancel=should_cancel,
                on_step=on_step,
            )
            translation = tokenizer.decode(result.tokens, skip_special_tokens=True)
        except Exception as e:
            notify(StatusMessage("error", f"Translation failed: {e}"))
            raise

        logger.info(
            "Translated %d chars %s -> %s in %d steps", len(text), src, tgt, result.steps
        )
        notify(StatusMessage("success", "Translation complete.", 1.0))
        return translation
