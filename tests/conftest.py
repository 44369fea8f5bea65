"""
Pytest configuration for PocketMT.

Shared fixtures: a tiny vocabulary, a scripted model runner and an
in-memory artifact store.

Heavy tests (marked ``heavy``, e.g. training a SentencePiece model) run by
default but can be skipped via:
- CLI: `pytest --skip-heavy-tests`
- Env: `POCKETMT_SKIP_HEAVY_TESTS=1`
"""

from __future__ import annotations

import json
import os
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pytest
import torch

from pocketmt.artifact_store import InMemoryArtifactStore
from pocketmt.model_runner import ModelRunner
from pocketmt.translation_tokenizer import GreedyVocabTokenizer

TINY_VOCAB: Dict[str, int] = {
    "<pad>": 0,
    "</s>": 1,
    "<s>": 2,
    "<unk>": 3,
    "▁hi": 4,
    "▁there": 5,
}
TINY_LANGUAGES = ["en", "fr"]


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--skip-heavy-tests",
        action="store_true",
        default=False,
        help="Skip heavy tests (can also set POCKETMT_SKIP_HEAVY_TESTS=1).",
    )


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "heavy: slow tests that build real tokenizer models")


def _should_skip_heavy(config: pytest.Config) -> bool:
    if config.getoption("--skip-heavy-tests"):
        return True
    env_value = os.getenv("POCKETMT_SKIP_HEAVY_TESTS", "").strip().lower()
    return env_value in {"1", "true", "yes", "on"}


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if not _should_skip_heavy(config):
        return

    skip_marker = pytest.mark.skip(
        reason="Skipping heavy tests (omit --skip-heavy-tests or unset POCKETMT_SKIP_HEAVY_TESTS to run them)."
    )
    for item in items:
        if "heavy" in item.keywords:
            item.add_marker(skip_marker)


# ============================================================================
# FAKES
# ============================================================================

class ScriptedRunner(ModelRunner):
    """
    Model runner returning logits chosen by the decoder prefix.

    ``script`` maps a decoder prefix (tuple of ids) to a logits list;
    prefixes not in the script get ``default`` (uniform zeros if None).
    Every call is recorded in ``calls``.
    """

    def __init__(
        self,
        vocab_size: int,
        script: Optional[Dict[Tuple[int, ...], Sequence[float]]] = None,
        default: Optional[Callable[[Tuple[int, ...]], Sequence[float]]] = None,
    ) -> None:
        self.vocab_size = vocab_size
        self.script = script or {}
        self.default = default
        self.calls: List[Tuple[Tuple[int, ...], Tuple[int, ...]]] = []
        self.closed = False

    def next_token_logits(self, encoder_input_ids, decoder_input_ids) -> torch.Tensor:
        prefix = tuple(decoder_input_ids)
        self.calls.append((tuple(encoder_input_ids), prefix))
        if prefix in self.script:
            return torch.tensor(self.script[prefix], dtype=torch.float32)
        if self.default is not None:
            return torch.tensor(self.default(prefix), dtype=torch.float32)
        return torch.zeros(self.vocab_size)

    def close(self) -> None:
        self.closed = True


def peaked_logits(vocab_size: int, token_id: int, high: float = 10.0) -> List[float]:
    """Logits strongly favouring ``token_id``."""
    logits = [0.0] * vocab_size
    logits[token_id] = high
    return logits


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def tiny_vocab() -> Dict[str, int]:
    return dict(TINY_VOCAB)


@pytest.fixture
def tiny_vocab_bytes() -> bytes:
    return json.dumps(TINY_VOCAB).encode("utf-8")


@pytest.fixture
def tokenizer() -> GreedyVocabTokenizer:
    tok = GreedyVocabTokenizer(languages=TINY_LANGUAGES)
    tok.load_vocab(TINY_VOCAB)
    return tok


@pytest.fixture
def memory_store() -> InMemoryArtifactStore:
    return InMemoryArtifactStore()


@pytest.fixture
def scripted_runner_factory():
    def factory(vocab_size: int, script=None, default=None) -> ScriptedRunner:
        return ScriptedRunner(vocab_size, script=script, default=default)
    return factory
