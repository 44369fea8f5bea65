"""
Generation Utilities for Translation Models
Numerically stable softmax, candidate selection and beam search decoding
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple, Union

import torch

from .errors import DecodingCancelledError, NoTranslationError
from .model_runner import ModelRunner
from .utils import logger

__all__ = [
    "stable_softmax",
    "top_k_candidates",
    "BeamHypothesis",
    "BeamStepInfo",
    "BeamSearchResult",
    "generate_with_beam_search",
]

Logits = Union[torch.Tensor, Sequence[float]]


# ============================================================================
# PROBABILITIES
# ============================================================================

def stable_softmax(logits: Logits) -> torch.Tensor:
    """
    Softmax computed in float64 after subtracting the maximum logit.

    Degenerate input (non-finite maximum, or a sum that is zero or not
    finite) yields the uniform distribution ``1/V``.

    Args:
        logits: 1-D logits (tensor or sequence of floats)

    Returns:
        Probabilities as a float64 tensor of the same length
    """
    values = torch.as_tensor(logits, dtype=torch.float64).flatten()
    size = values.numel()
    if size == 0:
        raise ValueError("Cannot compute softmax of empty logits")

    uniform = torch.full((size,), 1.0 / size, dtype=torch.float64)
    max_logit = values.max()
    if not torch.isfinite(max_logit):
        logger.warning("Non-finite maximum logit (%s); using uniform distribution", max_logit.item())
        return uniform

    exps = torch.exp(values - max_logit)
    total = exps.sum()
    if not torch.isfinite(total) or total.item() == 0.0:
        logger.warning("Degenerate softmax normalizer (%s); using uniform distribution", total.item())
        return uniform
    return exps / total


def top_k_candidates(
    probs: torch.Tensor,
    k: int,
    min_probability: float = 1e-9,
) -> List[Tuple[int, float]]:
    """
    Highest-probability tokens in descending order.

    Ties keep ascending token id order. Candidates below
    ``min_probability`` are dropped.

    Returns:
        List of (token_id, probability)
    """
    if k <= 0:
        return []
    sorted_probs, sorted_ids = torch.sort(probs, descending=True, stable=True)
    k = min(k, sorted_probs.numel())
    return [
        (int(token_id), float(p))
        for p, token_id in zip(sorted_probs[:k].tolist(), sorted_ids[:k].tolist())
        if p >= min_probability
    ]


# ============================================================================
# BEAM SEARCH
# ============================================================================

class BeamHypothesis:
    """
    Single hypothesis in beam search.
    """

    def __init__(
        self,
        tokens: List[int],
        score: float,
        completed: bool = False,
        order: int = 0,
    ) -> None:
        """
        Args:
            tokens: Decoder token sequence, starting with the decoder start id
            score: Sum of log-probabilities of the generated tokens
            completed: Whether the hypothesis ended (eos or length limit)
            order: Discovery counter used to break score ties
        """
        self.tokens: List[int] = tokens
        self.score: float = float(score)
        self.completed = completed
        self.order = order

    def __len__(self) -> int:
        return len(self.tokens)

    def __repr__(self) -> str:
        return (
            f"BeamHypothesis(tokens={self.tokens}, score={self.score:.4f}, "
            f"completed={self.completed})"
        )

    def extend(self, token_id: int, probability: float, order: int) -> "BeamHypothesis":
        return BeamHypothesis(self.tokens + [token_id], self.score + math.log(probability), order=order)

    def average_score(self, length_penalty: float = 0.0) -> float:
        """
        Get length-normalized score.

        Args:
            length_penalty: Exponent on the sequence length (0 disables normalization)

        Returns:
            Normalized score: score / (length ** length_penalty)
        """
        length = float(len(self))
        if length == 0.0:
            # Avoid division by zero on malformed hypotheses
            return float("-inf")
        penalized_length: float = math.pow(length, float(length_penalty))
        return float(self.score) / penalized_length


@dataclass(frozen=True)
class BeamStepInfo:
    """Snapshot passed to the per-step observer."""

    step: int
    active: List[BeamHypothesis]
    completed: List[BeamHypothesis]


@dataclass
class BeamSearchResult:
    """Outcome of a beam search run."""

    tokens: List[int]
    score: float
    steps: int
    completed: List[BeamHypothesis] = field(default_factory=list)

    @property
    def num_completed(self) -> int:
        return len(self.completed)


def _by_score(hypotheses: List[BeamHypothesis]) -> List[BeamHypothesis]:
    # sorted() is stable: equal scores keep discovery order
    return sorted(hypotheses, key=lambda h: h.score, reverse=True)


def generate_with_beam_search(
    runner: ModelRunner,
    encoder_input_ids: Sequence[int],
    decoder_start_id: int,
    eos_id: int,
    num_beams: int = 4,
    max_length: int = 200,
    oversample_factor: int = 2,
    length_penalty: float = 0.0,
    max_completed: Optional[int] = None,
    min_probability: float = 1e-9,
    should_cancel: Optional[Callable[[], bool]] = None,
    on_step: Optional[Callable[[BeamStepInfo], None]] = None,
) -> BeamSearchResult:
    """
    Decode with beam search, one model call per active beam per step.

    Each active beam is extended by its top ``oversample_factor * num_beams``
    tokens. Extensions that emit ``eos_id`` or reach ``max_length`` tokens
    move to the completed set; the ``num_beams`` best remaining ones become
    the next active beams. The run ends when no active beams remain or
    after ``max_length`` steps.

    Args:
        runner: Model runner producing next-token logits
        encoder_input_ids: Encoded source sequence
        decoder_start_id: First decoder token
        eos_id: Token that completes a hypothesis
        num_beams: Beam width
        max_length: Maximum decoder length (tokens, including the start id)
        oversample_factor: Candidates per beam = oversample_factor * num_beams
        length_penalty: Exponent for length normalization in the final pick
        max_completed: Keep at most this many completed hypotheses (None = all)
        min_probability: Candidates below this probability are ignored
        should_cancel: Checked before each step; True aborts decoding
        on_step: Called with a BeamStepInfo after each step

    Returns:
        BeamSearchResult with the winning token sequence (start id included)

    Raises:
        DecodingCancelledError: If ``should_cancel`` returned True
        NoTranslationError: If no hypothesis survived
    """
    if num_beams < 1:
        raise ValueError(f"num_beams must be >= 1, got {num_beams}")
    if max_length < 1:
        raise ValueError(f"max_length must be >= 1, got {max_length}")
    if oversample_factor < 1:
        raise ValueError(f"oversample_factor must be >= 1, got {oversample_factor}")

    logger.debug(
        "Beam search: num_beams=%d, max_length=%d, source_len=%d",
        num_beams, max_length, len(encoder_input_ids),
    )

    counter = 0
    active: List[BeamHypothesis] = [BeamHypothesis([decoder_start_id], 0.0)]
    completed: List[BeamHypothesis] = []
    candidates_per_beam = oversample_factor * num_beams
    steps = 0

    for step in range(max_length):
        if not active:
            break
        if should_cancel is not None and should_cancel():
            raise DecodingCancelledError(step)

        extended: List[BeamHypothesis] = []
        for beam in active:
            logits = runner.next_token_logits(encoder_input_ids, beam.tokens)
            probs = stable_softmax(logits)
            for token_id, probability in top_k_candidates(probs, candidates_per_beam, min_probability):
                counter += 1
                hypothesis = beam.extend(token_id, probability, order=counter)
                if token_id == eos_id or len(hypothesis) >= max_length:
                    hypothesis.completed = True
                    completed.append(hypothesis)
                else:
                    extended.append(hypothesis)

        active = _by_score(extended)[:num_beams]
        completed = _by_score(completed)
        if max_completed is not None:
            completed = completed[:max_completed]
        steps = step + 1

        if on_step is not None:
            on_step(BeamStepInfo(step=steps, active=list(active), completed=list(completed)))

    pool = completed + active
    if not pool:
        raise NoTranslationError("Beam search produced no candidate sequences")

    best = max(pool, key=lambda h: (h.average_score(length_penalty), -h.order))
    logger.debug(
        "Beam search finished after %d steps (%d completed, best score %.4f)",
        steps, len(completed), best.score,
    )
    return BeamSearchResult(tokens=list(best.tokens), score=best.score, steps=steps, completed=completed)
