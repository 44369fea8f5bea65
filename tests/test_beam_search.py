"""
Beam Search Tests

Covers:
- Stable softmax and candidate selection
- BeamHypothesis scoring and length penalty
- Pruning to the beam width, termination within max_length
- Completed-set cap, cancellation and empty-result handling
"""

import math

import pytest
import torch

from pocketmt.errors import DecodingCancelledError, NoTranslationError
from pocketmt.generation_utils import (
    BeamHypothesis,
    generate_with_beam_search,
    stable_softmax,
    top_k_candidates,
)

from conftest import ScriptedRunner, peaked_logits

START = 8
EOS = 1
V = 10


# ============================================================================
# Softmax / top-k Tests
# ============================================================================

class TestStableSoftmax:
    """Tests for numerically stable softmax."""

    def test_sums_to_one(self) -> None:
        probs = stable_softmax([1.0, 2.0, 3.0])
        assert probs.dtype == torch.float64
        assert math.isclose(float(probs.sum()), 1.0, rel_tol=1e-12)
        assert probs[2] > probs[1] > probs[0]

    def test_large_logits_do_not_overflow(self) -> None:
        probs = stable_softmax(torch.tensor([1000.0, 1000.0]))
        assert probs.tolist() == [0.5, 0.5]

    def test_all_negative_infinity_is_uniform(self) -> None:
        probs = stable_softmax([float("-inf")] * 4)
        assert probs.tolist() == [0.25] * 4

    def test_nan_is_uniform(self) -> None:
        probs = stable_softmax([0.0, float("nan"), 1.0, 2.0])
        assert probs.tolist() == [0.25] * 4

    def test_negative_infinity_entries_get_zero(self) -> None:
        probs = stable_softmax([0.0, float("-inf")])
        assert probs.tolist() == [1.0, 0.0]

    def test_empty_rejected(self) -> None:
        with pytest.raises(ValueError, match="empty"):
            stable_softmax([])


class TestTopKCandidates:
    """Tests for candidate selection."""

    def test_descending_order(self) -> None:
        probs = torch.tensor([0.1, 0.5, 0.4], dtype=torch.float64)
        assert top_k_candidates(probs, 2) == [(1, 0.5), (2, 0.4)]

    def test_ties_keep_ascending_ids(self) -> None:
        probs = torch.full((5,), 0.2, dtype=torch.float64)
        assert [token for token, _ in top_k_candidates(probs, 3)] == [0, 1, 2]

    def test_min_probability_filter(self) -> None:
        probs = torch.tensor([1e-12, 0.3, 0.7], dtype=torch.float64)
        assert [token for token, _ in top_k_candidates(probs, 3)] == [2, 1]

    def test_k_larger_than_vocabulary(self) -> None:
        probs = torch.tensor([0.6, 0.4], dtype=torch.float64)
        assert len(top_k_candidates(probs, 10)) == 2


# ============================================================================
# BeamHypothesis Tests
# ============================================================================

class TestBeamHypothesis:
    """Tests for BeamHypothesis scoring."""

    def test_length_calculation(self) -> None:
        hyp = BeamHypothesis(tokens=[1, 5, 7, 2], score=-5.0)
        assert len(hyp) == 4

    def test_zero_penalty_is_raw_score(self) -> None:
        hyp = BeamHypothesis(tokens=[1, 5, 7, 2], score=-8.0)
        assert hyp.average_score() == -8.0

    def test_average_score_penalty_1(self) -> None:
        """With penalty=1.0, score is divided by length."""
        hyp = BeamHypothesis(tokens=[1, 5, 7, 2], score=-8.0)
        assert hyp.average_score(length_penalty=1.0) == -2.0

    def test_extend_accumulates_log_probability(self) -> None:
        hyp = BeamHypothesis(tokens=[START], score=0.0).extend(4, 0.5, order=1)
        assert hyp.tokens == [START, 4]
        assert math.isclose(hyp.score, math.log(0.5))
        assert not hyp.completed


# ============================================================================
# Beam Search Tests
# ============================================================================

def _peaked_script():
    return {
        (START,): peaked_logits(V, 4),
        (START, 4): peaked_logits(V, 5),
        (START, 4, 5): peaked_logits(V, EOS),
    }


class TestGenerateWithBeamSearch:
    """Tests for the decoding loop."""

    def test_follows_peaked_distribution(self) -> None:
        runner = ScriptedRunner(V, script=_peaked_script())
        result = generate_with_beam_search(
            runner, [6, 4, 5, 1], decoder_start_id=START, eos_id=EOS, num_beams=2, max_length=6
        )
        assert result.tokens == [START, 4, 5, EOS]
        assert result.score < 0
        assert result.num_completed >= 1
        assert runner.calls[0] == ((6, 4, 5, 1), (START,))

    def test_one_call_on_first_step(self) -> None:
        runner = ScriptedRunner(V, script=_peaked_script())
        seen = []
        generate_with_beam_search(
            runner, [0], START, EOS, num_beams=3, max_length=4, on_step=seen.append
        )
        assert seen[0].step == 1
        assert len([call for call in runner.calls if call[1] == (START,)]) == 1

    def test_pruned_to_beam_width_and_sorted(self) -> None:
        runner = ScriptedRunner(V, default=lambda prefix: [float(i % 3) for i in range(V)])
        steps = []
        generate_with_beam_search(
            runner, [0], START, eos_id=9, num_beams=3, max_length=6, on_step=steps.append
        )
        for info in steps:
            assert len(info.active) <= 3
            scores = [h.score for h in info.active]
            assert scores == sorted(scores, reverse=True)
            completed = [h.score for h in info.completed]
            assert completed == sorted(completed, reverse=True)

    def test_terminates_within_max_length(self) -> None:
        """Without eos every hypothesis completes on reaching max_length."""
        runner = ScriptedRunner(V)
        result = generate_with_beam_search(runner, [0], START, eos_id=9, num_beams=2, max_length=5)
        assert result.steps <= 5
        assert len(result.tokens) == 5
        assert all(len(h) <= 5 for h in result.completed)

    def test_max_length_one_completes_on_first_step(self) -> None:
        """Every extension of the seed already reaches the limit."""
        runner = ScriptedRunner(V)
        result = generate_with_beam_search(runner, [0], START, EOS, num_beams=2, max_length=1)
        assert result.steps == 1
        assert all(h.completed for h in result.completed)
        assert len(result.tokens) == 2

    def test_ties_prefer_earliest_discovered(self) -> None:
        logits = [float("-inf")] * V
        logits[EOS] = 5.0
        logits[2] = 5.0
        runner = ScriptedRunner(V, script={(START,): logits})
        result = generate_with_beam_search(runner, [0], START, EOS, num_beams=2, max_length=2)
        assert result.tokens == [START, EOS]

    def test_length_penalty_changes_winner(self) -> None:
        """Short eos hypothesis wins on raw score, longer one after normalization."""
        short_vs_long = [float("-inf")] * V
        short_vs_long[EOS] = math.log(0.5)
        short_vs_long[4] = math.log(0.4)
        short_vs_long[6] = math.log(0.1)
        script = {
            (START,): short_vs_long,
            (START, 4): peaked_logits(V, 5, high=30.0),
            (START, 4, 5): peaked_logits(V, EOS, high=30.0),
        }
        raw = generate_with_beam_search(
            ScriptedRunner(V, script=script), [0], START, EOS, num_beams=1, max_length=6
        )
        normalized = generate_with_beam_search(
            ScriptedRunner(V, script=script), [0], START, EOS, num_beams=1, max_length=6,
            length_penalty=1.0,
        )
        assert raw.tokens == [START, EOS]
        assert normalized.tokens == [START, 4, 5, EOS]

    def test_max_completed_caps_completed_set(self) -> None:
        runner = ScriptedRunner(V)
        result = generate_with_beam_search(
            runner, [0], START, eos_id=0, num_beams=3, max_length=5, max_completed=2
        )
        assert result.num_completed <= 2

    def test_cancellation(self) -> None:
        runner = ScriptedRunner(V)
        checks = iter([False, False, True])
        with pytest.raises(DecodingCancelledError, match="step 2"):
            generate_with_beam_search(
                runner, [0], START, eos_id=9, num_beams=2, max_length=10,
                should_cancel=lambda: next(checks),
            )

    def test_no_candidates_raises(self) -> None:
        runner = ScriptedRunner(V)
        with pytest.raises(NoTranslationError):
            generate_with_beam_search(
                runner, [0], START, EOS, num_beams=2, max_length=5, min_probability=1.0
            )

    @pytest.mark.parametrize("kwargs", [{"num_beams": 0}, {"max_length": 0}, {"oversample_factor": 0}])
    def test_invalid_arguments(self, kwargs) -> None:
        with pytest.raises(ValueError):
            generate_with_beam_search(ScriptedRunner(V), [0], START, EOS, **kwargs)
