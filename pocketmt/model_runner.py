"""
Model Runners
Next-token logits from an encoder-decoder translation model (ONNX or PyTorch)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence

import numpy as np
import onnxruntime as ort
import torch
import torch.nn as nn

from .utils import get_device, logger

__all__ = ["ModelRunner", "OnnxModelRunner", "TorchModelRunner"]


class ModelRunner(ABC):
    """
    Computes next-token logits for one decoder prefix.

    Implementations take the encoder ids and the full decoder prefix and
    return a 1-D float tensor of size V for the last decoder position.
    """

    @abstractmethod
    def next_token_logits(
        self,
        encoder_input_ids: Sequence[int],
        decoder_input_ids: Sequence[int],
    ) -> torch.Tensor:
        ...

    def close(self) -> None:
        """Release runtime resources."""


def _last_position(logits: torch.Tensor) -> torch.Tensor:
    """Reduce (1, n, V) / (n, V) / (V,) logits to the (V,) row of the last position."""
    if logits.ndim == 3:
        return logits[0, -1]
    if logits.ndim == 2:
        return logits[-1]
    if logits.ndim == 1:
        return logits
    raise ValueError(f"Unexpected logits shape {tuple(logits.shape)}")


# ============================================================================
# ONNX RUNTIME
# ============================================================================

class OnnxModelRunner(ModelRunner):
    """
    Runs an exported encoder-decoder graph with onnxruntime.

    Feeds ``input_ids`` and ``decoder_input_ids`` (int64, shape (1, n)),
    plus ``attention_mask`` when the graph declares it, and reads the
    ``logits`` output.
    """

    def __init__(
        self,
        session: ort.InferenceSession,
        logits_name: str = "logits",
    ) -> None:
        self.session = session
        self.input_names: List[str] = [i.name for i in session.get_inputs()]
        output_names = [o.name for o in session.get_outputs()]
        if logits_name not in output_names:
            logger.warning(
                "ONNX graph has no '%s' output; using first output '%s'", logits_name, output_names[0]
            )
            logits_name = output_names[0]
        self.logits_name = logits_name

    @classmethod
    def from_bytes(
        cls,
        model_bytes: bytes,
        providers: Optional[List[str]] = None,
        intra_op_num_threads: Optional[int] = None,
    ) -> "OnnxModelRunner":
        """
        Create a runner from serialized model bytes.

        Args:
            model_bytes: Contents of ``model.onnx``
            providers: Execution providers (defaults to CPU)
            intra_op_num_threads: Optional thread count for the session
        """
        options = ort.SessionOptions()
        options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        if intra_op_num_threads:
            options.intra_op_num_threads = intra_op_num_threads
        session = ort.InferenceSession(
            model_bytes,
            sess_options=options,
            providers=providers or ["CPUExecutionProvider"],
        )
        logger.info("ONNX session created (inputs: %s)", ", ".join(i.name for i in session.get_inputs()))
        return cls(session)

    def build_feeds(
        self,
        encoder_input_ids: Sequence[int],
        decoder_input_ids: Sequence[int],
    ) -> Dict[str, np.ndarray]:
        input_ids = np.asarray([list(encoder_input_ids)], dtype=np.int64)
        feeds = {
            "input_ids": input_ids,
            "decoder_input_ids": np.asarray([list(decoder_input_ids)], dtype=np.int64),
        }
        if "attention_mask" in self.input_names:
            feeds["attention_mask"] = np.ones_like(input_ids)
        return feeds

    def next_token_logits(
        self,
        encoder_input_ids: Sequence[int],
        decoder_input_ids: Sequence[int],
    ) -> torch.Tensor:
        feeds = self.build_feeds(encoder_input_ids, decoder_input_ids)
        (logits,) = self.session.run([self.logits_name], feeds)
        return _last_position(torch.from_numpy(np.asarray(logits, dtype=np.float32)))


# ============================================================================
# PYTORCH
# ============================================================================

class TorchModelRunner(ModelRunner):
    """
    Wraps an ``nn.Module`` called as ``model(input_ids, decoder_input_ids)``.

    The module may return logits of shape (1, n, V) or a tuple whose first
    item is the logits.
    """

    def __init__(self, model: nn.Module, device: Optional[torch.device] = None) -> None:
        self.device = device or get_device()
        self.model = model.to(self.device)
        self.model.eval()

    @torch.no_grad()
    def next_token_logits(
        self,
        encoder_input_ids: Sequence[int],
        decoder_input_ids: Sequence[int],
    ) -> torch.Tensor:
        src = torch.tensor([list(encoder_input_ids)], dtype=torch.long, device=self.device)
        tgt = torch.tensor([list(decoder_input_ids)], dtype=torch.long, device=self.device)
        output = self.model(src, tgt)
        if isinstance(output, (tuple, list)):
            output = output[0]
        return _last_position(output).detach().float().cpu()
