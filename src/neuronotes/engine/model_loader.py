from __future__ import annotations

import logging
import os
from typing import Optional

import numpy as np
import onnxruntime as ort
import torch
from transformers import AutoModelForCausalLM, AutoTokenizer, PreTrainedTokenizerFast

from neuronotes.common.config import ModelConfig
from neuronotes.common.errors import EndpointUnavailable

logger = logging.getLogger(__name__)


def _dtype_from_str(s: str):
    s = s.lower()
    if s in ("float16", "fp16"):
        return torch.float16
    if s in ("bfloat16", "bf16"):
        return torch.bfloat16
    return torch.float32


class HFTokenizer:
    """Thin encode/decode facade over a Hugging Face tokenizer."""

    def __init__(self, tokenizer):
        self._tok = tokenizer

    @property
    def eos_token_id(self) -> Optional[int]:
        return self._tok.eos_token_id

    def encode(self, text: str) -> list[int]:
        return list(self._tok.encode(text, add_special_tokens=False))

    def decode(self, ids: list[int]) -> str:
        return self._tok.decode(ids, skip_special_tokens=True)


class OnnxEndpoint:
    """
    Causal LM exported to ONNX, served through onnxruntime.

    Only the inputs the graph declares are fed; exports without
    `position_ids` simply never receive them.
    """

    def __init__(self, model_path: str, *, device: str = "cpu", max_concurrency: int = 1):
        self.model_path = model_path
        self.device = device
        self.max_concurrency = max_concurrency
        self.session: Optional[ort.InferenceSession] = None
        self.vocab_size: Optional[int] = None
        self.active_provider = ""
        self.is_ready = False
        self._input_names: tuple[str, ...] = ()
        self._logits_output: Optional[str] = None

    def load(self) -> None:
        logger.info("Loading ONNX model from %s", self.model_path)
        if not os.path.exists(self.model_path):
            raise EndpointUnavailable(f"ONNX model not found at {self.model_path}")

        available_providers = ort.get_available_providers()
        providers = []
        if self.device == "cuda" and "CUDAExecutionProvider" in available_providers:
            providers.append(("CUDAExecutionProvider", {"device_id": 0}))
        providers.append("CPUExecutionProvider")

        sess_options = ort.SessionOptions()
        sess_options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        self.session = ort.InferenceSession(self.model_path, sess_options=sess_options, providers=providers)

        active_providers = self.session.get_providers()
        self.active_provider = active_providers[0] if active_providers else "Unknown"
        self._input_names = tuple(i.name for i in self.session.get_inputs())

        outputs = self.session.get_outputs()
        logits_meta = next((o for o in outputs if o.name == "logits"), outputs[0])
        self._logits_output = "logits" if logits_meta.name == "logits" else None

        # Static last axis of the logits output, if the export recorded one
        out_shape = logits_meta.shape
        if out_shape and isinstance(out_shape[-1], int):
            self.vocab_size = out_shape[-1]

        self.is_ready = True
        logger.info("ONNX model ready on %s (inputs=%s, vocab=%s)", self.active_provider, self._input_names, self.vocab_size)

    def __call__(self, input_ids: np.ndarray, attention_mask: np.ndarray, position_ids: np.ndarray) -> np.ndarray:
        if not self.is_ready or self.session is None:
            raise EndpointUnavailable("ONNX session not loaded. Call load() first.")
        feeds = {
            "input_ids": input_ids,
            "attention_mask": attention_mask,
            "position_ids": position_ids,
        }
        feeds = {name: value for name, value in feeds.items() if name in self._input_names}
        if self._logits_output is not None:
            return self.session.run([self._logits_output], feeds)[0]
        return self.session.run(None, feeds)[0]


class TorchEndpoint:
    """Causal LM loaded with transformers and run in eval mode."""

    def __init__(
        self,
        model_id: str,
        *,
        device: str = "cpu",
        dtype: str = "float32",
        token: Optional[str] = None,
        max_concurrency: int = 1,
        model=None,
    ):
        self.model_id = model_id
        self.device = device
        self.dtype = dtype
        self.token = token
        self.max_concurrency = max_concurrency
        self.model = model
        self.vocab_size: Optional[int] = None
        self.is_ready = False
        if model is not None:
            self._finish_load()

    def load(self) -> None:
        logger.info("Loading %s (dtype=%s)", self.model_id, self.dtype)
        self.model = AutoModelForCausalLM.from_pretrained(
            self.model_id,
            torch_dtype=_dtype_from_str(self.dtype),
            token=self.token,
        )
        self._finish_load()

    def _finish_load(self) -> None:
        self.model.eval()
        if self.device == "cuda" and torch.cuda.is_available():
            self.model.to("cuda")
        else:
            self.device = "cpu"
            self.model.to("cpu")
        config = getattr(self.model, "config", None)
        self.vocab_size = getattr(config, "vocab_size", None)
        self.is_ready = True

    @torch.inference_mode()
    def __call__(self, input_ids: np.ndarray, attention_mask: np.ndarray, position_ids: np.ndarray) -> torch.Tensor:
        if not self.is_ready or self.model is None:
            raise EndpointUnavailable("model not loaded. Call load() first.")
        out = self.model(
            input_ids=torch.from_numpy(input_ids).to(self.device),
            attention_mask=torch.from_numpy(attention_mask).to(self.device),
            position_ids=torch.from_numpy(position_ids).to(self.device),
            use_cache=False,
            return_dict=True,
        )
        return out.logits


def load_tokenizer(cfg: ModelConfig) -> HFTokenizer:
    if cfg.backend == "onnx":
        tokenizer = PreTrainedTokenizerFast(tokenizer_file=cfg.tokenizer_path)
    else:
        tokenizer = AutoTokenizer.from_pretrained(cfg.model_id, use_fast=True, token=cfg.hf_token)
    return HFTokenizer(tokenizer)


def load_endpoint(cfg: ModelConfig):
    if cfg.backend == "onnx":
        endpoint = OnnxEndpoint(cfg.onnx_path, device=cfg.device, max_concurrency=cfg.max_concurrency)
    else:
        endpoint = TorchEndpoint(
            cfg.model_id,
            device=cfg.device,
            dtype=cfg.dtype,
            token=cfg.hf_token,
            max_concurrency=cfg.max_concurrency,
        )
    endpoint.load()
    return endpoint
