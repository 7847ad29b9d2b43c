from __future__ import annotations

import concurrent.futures
import logging
from typing import Any, Optional, Protocol, Sequence

import numpy as np
import torch

from neuronotes.common.errors import EndpointTimeout, EndpointUnavailable, InvalidPrompt, ShapeMismatch
from neuronotes.engine.request import InferenceRequest

logger = logging.getLogger(__name__)


class InferenceEndpoint(Protocol):
    """Anything that maps (input_ids, attention_mask, position_ids) to logits.

    Implementations return logits shaped [1, length, vocab_size] as a numpy
    array or a torch tensor. `vocab_size` may be None when it is only known
    after the first call.
    """

    is_ready: bool
    vocab_size: Optional[int]
    max_concurrency: int

    def load(self) -> None: ...

    def __call__(self, input_ids: np.ndarray, attention_mask: np.ndarray, position_ids: np.ndarray) -> Any: ...


def _to_logits_tensor(raw: Any) -> torch.Tensor:
    if isinstance(raw, torch.Tensor):
        return raw.detach().to(device="cpu", dtype=torch.float32)
    return torch.as_tensor(np.asarray(raw), dtype=torch.float32)


class EndpointAdapter:
    """
    Shapes batch-of-1 requests for an inference endpoint and hands back the
    logits of the last real position.

    Every call goes through a worker pool sized by the endpoint's
    `max_concurrency`; with one worker, concurrent callers are served FIFO.
    """

    def __init__(self, endpoint: Optional[InferenceEndpoint], *, vocab_size: Optional[int] = None):
        self.endpoint = endpoint
        self._vocab_size = vocab_size
        if self._vocab_size is None and endpoint is not None:
            self._vocab_size = getattr(endpoint, "vocab_size", None)
        workers = max(1, int(getattr(endpoint, "max_concurrency", 1) or 1))
        self._pool = concurrent.futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="endpoint")

    @property
    def vocab_size(self) -> Optional[int]:
        return self._vocab_size

    @property
    def is_ready(self) -> bool:
        return self.endpoint is not None and bool(getattr(self.endpoint, "is_ready", False))

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    def _check_tokens(self, tokens: Sequence[int]) -> None:
        if len(tokens) == 0:
            raise InvalidPrompt("cannot run inference on an empty token sequence")
        upper = self._vocab_size
        for tid in tokens:
            if tid < 0 or (upper is not None and tid >= upper):
                raise InvalidPrompt(f"token id {tid} outside vocabulary [0, {upper})")

    def _check_response(self, logits: torch.Tensor, request: InferenceRequest) -> torch.Tensor:
        if logits.dim() == 2:
            logits = logits.unsqueeze(0)
        if logits.dim() != 3 or logits.shape[0] != 1:
            raise ShapeMismatch(f"expected logits shaped [1, {request.length}, vocab], got {tuple(logits.shape)}")
        if logits.shape[1] != request.length:
            raise ShapeMismatch(
                f"endpoint returned {logits.shape[1]} positions for a request of length {request.length}"
            )

        vocab = int(logits.shape[2])
        if self._vocab_size is None:
            logger.info("Discovered vocab size %d from first response", vocab)
            self._vocab_size = vocab
            self._check_tokens(request.input_ids[0].tolist())
        elif vocab != self._vocab_size:
            raise ShapeMismatch(f"endpoint returned vocab size {vocab}, expected {self._vocab_size}")
        return logits

    def infer_full(self, tokens: Sequence[int], *, timeout_s: Optional[float] = None) -> torch.Tensor:
        """Run the endpoint and return the whole [1, length, vocab] logits tensor."""
        if not self.is_ready:
            raise EndpointUnavailable("inference endpoint is not loaded")
        self._check_tokens(tokens)

        request = InferenceRequest.from_tokens(list(tokens))
        fut = self._pool.submit(
            self.endpoint,
            request.input_ids,
            request.attention_mask,
            request.position_ids,
        )
        try:
            raw = fut.result(timeout=timeout_s)
        except concurrent.futures.TimeoutError as e:
            fut.cancel()
            raise EndpointTimeout(f"endpoint did not respond within {timeout_s}s") from e

        return self._check_response(_to_logits_tensor(raw), request)

    def infer(self, tokens: Sequence[int], *, timeout_s: Optional[float] = None) -> torch.Tensor:
        """Return the last position's logits row, shaped [vocab_size]."""
        logits = self.infer_full(tokens, timeout_s=timeout_s)
        return logits[0, -1, :]
