from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Sequence

import torch

from neuronotes.common.errors import DecodeError, InvalidPrompt
from neuronotes.engine.endpoint import EndpointAdapter
from neuronotes.engine.request import DecodingConfig, GenerationResult, StopReason, TopPPolicy

logger = logging.getLogger(__name__)


def _apply_repetition_penalty(logits: torch.Tensor, history: Sequence[int], penalty: float) -> torch.Tensor:
    """Penalize every id in `history`: positive logits shrink, negative ones grow more negative."""
    if penalty == 1.0 or not history:
        return logits
    used = torch.tensor(sorted(set(history)), dtype=torch.long, device=logits.device)
    vals = logits.index_select(-1, used)
    penalized = torch.where(vals > 0, vals / penalty, vals * penalty)
    out = logits.clone()
    out[used] = penalized
    return out


def _argmax_lowest(logits: torch.Tensor) -> int:
    # torch.argmax returns the first maximal index
    return int(torch.argmax(logits, dim=-1).item())


def _top_p_filter(probs: torch.Tensor, top_p: float) -> tuple[torch.Tensor, torch.Tensor]:
    """Return (ids, renormalized probs) of the smallest prefix with cumulative mass >= top_p."""
    sorted_probs, sorted_idx = torch.sort(probs, descending=True, stable=True)
    cumsum = torch.cumsum(sorted_probs, dim=-1)
    # keep position i while the mass before it is still short of top_p
    keep = (cumsum - sorted_probs) < top_p
    keep[0] = True
    kept_probs = sorted_probs[keep]
    return sorted_idx[keep], kept_probs / kept_probs.sum()


def _sample_next_id(
    logits: torch.Tensor,
    *,
    temperature: float,
    top_p: float,
    generator: Optional[torch.Generator] = None,
) -> int:
    if temperature <= 0:
        return _argmax_lowest(logits)
    probs = torch.softmax(logits.float() / temperature, dim=-1)
    ids, kept = _top_p_filter(probs, top_p)
    choice = torch.multinomial(kept, num_samples=1, generator=generator)
    return int(ids[choice].item())


class InferenceRunner:
    def __init__(self, adapter: EndpointAdapter, tokenizer=None, *, default_timeout_s: Optional[float] = None):
        self.adapter = adapter
        self.tokenizer = tokenizer
        self.default_timeout_s = default_timeout_s

    @property
    def is_ready(self) -> bool:
        return self.adapter.is_ready

    def decode(
        self,
        prompt_tokens: Sequence[int],
        config: DecodingConfig,
        *,
        rng: Optional[torch.Generator] = None,
        cancel: Optional[Callable[[], bool]] = None,
        on_token: Optional[Callable[[int], None]] = None,
    ) -> GenerationResult:
        """
        Autoregressively extend `prompt_tokens` until EOS, `max_new_tokens` or
        cancellation. Only the newly generated ids are returned.

        The full working sequence is re-sent on every step. Adapter failures
        abort the loop; the raised error's `sequence` holds the working
        sequence as it was before the failing step.
        """
        if len(prompt_tokens) == 0:
            raise InvalidPrompt("prompt must contain at least one token")

        working = list(prompt_tokens)
        prompt_len = len(working)
        policy = config.policy
        timeout_s = config.timeout_s if config.timeout_s is not None else self.default_timeout_s

        if config.max_new_tokens == 0:
            return GenerationResult(token_ids=(), stop_reason=StopReason.LENGTH, prompt_tokens=prompt_len)

        if rng is None and isinstance(policy, TopPPolicy):
            rng = torch.Generator()
            if config.seed is not None:
                rng.manual_seed(config.seed)
            else:
                rng.seed()

        t0 = time.perf_counter()
        stop_reason = StopReason.LENGTH
        for _ in range(config.max_new_tokens):
            if cancel is not None and cancel():
                stop_reason = StopReason.CANCELLED
                break

            try:
                logits = self.adapter.infer(working, timeout_s=timeout_s)
            except DecodeError as e:
                e.sequence = list(working)
                logger.warning("Decode aborted after %d new tokens: %s", len(working) - prompt_len, e)
                raise

            logits = _apply_repetition_penalty(logits, working, policy.repetition_penalty)
            if isinstance(policy, TopPPolicy):
                tok = _sample_next_id(logits, temperature=policy.temperature, top_p=policy.p, generator=rng)
            else:
                tok = _argmax_lowest(logits)

            working.append(tok)
            if on_token is not None:
                on_token(tok)

            if config.eos_token_id is not None and tok == config.eos_token_id:
                stop_reason = StopReason.EOS
                break

        return GenerationResult(
            token_ids=tuple(working[prompt_len:]),
            stop_reason=stop_reason,
            prompt_tokens=prompt_len,
            decode_s=time.perf_counter() - t0,
        )

    def generate(
        self,
        prompt: str,
        config: DecodingConfig,
        **kwargs,
    ) -> tuple[str, GenerationResult]:
        if self.tokenizer is None:
            raise RuntimeError("InferenceRunner.generate needs a tokenizer")
        ids = self.tokenizer.encode(prompt)
        result = self.decode(ids, config, **kwargs)
        return self.decode_text(result.token_ids), result

    def decode_text(self, token_ids: Sequence[int]) -> str:
        return self.tokenizer.decode(list(token_ids))

    def decode_token(self, token_id: int) -> str:
        return self.tokenizer.decode([token_id])
