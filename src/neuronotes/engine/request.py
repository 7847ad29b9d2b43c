from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Literal, Optional, Union

import numpy as np
from pydantic import BaseModel, ConfigDict, Field


@dataclass(frozen=True)
class InferenceRequest:
    input_ids: np.ndarray
    attention_mask: np.ndarray
    position_ids: np.ndarray

    @classmethod
    def from_tokens(cls, tokens: list[int]) -> "InferenceRequest":
        n = len(tokens)
        return cls(
            input_ids=np.asarray([tokens], dtype=np.int64),
            attention_mask=np.ones((1, n), dtype=np.int64),
            position_ids=np.arange(n, dtype=np.int64).reshape(1, n),
        )

    @property
    def length(self) -> int:
        return int(self.input_ids.shape[1])


class GreedyPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["greedy"] = "greedy"
    repetition_penalty: float = Field(default=1.0, gt=0)


class TopPPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["top_p"] = "top_p"
    p: float = Field(default=0.9, gt=0, le=1.0)
    temperature: float = Field(default=1.0, gt=0)
    repetition_penalty: float = Field(default=1.0, gt=0)


class DecodingConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_new_tokens: int = Field(default=64, ge=0)
    policy: Union[GreedyPolicy, TopPPolicy] = Field(default_factory=GreedyPolicy, discriminator="kind")
    eos_token_id: Optional[int] = None
    seed: Optional[int] = None
    timeout_s: Optional[float] = Field(default=None, gt=0)


class StopReason(str, enum.Enum):
    EOS = "eos"
    LENGTH = "length"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class GenerationResult:
    token_ids: tuple[int, ...]
    stop_reason: StopReason
    prompt_tokens: int
    decode_s: float = 0.0

    @property
    def tokens_generated(self) -> int:
        return len(self.token_ids)
