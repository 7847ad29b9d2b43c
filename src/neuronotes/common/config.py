from __future__ import annotations

import os
from typing import Literal, Optional

from pydantic import BaseModel, Field


class ModelConfig(BaseModel):
    backend: Literal["torch", "onnx"] = "torch"
    model_id: str = "EleutherAI/pythia-160m"
    onnx_path: str = "./exported_model/model.onnx"
    tokenizer_path: str = "./exported_model/tokenizer.json"
    device: str = "cpu"   # change to "cuda" if you have it
    dtype: str = "float32"
    hf_token: Optional[str] = None
    max_concurrency: int = Field(default=1, ge=1)
    infer_timeout_s: Optional[float] = Field(default=None, gt=0)
    max_new_tokens_default: int = 64


class StoreConfig(BaseModel):
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    persist_directory: Optional[str] = "./vector_db"
    collection: str = "neuro_sessions"
    signal_length: int = 2560
    embed_samples: int = 512
    top_k_default: int = 3


class AppConfig(BaseModel):
    model: ModelConfig = Field(default_factory=ModelConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)

    @classmethod
    def from_env(cls, environ=None) -> "AppConfig":
        env = os.environ if environ is None else environ
        model_kwargs = {}
        store_kwargs = {}

        for key, field_name in (
            ("NEURONOTES_BACKEND", "backend"),
            ("NEURONOTES_MODEL_ID", "model_id"),
            ("NEURONOTES_ONNX_PATH", "onnx_path"),
            ("NEURONOTES_TOKENIZER_PATH", "tokenizer_path"),
            ("NEURONOTES_DEVICE", "device"),
            ("NEURONOTES_DTYPE", "dtype"),
            ("NEURONOTES_MAX_CONCURRENCY", "max_concurrency"),
            ("NEURONOTES_INFER_TIMEOUT_S", "infer_timeout_s"),
        ):
            if env.get(key):
                model_kwargs[field_name] = env[key]
        if env.get("HUGGING_FACE_TOKEN"):
            model_kwargs["hf_token"] = env["HUGGING_FACE_TOKEN"]

        for key, field_name in (
            ("NEURONOTES_EMBEDDING_MODEL", "embedding_model"),
            ("NEURONOTES_PERSIST_DIR", "persist_directory"),
            ("NEURONOTES_COLLECTION", "collection"),
        ):
            if env.get(key):
                store_kwargs[field_name] = env[key]

        return cls(model=ModelConfig(**model_kwargs), store=StoreConfig(**store_kwargs))
