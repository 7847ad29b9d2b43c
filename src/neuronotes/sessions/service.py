from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
from sentence_transformers import SentenceTransformer

from neuronotes.common.config import StoreConfig
from neuronotes.common.errors import DuplicateSession, SessionStoreError
from neuronotes.engine.request import DecodingConfig, TopPPolicy
from neuronotes.engine.runner import InferenceRunner
from neuronotes.sessions.vector_store import FaissVectorStore, SearchHit

logger = logging.getLogger(__name__)

ANALYZER_INSTRUCTION = (
    "You are a neurophysiological data analyzer. Given a set of neurological data, "
    "decipher it and report its status. Data: "
)


@dataclass(frozen=True)
class Profile:
    tone: str = "technical"
    style: str = "analytical"


@dataclass
class StoredSession:
    session_id: str
    note: str
    embedding: np.ndarray
    signal_preview: list[float]
    analysis: Optional[str] = None


class SentenceEmbedder:
    """Mean-pooled, L2-normalized sentence embeddings."""

    def __init__(self, model_name: str = "sentence-transformers/all-MiniLM-L6-v2", model=None):
        self.model_name = model_name
        self.model = model if model is not None else SentenceTransformer(model_name)

    def encode(self, text: str) -> np.ndarray:
        return np.asarray(
            self.model.encode(text, convert_to_numpy=True, normalize_embeddings=True),
            dtype=np.float32,
        )


def simulate_eeg(length: int = 2560, rng: Optional[np.random.Generator] = None) -> np.ndarray:
    """Placeholder EEG reading: uniform noise in [0, 100)."""
    rng = rng if rng is not None else np.random.default_rng()
    return rng.random(length) * 100.0


def signal_to_text(signal: Sequence[float], limit: int = 512) -> str:
    return " ".join(str(float(x)) for x in list(signal)[:limit])


def build_analysis_prompt(embedding: Sequence[float], profile: Profile = Profile(), limit: int = 80) -> str:
    data = " ".join(str(float(x)) for x in list(embedding)[:limit])
    system_prompt = f"You're a {profile.tone} assistant. Be {profile.style}."
    return system_prompt + "\nUser: " + ANALYZER_INSTRUCTION + data + "\nAI:"


def analysis_decoding_config(eos_token_id: Optional[int] = None, **overrides) -> DecodingConfig:
    params = dict(
        max_new_tokens=500,
        policy=TopPPolicy(p=0.9, temperature=0.2, repetition_penalty=1.2),
        eos_token_id=eos_token_id,
    )
    params.update(overrides)
    return DecodingConfig(**params)


class SessionService:
    def __init__(
        self,
        embedder,
        store: FaissVectorStore,
        runner: Optional[InferenceRunner] = None,
        *,
        config: Optional[StoreConfig] = None,
        profile: Profile = Profile(),
        decoding: Optional[DecodingConfig] = None,
    ):
        self.embedder = embedder
        self.store = store
        self.runner = runner
        self.config = config or StoreConfig()
        self.profile = profile
        self.decoding = decoding

    def extract_embedding(self, signal: Sequence[float]) -> np.ndarray:
        return self.embedder.encode(signal_to_text(signal, self.config.embed_samples))

    def analyze(self, embedding: Sequence[float]) -> str:
        if self.runner is None:
            raise RuntimeError("SessionService.analyze needs an InferenceRunner")
        decoding = self.decoding
        if decoding is None:
            eos = getattr(self.runner.tokenizer, "eos_token_id", None)
            decoding = analysis_decoding_config(eos_token_id=eos)
        text, result = self.runner.generate(build_analysis_prompt(embedding, self.profile), decoding)
        logger.info("Analysis finished: %d tokens (%s)", result.tokens_generated, result.stop_reason.value)
        return text

    def check_session_id(self, session_id: str) -> str:
        """Return the stripped id, or raise if it is empty or already stored."""
        session_id = session_id.strip()
        if not session_id:
            raise SessionStoreError("session id must not be empty")
        if session_id in self.store:
            raise DuplicateSession(f"session {session_id!r} already exists")
        return session_id

    def store_session(
        self,
        session_id: str,
        note: str,
        signal: Optional[Sequence[float]] = None,
        *,
        embedding: Optional[Sequence[float]] = None,
        analyze: bool = True,
    ) -> StoredSession:
        session_id = self.check_session_id(session_id)

        if signal is None:
            signal = simulate_eeg(self.config.signal_length)
        if embedding is None:
            embedding = self.extract_embedding(signal)
        analysis = self.analyze(embedding) if (analyze and self.runner is not None) else None

        self.store.add(session_id, embedding, metadata={"note": note}, document=note)
        logger.info("Stored session %s (%d total)", session_id, self.store.count())
        return StoredSession(
            session_id=session_id,
            note=note,
            embedding=embedding,
            signal_preview=[float(x) for x in list(signal)[:5]],
            analysis=analysis,
        )

    def search_sessions(self, query: str, top_k: Optional[int] = None) -> list[SearchHit]:
        k = self.config.top_k_default if top_k is None else top_k
        hits = self.store.query(self.embedder.encode(query), k)
        logger.info("Search %r returned %d hits", query, len(hits))
        return hits
