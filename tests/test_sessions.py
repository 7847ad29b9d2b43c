from __future__ import annotations

import numpy as np
import pytest

from neuronotes.common.config import StoreConfig
from neuronotes.common.errors import DuplicateSession, SessionStoreError
from neuronotes.engine.request import GenerationResult, StopReason, TopPPolicy
from neuronotes.sessions.service import (
    ANALYZER_INSTRUCTION,
    Profile,
    SessionService,
    analysis_decoding_config,
    build_analysis_prompt,
    signal_to_text,
    simulate_eeg,
)
from neuronotes.sessions.vector_store import FaissVectorStore


class _KeywordEmbedder:
    """Three-axis embedding: counts of 'alpha', 'beta' and 'theta' in the text."""

    AXES = ("alpha", "beta", "theta")

    def __init__(self):
        self.calls: list[str] = []

    def encode(self, text: str) -> np.ndarray:
        self.calls.append(text)
        vec = np.array([text.count(word) for word in self.AXES], dtype=np.float32) + 1e-3
        return vec / np.linalg.norm(vec)


class _FakeTokenizer:
    eos_token_id = 2


class _FakeRunner:
    def __init__(self):
        self.tokenizer = _FakeTokenizer()
        self.prompts: list[str] = []
        self.configs = []

    def generate(self, prompt, config):
        self.prompts.append(prompt)
        self.configs.append(config)
        return "status: nominal", GenerationResult(token_ids=(5, 2), stop_reason=StopReason.EOS, prompt_tokens=3)


def test_vector_store_ranks_by_similarity():
    store = FaissVectorStore(3)
    store.add("a", [1.0, 0.0, 0.0], {"note": "alpha"}, "alpha")
    store.add("b", [0.0, 1.0, 0.0], {"note": "beta"}, "beta")
    store.add("c", [0.7, 0.7, 0.0], {"note": "mixed"}, "mixed")

    hits = store.query([1.0, 0.1, 0.0], top_k=2)

    assert [h.id for h in hits] == ["a", "c"]
    assert hits[0].document == "alpha"
    assert hits[0].metadata == {"note": "alpha"}
    assert hits[0].score > hits[1].score


def test_vector_store_caps_top_k_and_handles_empty():
    store = FaissVectorStore()
    assert store.query([1.0, 0.0], top_k=3) == []
    store.add("only", [0.0, 2.0])
    assert store.dim == 2
    assert [h.id for h in store.query([0.0, 1.0], top_k=5)] == ["only"]


def test_vector_store_rejects_duplicates_and_bad_dimensions():
    store = FaissVectorStore(2)
    store.add("s1", [1.0, 0.0])
    with pytest.raises(DuplicateSession):
        store.add("s1", [0.0, 1.0])
    with pytest.raises(SessionStoreError):
        store.add("s2", [1.0, 0.0, 0.0])
    with pytest.raises(SessionStoreError):
        store.query([1.0, 0.0, 0.0])
    assert store.count() == 1


def test_vector_store_persists_to_directory(tmp_path):
    store = FaissVectorStore(persist_directory=str(tmp_path), name="neuro_sessions")
    store.add("s1", [1.0, 0.0], {"note": "calm"}, "calm")
    store.add("s2", [0.0, 1.0], {"note": "alert"}, "alert")

    reopened = FaissVectorStore(persist_directory=str(tmp_path), name="neuro_sessions")

    assert reopened.count() == 2
    assert "s2" in reopened
    assert reopened.query([0.1, 1.0], top_k=1)[0].metadata == {"note": "alert"}


def test_simulate_eeg_shape_and_range():
    signal = simulate_eeg(2560, rng=np.random.default_rng(0))
    assert signal.shape == (2560,)
    assert signal.min() >= 0.0
    assert signal.max() < 100.0
    again = simulate_eeg(2560, rng=np.random.default_rng(0))
    assert np.array_equal(signal, again)


def test_signal_to_text_uses_leading_samples_only():
    text = signal_to_text([1, 2.5, 3, 4], limit=3)
    assert text == "1.0 2.5 3.0"


def test_analysis_prompt_layout():
    prompt = build_analysis_prompt([0.5] * 100, Profile(tone="technical", style="analytical"))
    head, _, rest = prompt.partition("\nUser: ")
    assert head == "You're a technical assistant. Be analytical."
    assert rest.startswith(ANALYZER_INSTRUCTION)
    assert rest.endswith("\nAI:")
    data = rest[len(ANALYZER_INSTRUCTION):-len("\nAI:")]
    assert len(data.split(" ")) == 80


def test_analysis_decoding_defaults():
    cfg = analysis_decoding_config(eos_token_id=7)
    assert cfg.max_new_tokens == 500
    assert cfg.eos_token_id == 7
    assert isinstance(cfg.policy, TopPPolicy)
    assert (cfg.policy.p, cfg.policy.temperature, cfg.policy.repetition_penalty) == (0.9, 0.2, 1.2)


def test_store_session_embeds_analyzes_and_stores():
    embedder = _KeywordEmbedder()
    runner = _FakeRunner()
    service = SessionService(embedder, FaissVectorStore(), runner, config=StoreConfig(embed_samples=4))

    stored = service.store_session("  s-001 ", "alpha heavy rest", signal=[10.0, 20.0, 30.0, 40.0, 50.0, 60.0])

    assert stored.session_id == "s-001"
    assert stored.analysis == "status: nominal"
    assert stored.signal_preview == [10.0, 20.0, 30.0, 40.0, 50.0]
    assert embedder.calls[0] == "10.0 20.0 30.0 40.0"
    assert runner.configs[0].eos_token_id == 2
    assert runner.prompts[0].startswith("You're a technical assistant. Be analytical.")
    assert "s-001" in service.store
    hit = service.store.query(stored.embedding, top_k=1)[0]
    assert hit.document == "alpha heavy rest"
    assert hit.metadata == {"note": "alpha heavy rest"}


def test_store_session_without_runner_skips_analysis():
    service = SessionService(_KeywordEmbedder(), FaissVectorStore(), config=StoreConfig(signal_length=16))
    stored = service.store_session("s1", "note")
    assert stored.analysis is None
    assert len(stored.signal_preview) == 5
    assert service.store.count() == 1


def test_store_session_rejects_empty_and_duplicate_ids_before_analysis():
    runner = _FakeRunner()
    service = SessionService(_KeywordEmbedder(), FaissVectorStore(), runner)
    with pytest.raises(SessionStoreError):
        service.store_session("   ", "note", signal=[1.0])
    service.store_session("s1", "note", signal=[1.0])
    with pytest.raises(DuplicateSession):
        service.store_session("s1", "other", signal=[2.0])
    assert len(runner.prompts) == 1


def test_search_sessions_ranks_notes_by_query():
    embedder = _KeywordEmbedder()
    store = FaissVectorStore()
    service = SessionService(embedder, store)
    store.add("a", embedder.encode("alpha alpha"), {"note": "relaxed"}, "relaxed")
    store.add("b", embedder.encode("beta beta"), {"note": "focused"}, "focused")
    store.add("t", embedder.encode("theta"), {"note": "drowsy"}, "drowsy")

    hits = service.search_sessions("beta activity", top_k=2)

    assert hits[0].id == "b"
    assert hits[0].document == "focused"
    assert len(hits) == 2
    assert len(service.search_sessions("theta")) == 3


def test_store_session_reuses_precomputed_embedding():
    embedder = _KeywordEmbedder()
    service = SessionService(embedder, FaissVectorStore(), _FakeRunner())

    assert service.check_session_id(" s9 ") == "s9"
    stored = service.store_session("s9", "theta burst", signal=[1.0, 2.0], embedding=[0.0, 0.0, 1.0], analyze=False)

    assert embedder.calls == []
    assert stored.analysis is None
    assert service.store.query([0.0, 0.0, 1.0], top_k=1)[0].id == "s9"
    with pytest.raises(DuplicateSession):
        service.check_session_id("s9")
