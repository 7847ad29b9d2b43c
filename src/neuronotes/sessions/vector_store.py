from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Optional

import faiss
import numpy as np

from neuronotes.common.errors import DuplicateSession, SessionStoreError

logger = logging.getLogger(__name__)

_INDEX_FILE = "index.faiss"
_META_FILE = "metadata.json"


@dataclass
class SearchHit:
    id: str
    document: str
    metadata: dict[str, Any] = field(default_factory=dict)
    score: float = 0.0


def _normalize(x: np.ndarray) -> np.ndarray:
    return x / (np.linalg.norm(x, axis=1, keepdims=True) + 1e-12)


class FaissVectorStore:
    """
    Inner-product nearest-neighbour store over unit-normalized embeddings.

    Row i of the faiss index belongs to `self._ids[i]`; documents and metadata
    are kept alongside and persisted as JSON next to the index.
    """

    def __init__(self, dim: Optional[int] = None, *, persist_directory: Optional[str] = None, name: str = "neuro_sessions"):
        self.name = name
        self.persist_directory = persist_directory
        self._index: Optional[faiss.Index] = faiss.IndexFlatIP(dim) if dim else None
        self._ids: list[str] = []
        self._documents: list[str] = []
        self._metadatas: list[dict[str, Any]] = []
        if persist_directory:
            self._load()

    @property
    def dim(self) -> Optional[int]:
        return self._index.d if self._index is not None else None

    def _dir(self) -> str:
        return os.path.join(self.persist_directory, self.name)

    def _load(self) -> None:
        index_path = os.path.join(self._dir(), _INDEX_FILE)
        meta_path = os.path.join(self._dir(), _META_FILE)
        if not (os.path.exists(index_path) and os.path.exists(meta_path)):
            return
        self._index = faiss.read_index(index_path)
        with open(meta_path, "r", encoding="utf-8") as f:
            meta = json.load(f)
        self._ids = list(meta["ids"])
        self._documents = list(meta["documents"])
        self._metadatas = list(meta["metadatas"])
        if len(self._ids) != self._index.ntotal:
            raise SessionStoreError(
                f"{meta_path} lists {len(self._ids)} sessions but the index holds {self._index.ntotal}"
            )
        logger.info("Loaded %d sessions from %s", len(self._ids), self._dir())

    def persist(self) -> None:
        if not self.persist_directory or self._index is None:
            return
        os.makedirs(self._dir(), exist_ok=True)
        faiss.write_index(self._index, os.path.join(self._dir(), _INDEX_FILE))
        with open(os.path.join(self._dir(), _META_FILE), "w", encoding="utf-8") as f:
            json.dump(
                {"ids": self._ids, "documents": self._documents, "metadatas": self._metadatas},
                f,
            )

    def count(self) -> int:
        return len(self._ids)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._ids

    def add(self, id: str, embedding, metadata: Optional[dict[str, Any]] = None, document: str = "") -> None:
        if id in self._ids:
            raise DuplicateSession(f"session {id!r} already exists")
        vec = _normalize(np.asarray(embedding, dtype=np.float32).reshape(1, -1))
        if self._index is None:
            self._index = faiss.IndexFlatIP(vec.shape[1])
        elif vec.shape[1] != self._index.d:
            raise SessionStoreError(f"embedding has dimension {vec.shape[1]}, store expects {self._index.d}")

        self._index.add(vec)
        self._ids.append(id)
        self._documents.append(document)
        self._metadatas.append(dict(metadata or {}))
        self.persist()

    def query(self, embedding, top_k: int = 3) -> list[SearchHit]:
        if self._index is None or not self._ids or top_k <= 0:
            return []
        qv = _normalize(np.asarray(embedding, dtype=np.float32).reshape(1, -1))
        if qv.shape[1] != self._index.d:
            raise SessionStoreError(f"query has dimension {qv.shape[1]}, store expects {self._index.d}")

        scores, rows = self._index.search(qv, min(top_k, len(self._ids)))
        hits = []
        for score, row in zip(scores[0], rows[0]):
            if row < 0:
                continue
            hits.append(
                SearchHit(
                    id=self._ids[row],
                    document=self._documents[row],
                    metadata=dict(self._metadatas[row]),
                    score=float(score),
                )
            )
        return hits
