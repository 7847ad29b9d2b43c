from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import List, Literal, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field, ValidationError

from neuronotes.common.config import AppConfig
from neuronotes.common.errors import (
    DuplicateSession,
    EndpointTimeout,
    EndpointUnavailable,
    InvalidPrompt,
    NeuroNotesError,
    QueueFull,
    SessionStoreError,
    ShapeMismatch,
)
from neuronotes.engine.endpoint import EndpointAdapter
from neuronotes.engine.model_loader import load_endpoint, load_tokenizer
from neuronotes.engine.request import DecodingConfig, GreedyPolicy, TopPPolicy
from neuronotes.engine.runner import InferenceRunner
from neuronotes.engine.scheduler import DecodeScheduler, WorkItem
from neuronotes.sessions.service import SentenceEmbedder, SessionService
from neuronotes.sessions.vector_store import FaissVectorStore

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = (
    (InvalidPrompt, 400),
    (EndpointUnavailable, 503),
    (EndpointTimeout, 504),
    (ShapeMismatch, 500),
    (QueueFull, 429),
    (DuplicateSession, 409),
    (SessionStoreError, 400),
)


def status_for(exc: Exception) -> int:
    for cls, status in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return status
    return 500


class GenerateRequest(BaseModel):
    prompt: str = Field(..., description="Prompt text")
    max_new_tokens: int = Field(default=64, ge=0)
    policy: Literal["greedy", "top_p"] = "greedy"
    temperature: float = 1.0
    top_p: float = 0.9
    repetition_penalty: float = 1.0
    eos_token_id: Optional[int] = Field(default=None, description="Defaults to the tokenizer's EOS id")
    seed: Optional[int] = None
    stream: bool = False


class StoreSessionRequest(BaseModel):
    session_id: str
    note: str
    analyze: bool = True


class SearchRequest(BaseModel):
    query: str
    top_k: int = Field(default=3, ge=1)


class SearchHitModel(BaseModel):
    id: str
    document: str
    metadata: dict
    score: float


class SearchResponse(BaseModel):
    results: List[SearchHitModel]


def _decoding_config(req: GenerateRequest, eos_default: Optional[int], timeout_s: Optional[float]) -> DecodingConfig:
    if req.policy == "top_p":
        policy = TopPPolicy(p=req.top_p, temperature=req.temperature, repetition_penalty=req.repetition_penalty)
    else:
        policy = GreedyPolicy(repetition_penalty=req.repetition_penalty)
    return DecodingConfig(
        max_new_tokens=req.max_new_tokens,
        policy=policy,
        eos_token_id=req.eos_token_id if req.eos_token_id is not None else eos_default,
        seed=req.seed,
        timeout_s=timeout_s,
    )


def _build_services(config: AppConfig):
    tokenizer = load_tokenizer(config.model)
    endpoint = load_endpoint(config.model)
    runner = InferenceRunner(EndpointAdapter(endpoint), tokenizer, default_timeout_s=config.model.infer_timeout_s)
    store = FaissVectorStore(persist_directory=config.store.persist_directory, name=config.store.collection)
    sessions = SessionService(SentenceEmbedder(config.store.embedding_model), store, runner, config=config.store)
    return runner, sessions


def create_app(runner=None, sessions=None, scheduler: Optional[DecodeScheduler] = None, config: Optional[AppConfig] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal runner, sessions, scheduler
        if runner is None:
            cfg = config or AppConfig.from_env()
            logger.info("Initializing models and session store...")
            runner, built_sessions = _build_services(cfg)
            sessions = sessions or built_sessions
        if scheduler is None:
            scheduler = DecodeScheduler(runner)

        app.state.runner = runner
        app.state.sessions = sessions
        app.state.scheduler = scheduler
        await scheduler.start()
        logger.info("Service ready")

        yield

        logger.info("Shutting down decode scheduler...")
        await scheduler.stop()
        runner.adapter.close()

    app = FastAPI(title="neuronotes", lifespan=lifespan)

    @app.exception_handler(NeuroNotesError)
    async def _neuronotes_error(request: Request, exc: NeuroNotesError):
        return JSONResponse(status_code=status_for(exc), content={"error": exc.kind, "message": str(exc)})

    @app.get("/health")
    def health():
        r = getattr(app.state, "runner", None)
        ready = r is not None and r.is_ready
        return {"status": "ok" if ready else "not_ready", "model_loaded": ready}

    @app.post("/generate")
    async def generate(req: GenerateRequest):
        r = app.state.runner
        if r.tokenizer is None:
            raise HTTPException(status_code=503, detail="No tokenizer loaded")
        try:
            cfg = _decoding_config(req, r.tokenizer.eos_token_id, r.default_timeout_s)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=str(e))
        prompt_ids = r.tokenizer.encode(req.prompt)

        sched: DecodeScheduler = app.state.scheduler
        if not req.stream:
            return await sched.submit(prompt_ids, cfg)

        item = WorkItem(prompt_tokens=prompt_ids, config=cfg, stream=True, out_q=asyncio.Queue())
        await sched.enqueue(item)

        async def _events():
            try:
                while True:
                    msg = await item.out_q.get()
                    yield json.dumps(msg) + "\n"
                    if msg["type"] in ("done", "error"):
                        break
            finally:
                # Client went away or stream finished; stop decoding at the next step
                item.cancelled = True

        return StreamingResponse(_events(), media_type="application/x-ndjson")

    @app.post("/sessions")
    async def store_session(req: StoreSessionRequest):
        svc = app.state.sessions
        if svc is None:
            raise HTTPException(status_code=503, detail="Session store not configured")
        stored = await asyncio.to_thread(svc.store_session, req.session_id, req.note, analyze=req.analyze)
        return {
            "session_id": stored.session_id,
            "note": stored.note,
            "analysis": stored.analysis,
            "signal_preview": stored.signal_preview,
            "embedding_preview": [float(x) for x in stored.embedding[:5]],
        }

    @app.post("/sessions/search", response_model=SearchResponse)
    async def search_sessions(req: SearchRequest):
        svc = app.state.sessions
        if svc is None:
            raise HTTPException(status_code=503, detail="Session store not configured")
        hits = await asyncio.to_thread(svc.search_sessions, req.query, req.top_k)
        return SearchResponse(
            results=[SearchHitModel(id=h.id, document=h.document, metadata=h.metadata, score=h.score) for h in hits]
        )

    return app


app = create_app()
