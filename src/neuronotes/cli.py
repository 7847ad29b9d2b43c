from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Callable, Optional

from neuronotes.common.config import AppConfig
from neuronotes.common.errors import NeuroNotesError
from neuronotes.engine.endpoint import EndpointAdapter
from neuronotes.engine.model_loader import load_endpoint, load_tokenizer
from neuronotes.engine.request import DecodingConfig, GreedyPolicy, TopPPolicy
from neuronotes.engine.runner import InferenceRunner
from neuronotes.sessions.service import SentenceEmbedder, SessionService, simulate_eeg
from neuronotes.sessions.vector_store import FaissVectorStore

logger = logging.getLogger(__name__)

_QUIT_WORDS = ("quit", "exit")


def _preview(values, n: int = 5) -> str:
    return ", ".join(str(float(v)) for v in list(values)[:n])


def run_chat_repl(
    runner: InferenceRunner,
    config: DecodingConfig,
    *,
    input_fn: Callable[[str], str] = input,
    out: Callable[[str], None] = print,
) -> None:
    out("Welcome to the neuronotes assistant. Type 'quit' to exit.")
    while True:
        try:
            prompt = input_fn("You: ")
        except EOFError:
            break
        if prompt.strip().lower() in _QUIT_WORDS:
            out("Exiting... Goodbye!")
            break
        try:
            text, _ = runner.generate(prompt, config)
        except NeuroNotesError as e:
            out(f"error ({e.kind}): {e}")
            continue
        out(f"AI: {text}")


def run_sessions_repl(
    service: SessionService,
    *,
    input_fn: Callable[[str], str] = input,
    out: Callable[[str], None] = print,
) -> None:
    while True:
        try:
            cmd = input_fn("Command (store/search/exit): ").strip().lower()
        except EOFError:
            break

        if cmd == "store":
            out("Simulating EEG...")
            signal = simulate_eeg(service.config.signal_length)
            out(f"Signal reading: {_preview(signal)}...")
            out("Extracting embedding...")
            embedding = service.extract_embedding(signal)

            note = input_fn("Enter a note for this session: ")
            session_id = input_fn("Enter a session ID: ")
            try:
                session_id = service.check_session_id(session_id)
                out(f"Embedding reading: {_preview(embedding)}...")
                if service.runner is not None:
                    analysis = service.analyze(embedding)
                    out("--- Analysis ---")
                    out(analysis)
                out("Storing session...")
                service.store_session(session_id, note, signal, embedding=embedding, analyze=False)
            except NeuroNotesError as e:
                out(f"error ({e.kind}): {e}\n")
                continue
            out("Session stored.\n")

        elif cmd == "search":
            query = input_fn("Enter search query: ")
            out("Searching...\n")
            try:
                hits = service.search_sessions(query)
            except NeuroNotesError as e:
                out(f"error ({e.kind}): {e}\n")
                continue
            if not hits:
                out("No sessions stored yet.\n")
            for i, hit in enumerate(hits, start=1):
                out(f"{i}. Note: {hit.document}\n  Metadata: {json.dumps(hit.metadata)}\n")

        elif cmd == "exit":
            break
        else:
            out("Unknown command.\n")


def _build_runner(cfg: AppConfig) -> InferenceRunner:
    tokenizer = load_tokenizer(cfg.model)
    endpoint = load_endpoint(cfg.model)
    return InferenceRunner(EndpointAdapter(endpoint), tokenizer, default_timeout_s=cfg.model.infer_timeout_s)


def _chat_config(args, eos_token_id: Optional[int], default_max_new_tokens: int = 64) -> DecodingConfig:
    if args.top_p is not None:
        policy = TopPPolicy(p=args.top_p, temperature=args.temperature, repetition_penalty=args.repetition_penalty)
    else:
        policy = GreedyPolicy(repetition_penalty=args.repetition_penalty)
    return DecodingConfig(
        max_new_tokens=args.max_new_tokens if args.max_new_tokens is not None else default_max_new_tokens,
        policy=policy,
        eos_token_id=eos_token_id,
        seed=args.seed,
    )


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="neuronotes", description="Store and search EEG session notes with a local LM.")
    ap.add_argument("--backend", choices=("torch", "onnx"), default=None)
    ap.add_argument("--log-level", default="INFO")
    sub = ap.add_subparsers(dest="command", required=True)

    chat = sub.add_parser("chat", help="interactive chat against the loaded model")
    chat.add_argument("--max-new-tokens", type=int, default=None)
    chat.add_argument("--temperature", type=float, default=1.0)
    chat.add_argument("--top-p", type=float, default=None, help="enable nucleus sampling")
    chat.add_argument("--repetition-penalty", type=float, default=1.0)
    chat.add_argument("--seed", type=int, default=None)

    sessions = sub.add_parser("sessions", help="store/search EEG sessions")
    sessions.add_argument("--no-analysis", action="store_true", help="skip the language-model analysis")

    serve = sub.add_parser("serve", help="run the HTTP service")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    return ap


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    cfg = AppConfig.from_env()
    if args.backend:
        cfg.model.backend = args.backend

    if args.command == "serve":
        import uvicorn

        from neuronotes.engine.server_fastapi import create_app

        uvicorn.run(create_app(config=cfg), host=args.host, port=args.port)
        return 0

    try:
        if args.command == "chat":
            runner = _build_runner(cfg)
            run_chat_repl(runner, _chat_config(args, runner.tokenizer.eos_token_id, cfg.model.max_new_tokens_default))
        else:
            runner = None if args.no_analysis else _build_runner(cfg)
            store = FaissVectorStore(persist_directory=cfg.store.persist_directory, name=cfg.store.collection)
            service = SessionService(SentenceEmbedder(cfg.store.embedding_model), store, runner, config=cfg.store)
            run_sessions_repl(service)
    except NeuroNotesError as e:
        logger.error("An error occurred during initialization: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
