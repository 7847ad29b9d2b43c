from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from neuronotes.common.errors import NeuroNotesError, QueueFull
from neuronotes.engine.request import DecodingConfig, GenerationResult
from neuronotes.engine.runner import InferenceRunner

logger = logging.getLogger(__name__)


@dataclass
class WorkItem:
    prompt_tokens: list[int]
    config: DecodingConfig

    future: asyncio.Future | None = None
    stream: bool = False
    out_q: asyncio.Queue | None = None  # queue of dict messages (token/done/error)
    cancelled: bool = False
    enqueued_at_s: float = field(default_factory=time.perf_counter)


class DecodeScheduler:
    """
    FIFO front door for decode calls:
      - admits WorkItems in arrival order, rejecting once max_queue_depth is reached
      - `workers` coroutines pull items and run the blocking decode off the event loop
      - cancellation is observed between decode steps; the partial result is still published
    """

    def __init__(
        self,
        runner: InferenceRunner,
        *,
        workers: int = 1,
        max_queue_depth: int = 32,
    ):
        self.runner = runner
        self.workers = workers
        self.max_queue_depth = max_queue_depth

        self._q: asyncio.Queue[WorkItem] = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []
        self._stop = asyncio.Event()

    async def start(self):
        if self._tasks:
            return
        self._stop.clear()
        self._tasks = [asyncio.create_task(self._loop()) for _ in range(self.workers)]

    async def stop(self):
        if not self._tasks:
            return
        self._stop.set()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

    def pending(self) -> int:
        return self._q.qsize()

    async def enqueue(self, item: WorkItem):
        if self._q.qsize() >= self.max_queue_depth:
            raise QueueFull(f"decode queue is full ({self.max_queue_depth} pending)")
        await self._q.put(item)

    async def submit(self, prompt_tokens: list[int], config: DecodingConfig) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        item = WorkItem(prompt_tokens=list(prompt_tokens), config=config, future=loop.create_future())
        await self.enqueue(item)
        return await item.future

    @staticmethod
    def _item_cancelled(item: WorkItem) -> bool:
        return item.cancelled or (item.future is not None and item.future.cancelled())

    async def _publish_error(self, item: WorkItem, e: Exception):
        if item.stream and item.out_q is not None:
            await item.out_q.put({"type": "error", "error": getattr(e, "kind", "error"), "message": str(e)})
            return
        if item.future is not None and not item.future.done():
            item.future.set_exception(e)

    async def _publish_done(self, item: WorkItem, result: GenerationResult):
        if item.stream and item.out_q is not None:
            await item.out_q.put({"type": "done", "stop_reason": result.stop_reason.value})

    def _decode_token(self, token_id: int) -> Optional[str]:
        if self.runner.tokenizer is None:
            return None
        return self.runner.decode_token(token_id)

    def _result_payload(self, item: WorkItem, result: GenerationResult, queue_wait_ms: float) -> dict[str, Any]:
        text = self.runner.decode_text(result.token_ids) if self.runner.tokenizer is not None else None
        tps = (result.tokens_generated / result.decode_s) if result.decode_s > 0 else None
        return {
            "text": text,
            "token_ids": list(result.token_ids),
            "stop_reason": result.stop_reason.value,
            "timing": {
                "decode_s": result.decode_s,
                "tokens_per_second": tps,
            },
            "generation": {
                "prompt_tokens": result.prompt_tokens,
                "requested_new_tokens": item.config.max_new_tokens,
                "generated_new_tokens": result.tokens_generated,
                "policy": item.config.policy.kind,
            },
            "queue": {
                "queue_wait_ms": queue_wait_ms,
            },
        }

    async def _run_item(self, item: WorkItem):
        loop = asyncio.get_running_loop()
        queue_wait_ms = (time.perf_counter() - item.enqueued_at_s) * 1000.0

        on_token = None
        if item.stream and item.out_q is not None:
            def on_token(tok: int):
                msg = {"type": "token", "token_id": tok, "text": self._decode_token(tok)}
                loop.call_soon_threadsafe(item.out_q.put_nowait, msg)

        try:
            result = await asyncio.to_thread(
                self.runner.decode,
                item.prompt_tokens,
                item.config,
                cancel=lambda: self._item_cancelled(item),
                on_token=on_token,
            )
        except NeuroNotesError as e:
            await self._publish_error(item, e)
            return
        except Exception as e:
            logger.exception("Unexpected decode failure")
            await self._publish_error(item, e)
            return

        if item.stream:
            await self._publish_done(item, result)
        elif item.future is not None and not item.future.done():
            item.future.set_result(self._result_payload(item, result, queue_wait_ms))

    async def _loop(self):
        while not self._stop.is_set():
            item = await self._q.get()
            try:
                if self._item_cancelled(item):
                    continue
                await self._run_item(item)
            finally:
                self._q.task_done()
