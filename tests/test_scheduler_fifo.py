from __future__ import annotations

import asyncio
import time

import numpy as np
import pytest

from neuronotes.common.errors import QueueFull, ShapeMismatch
from neuronotes.engine.endpoint import EndpointAdapter
from neuronotes.engine.request import DecodingConfig, GenerationResult, StopReason
from neuronotes.engine.runner import InferenceRunner
from neuronotes.engine.scheduler import DecodeScheduler, WorkItem


class _SchedulingRunner:
    def __init__(self, *, sleep_s: float = 0.0):
        self.tokenizer = None
        self.sleep_s = sleep_s
        self.decode_order: list[list[int]] = []

    def decode(self, prompt_tokens, config, *, cancel=None, on_token=None):
        del cancel, on_token
        self.decode_order.append(list(prompt_tokens))
        if self.sleep_s > 0:
            time.sleep(self.sleep_s)
        return GenerationResult(token_ids=(7,), stop_reason=StopReason.LENGTH, prompt_tokens=len(prompt_tokens), decode_s=0.001)


class _ToyTokenizer:
    eos_token_id = None

    def encode(self, text):
        return [ord(ch) % 8 for ch in text]

    def decode(self, ids):
        return "".join(chr(97 + int(t)) for t in ids)


class _SlowRowEndpoint:
    def __init__(self, row, *, sleep_s: float = 0.0, vocab_size=None):
        self.row = np.asarray(row, dtype=np.float32)
        self.sleep_s = sleep_s
        self.vocab_size = vocab_size
        self.max_concurrency = 1
        self.is_ready = True

    def load(self):
        pass

    def __call__(self, input_ids, attention_mask, position_ids):
        if self.sleep_s:
            time.sleep(self.sleep_s)
        out = np.zeros((1, input_ids.shape[1], len(self.row)), dtype=np.float32)
        out[0, -1, :] = self.row
        return out


def _make_item(loop: asyncio.AbstractEventLoop, prompt: list[int], *, max_new_tokens: int = 4) -> tuple[WorkItem, asyncio.Future]:
    fut = loop.create_future()
    item = WorkItem(prompt_tokens=prompt, config=DecodingConfig(max_new_tokens=max_new_tokens), future=fut)
    return item, fut


def test_items_are_decoded_in_arrival_order():
    async def _run():
        runner = _SchedulingRunner(sleep_s=0.005)
        scheduler = DecodeScheduler(runner)
        await scheduler.start()
        try:
            loop = asyncio.get_running_loop()
            pairs = [_make_item(loop, [i]) for i in (3, 1, 2)]
            for item, _ in pairs:
                await scheduler.enqueue(item)
            await asyncio.gather(*(fut for _, fut in pairs))
        finally:
            await scheduler.stop()

        assert runner.decode_order == [[3], [1], [2]]

    asyncio.run(_run())


def test_queue_depth_limit_rejects_new_work():
    async def _run():
        scheduler = DecodeScheduler(_SchedulingRunner(), max_queue_depth=1)
        loop = asyncio.get_running_loop()
        first, _ = _make_item(loop, [1])
        second, _ = _make_item(loop, [2])
        await scheduler.enqueue(first)
        with pytest.raises(QueueFull):
            await scheduler.enqueue(second)
        assert scheduler.pending() == 1

    asyncio.run(_run())


def test_cancelled_items_are_skipped():
    async def _run():
        runner = _SchedulingRunner()
        scheduler = DecodeScheduler(runner)
        loop = asyncio.get_running_loop()
        dropped, _ = _make_item(loop, [1])
        dropped.cancelled = True
        kept, kept_fut = _make_item(loop, [2])
        await scheduler.enqueue(dropped)
        await scheduler.enqueue(kept)

        await scheduler.start()
        try:
            await kept_fut
        finally:
            await scheduler.stop()

        assert runner.decode_order == [[2]]

    asyncio.run(_run())


def test_result_payload_reports_generation_and_queue_wait():
    async def _run():
        runner = InferenceRunner(EndpointAdapter(_SlowRowEndpoint([0.0, 2.0, 0.0])), _ToyTokenizer())
        scheduler = DecodeScheduler(runner)
        await scheduler.start()
        try:
            out = await scheduler.submit([0, 2], DecodingConfig(max_new_tokens=3))
        finally:
            await scheduler.stop()

        assert out["token_ids"] == [1, 1, 1]
        assert out["text"] == "bbb"
        assert out["stop_reason"] == "length"
        assert out["generation"]["generated_new_tokens"] == 3
        assert out["generation"]["prompt_tokens"] == 2
        assert out["generation"]["policy"] == "greedy"
        assert out["queue"]["queue_wait_ms"] >= 0.0

    asyncio.run(_run())


def test_decode_errors_reach_the_caller():
    async def _run():
        endpoint = _SlowRowEndpoint([0.0] * 10)
        runner = InferenceRunner(EndpointAdapter(endpoint, vocab_size=50))
        scheduler = DecodeScheduler(runner)
        await scheduler.start()
        try:
            with pytest.raises(ShapeMismatch):
                await scheduler.submit([1], DecodingConfig(max_new_tokens=2))
            # worker survives and keeps serving
            endpoint.row = np.zeros(50, dtype=np.float32)
            out = await scheduler.submit([1], DecodingConfig(max_new_tokens=1))
        finally:
            await scheduler.stop()

        assert out["token_ids"] == [0]

    asyncio.run(_run())


def test_stream_emits_tokens_then_done():
    async def _run():
        runner = InferenceRunner(EndpointAdapter(_SlowRowEndpoint([0.0, 0.0, 5.0])), _ToyTokenizer())
        scheduler = DecodeScheduler(runner)
        await scheduler.start()
        try:
            item = WorkItem(
                prompt_tokens=[0],
                config=DecodingConfig(max_new_tokens=3),
                stream=True,
                out_q=asyncio.Queue(),
            )
            await scheduler.enqueue(item)
            messages = []
            while True:
                msg = await asyncio.wait_for(item.out_q.get(), timeout=5)
                messages.append(msg)
                if msg["type"] in ("done", "error"):
                    break
        finally:
            await scheduler.stop()

        assert [m["type"] for m in messages] == ["token", "token", "token", "done"]
        assert [m["token_id"] for m in messages[:3]] == [2, 2, 2]
        assert messages[0]["text"] == "c"
        assert messages[-1]["stop_reason"] == "length"

    asyncio.run(_run())


def test_in_flight_cancellation_stops_between_steps():
    async def _run():
        runner = InferenceRunner(EndpointAdapter(_SlowRowEndpoint([0.0, 3.0], sleep_s=0.02)), _ToyTokenizer())
        scheduler = DecodeScheduler(runner)
        await scheduler.start()
        try:
            item = WorkItem(
                prompt_tokens=[0],
                config=DecodingConfig(max_new_tokens=200),
                stream=True,
                out_q=asyncio.Queue(),
            )
            await scheduler.enqueue(item)
            first = await asyncio.wait_for(item.out_q.get(), timeout=5)
            item.cancelled = True
            messages = [first]
            while messages[-1]["type"] != "done":
                messages.append(await asyncio.wait_for(item.out_q.get(), timeout=5))
        finally:
            await scheduler.stop()

        assert messages[0]["type"] == "token"
        assert messages[-1]["stop_reason"] == "cancelled"
        assert len(messages) - 1 < 200

    asyncio.run(_run())


def test_multiple_workers_run_independent_decodes_concurrently():
    async def _run():
        runner = _SchedulingRunner(sleep_s=0.2)
        scheduler = DecodeScheduler(runner, workers=2)
        await scheduler.start()
        try:
            loop = asyncio.get_running_loop()
            pairs = [_make_item(loop, [i]) for i in range(2)]
            t0 = time.perf_counter()
            for item, _ in pairs:
                await scheduler.enqueue(item)
            await asyncio.gather(*(fut for _, fut in pairs))
            elapsed = time.perf_counter() - t0
        finally:
            await scheduler.stop()

        assert elapsed < 0.35

    asyncio.run(_run())
