#!/usr/bin/env python3
"""Concurrency benchmark: 8 parallel HTTP requests to /generate.
Reports wall time, p50/p95 latency, avg latency, queue wait and aggregate tokens/sec.
Start the service first: `neuronotes serve`.
"""
from __future__ import annotations

import asyncio
import statistics
import time
from collections import Counter

import httpx

URL = "http://127.0.0.1:8000/generate"
PROMPT = "You're a technical assistant. Be analytical.\nUser: Summarize an alpha-band EEG reading.\nAI:"
MAX_NEW_TOKENS = 64
N_REQUESTS = 8


def _describe(values: list[float], unit: str) -> str:
    """One-line mean/median/p95/range summary of a timing series."""
    if not values:
        return "no samples"
    ordered = sorted(values)
    p95 = ordered[min(len(ordered) - 1, round(0.95 * (len(ordered) - 1)))]
    return (
        f"mean {statistics.fmean(ordered):.3f}{unit}, "
        f"median {statistics.median(ordered):.3f}{unit}, "
        f"p95 {p95:.3f}{unit}, "
        f"range {ordered[0]:.3f}..{ordered[-1]:.3f}{unit} "
        f"over {len(ordered)} requests"
    )


async def generate(client: httpx.AsyncClient, i: int) -> tuple[int, float, int, float, str]:
    """Single request. Returns (request_idx, latency_s, tokens_generated, queue_wait_ms, stop_reason)."""
    t0 = time.perf_counter()
    resp = await client.post(
        URL,
        json={
            "prompt": PROMPT,
            "max_new_tokens": MAX_NEW_TOKENS,
            "policy": "top_p",
            "top_p": 0.9,
            "temperature": 0.2,
            "repetition_penalty": 1.2,
            "seed": i,
        },
    )
    resp.raise_for_status()
    latency = time.perf_counter() - t0
    data = resp.json()
    return (
        i,
        latency,
        data["generation"]["generated_new_tokens"],
        data["queue"]["queue_wait_ms"],
        data["stop_reason"],
    )


async def main() -> None:
    t_wall_start = time.perf_counter()

    async with httpx.AsyncClient(timeout=300.0) as client:
        tasks = [generate(client, i) for i in range(N_REQUESTS)]
        results = await asyncio.gather(*tasks)

    t_wall = time.perf_counter() - t_wall_start

    latencies = [r[1] for r in results]
    total_tokens = sum(r[2] for r in results)
    queue_wait_ms = [r[3] for r in results]
    tokens_per_sec = total_tokens / t_wall if t_wall > 0 else 0
    stop_hist = Counter(r[4] for r in results)

    print(f"=== {N_REQUESTS} parallel /generate requests ===")
    print(f"Total wall time:    {t_wall:.3f}s")
    print(f"Latency:            {_describe(latencies, 's')}")
    print(f"Queue wait:         {_describe(queue_wait_ms, 'ms')}")
    print(f"Total tokens:       {total_tokens}")
    print(f"Throughput:         {tokens_per_sec:.1f} tokens/sec (aggregate)")
    print(f"Stop reasons:       {', '.join(f'{k}:{v}' for k, v in sorted(stop_hist.items()))}")
    print("")
    print("Per-request snapshot:")
    for req_idx, latency_s, tokens, q_ms, reason in sorted(results, key=lambda r: r[0]):
        print(
            f"  req={req_idx:02d} "
            f"lat={latency_s:.3f}s "
            f"tokens={tokens:3d} "
            f"q_wait={q_ms:7.2f}ms "
            f"stop={reason}"
        )


if __name__ == "__main__":
    asyncio.run(main())
