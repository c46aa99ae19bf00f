"""Run blocking collaborators (SQLite, pywebpush, httpx sync) off the event loop."""

from __future__ import annotations

from functools import partial

import anyio


def limiter(total: int) -> anyio.CapacityLimiter:
    return anyio.CapacityLimiter(max(1, int(total)))


async def to_thread(fn, *a, limiter: anyio.CapacityLimiter | None = None, **kw):
    return await anyio.to_thread.run_sync(partial(fn, *a, **kw), limiter=limiter)
