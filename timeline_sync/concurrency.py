from __future__ import annotations

import threading
from typing import Callable, Sequence, TypeVar


T = TypeVar("T")
R = TypeVar("R")


def map_with_concurrency(
    items: Sequence[T],
    limit: int,
    fn: Callable[[T], R],
    *,
    name: str = "timeline-sync-worker",
) -> list[R]:
    """Run ``fn`` over ``items`` on at most ``limit`` threads.

    Workers take the next index from a shared cursor, so no item is handed
    out twice. Results keep input order. Once a worker fails the remaining
    items are not started and the first error is re-raised after all
    workers have stopped.
    """
    total = len(items)
    if total == 0:
        return []
    results: list[R | None] = [None] * total
    cursor = 0
    cursor_lock = threading.Lock()
    errors: list[BaseException] = []

    def _next_index() -> int | None:
        nonlocal cursor
        with cursor_lock:
            if errors or cursor >= total:
                return None
            index = cursor
            cursor += 1
            return index

    def _worker() -> None:
        while True:
            index = _next_index()
            if index is None:
                return
            try:
                results[index] = fn(items[index])
            except BaseException as exc:
                with cursor_lock:
                    errors.append(exc)
                return

    worker_count = min(max(1, limit), total)
    threads = [
        threading.Thread(target=_worker, name=f"{name}-{number}", daemon=True)
        for number in range(worker_count)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    if errors:
        raise errors[0]
    return results  # type: ignore[return-value]
