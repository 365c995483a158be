from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from timeline_sync.errors import AppError


@dataclass
class IsolationResult:
    events: list[Any] = field(default_factory=list)
    forbidden_org_unit_ids: list[str] = field(default_factory=list)


def isolate_forbidden(
    org_unit_ids: Sequence[str],
    fetch: Callable[[list[str]], list[Any]],
) -> IsolationResult:
    """Fetch a batch of org units, bisecting around authorization failures.

    Upstream answers 403 for the whole batch when any member is forbidden, so
    a failed batch is halved until each forbidden unit stands alone. Errors
    other than 403 propagate unchanged.
    """
    batch = list(org_unit_ids)
    if not batch:
        return IsolationResult()
    try:
        return IsolationResult(events=list(fetch(batch)))
    except AppError as exc:
        if exc.status_code != 403:
            raise
    if len(batch) == 1:
        return IsolationResult(forbidden_org_unit_ids=batch)

    mid = (len(batch) + 1) // 2
    left = isolate_forbidden(batch[:mid], fetch)
    right = isolate_forbidden(batch[mid:], fetch)
    return IsolationResult(
        events=left.events + right.events,
        forbidden_org_unit_ids=left.forbidden_org_unit_ids + right.forbidden_org_unit_ids,
    )


def chunk_list(items: Sequence[str], size: int) -> list[list[str]]:
    if size <= 0:
        return [list(items)]
    return [list(items[index : index + size]) for index in range(0, len(items), size)]
