from __future__ import annotations

from typing import Any
from urllib.parse import urlsplit

from timeline_sync.errors import ProtocolError


MAX_PAGES = 100
API_ROOT = "/d2l/api/"


def normalize_next_api_path(instance_url: str, next_value: str) -> str:
    trimmed = next_value.strip()
    if trimmed.startswith(API_ROOT):
        return trimmed
    if trimmed.startswith(API_ROOT[1:]):
        return f"/{trimmed}"
    if trimmed.startswith("http://") or trimmed.startswith("https://"):
        parsed = urlsplit(trimmed)
        # Never follow a continuation to a host other than the institution's.
        instance_host = urlsplit(instance_url).netloc.lower()
        if parsed.netloc.lower() != instance_host:
            raise ProtocolError("unexpected pagination host", "calendar_pagination_host_mismatch")
        path = parsed.path + (f"?{parsed.query}" if parsed.query else "")
        if not path.startswith(API_ROOT):
            raise ProtocolError("unexpected pagination url", "calendar_pagination_invalid_next")
        return path
    raise ProtocolError("unexpected pagination url", "calendar_pagination_invalid_next")


def fetch_object_list_all(client: Any, instance_url: str, api_path: str, max_pages: int = MAX_PAGES) -> list[Any]:
    """Follow ``Next`` continuations from ``api_path`` and collect every object.

    Raises ``pagination_excessive`` once ``max_pages`` pages have been read
    and the upstream still reports more.
    """
    collected: list[Any] = []
    current_path = api_path
    for _ in range(max(1, max_pages)):
        page = client.list_page(current_path)
        collected.extend(page.objects)
        if not page.next:
            return collected
        current_path = normalize_next_api_path(instance_url, page.next)
    raise ProtocolError("unexpected pagination depth", "pagination_excessive")


def list_payload_to_array(payload: Any) -> list[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict) and isinstance(payload.get("Objects"), list):
        return payload["Objects"]
    return []
