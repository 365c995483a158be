from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import requests

from timeline_sync.errors import AppError, ProtocolError, SessionExpiredError
from timeline_sync.models import ConnectorConfig


@dataclass
class ListPage:
    next: str | None
    objects: list[Any]


def _body_field(body: Any, name: str) -> str | None:
    if not isinstance(body, dict):
        return None
    value = body.get(name)
    return value if isinstance(value, str) else None


def _read_next(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def normalize_instance_url(instance_url: str) -> str:
    trimmed = str(instance_url or "").strip()
    if not trimmed.startswith("https://"):
        raise AppError(400, "instanceUrl must start with https://", "invalid_instance_url")
    parts = urlsplit(trimmed)
    if not parts.netloc:
        raise AppError(400, "instanceUrl is not a valid url", "invalid_instance_url")
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", "")).rstrip("/")


def connection_for_user(user: dict[str, Any] | None, purpose: str = "syncing calendar") -> tuple[str, dict[str, Any]]:
    """Return ``(instance_url, storage_state)`` for a stored user or raise ``not_connected``."""
    if not user or not user.get("institution_url") or not isinstance(user.get("storage_state"), dict):
        raise AppError(400, f"connect to d2l before {purpose}", "not_connected")
    return str(user["institution_url"]), user["storage_state"]


class ConnectorClient:
    """Calls the LMS API through the connector that owns the user's session."""

    def __init__(self, config: ConnectorConfig, instance_url: str, storage_state: dict[str, Any]) -> None:
        self.config = config
        self.instance_url = instance_url
        self.storage_state = storage_state

    def _request_endpoint(self) -> str:
        return f"{self.config.base_url.rstrip('/')}/internal/request"

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-internal-secret": self.config.internal_secret,
        }

    def request(self, api_path: str) -> Any:
        try:
            response = requests.post(
                self._request_endpoint(),
                headers=self._headers(),
                json={
                    "instanceUrl": self.instance_url,
                    "storageState": self.storage_state,
                    "apiPath": api_path,
                },
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise AppError(502, "connector unavailable", "connector_unavailable") from exc

        try:
            body = response.json() if response.content else None
        except ValueError:
            body = None

        if not response.ok:
            error_code = _body_field(body, "error")
            if response.status_code == 401 and error_code == "session_expired":
                raise SessionExpiredError()
            if response.status_code >= 500:
                raise AppError(502, "connector unavailable", "connector_unavailable")
            message = _body_field(body, "message") or "connector request failed"
            raise AppError(response.status_code, message, error_code or "connector_request_failed")

        if not isinstance(body, dict):
            raise AppError(502, "connector unavailable", "connector_invalid_response")
        return body.get("data")

    def probe(self, api_path: str) -> Any:
        return self.request(api_path)

    def list_page(self, api_path: str) -> ListPage:
        data = self.request(api_path)
        if not isinstance(data, dict) or not isinstance(data.get("Objects"), list):
            raise ProtocolError("calendar api returned unexpected payload", "calendar_invalid_payload")
        return ListPage(next=_read_next(data.get("Next")), objects=list(data["Objects"]))
