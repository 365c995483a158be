from __future__ import annotations

from typing import Any, Callable, Iterable

from timeline_sync.errors import AppError, is_session_expired


VERSIONS_API_PATH = "/d2l/api/versions/"

# Tried after the live probe result; kept wide for older and newer instances.
FALLBACK_LE_VERSIONS = (
    "1.90",
    "1.89",
    "1.88",
    "1.87",
    "1.86",
    "1.85",
    "1.84",
    "1.83",
    "1.82",
    "1.81",
    "1.80",
    "1.79",
    "1.78",
    "1.77",
    "1.76",
    "1.75",
    "1.74",
    "1.72",
    "1.71",
    "1.70",
    "1.68",
    "1.65",
    "1.62",
    "1.60",
    "1.58",
    "1.55",
    "1.52",
    "1.50",
    "1.48",
    "1.45",
    "1.42",
    "1.40",
    "1.35",
    "1.30",
    "1.28",
)


def version_sort_key(value: str) -> tuple[int, ...]:
    parts: list[int] = []
    for piece in value.split("."):
        try:
            parts.append(int(piece))
        except ValueError:
            parts.append(0)
    # Pad so "1.8" and "1.8.0" compare equal.
    while len(parts) < 4:
        parts.append(0)
    return tuple(parts)


def _read_version(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def find_latest_le_version(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    candidates: list[str] = []
    product_versions = payload.get("ProductVersions")
    if isinstance(product_versions, list):
        for entry in product_versions:
            if not isinstance(entry, dict):
                continue
            code = _read_version(entry.get("ProductCode"))
            if not code or code.lower() != "le":
                continue
            latest = _read_version(entry.get("LatestVersion"))
            if latest:
                candidates.append(latest)
            versions = entry.get("Versions")
            if isinstance(versions, list):
                candidates.extend(v for v in (_read_version(item) for item in versions) if v)
    le_record = payload.get("le")
    if isinstance(le_record, dict):
        latest = _read_version(le_record.get("LatestVersion"))
        if latest:
            candidates.append(latest)
    if not candidates:
        return None
    return max(set(candidates), key=version_sort_key)


def build_versions_to_try(primary: str | None, fallback: Iterable[str] = FALLBACK_LE_VERSIONS) -> list[str]:
    merged = [primary] if primary else []
    merged.extend(fallback)
    unique = list(dict.fromkeys(merged))
    return sorted(unique, key=version_sort_key, reverse=True)


def fetch_versions_to_try(client: Any) -> list[str]:
    try:
        payload = client.probe(VERSIONS_API_PATH)
    except AppError as exc:
        if is_session_expired(exc):
            raise
        raise AppError(502, "could not determine brightspace api version", "d2l_versions_unavailable") from exc
    return build_versions_to_try(find_latest_le_version(payload))


def negotiate_version(candidates: Iterable[str], probe: Callable[[str], Any]) -> str:
    """Return the first candidate whose probe answers.

    A 404 means the version is absent on this institution; a 403 still proves
    the endpoint exists, so the version is accepted.
    """
    for version in candidates:
        try:
            probe(version)
        except AppError as exc:
            if exc.status_code == 404:
                continue
            if exc.status_code == 403:
                return version
            raise
        return version
    raise AppError(502, "calendar api unavailable on this instance", "calendar_api_unavailable")
