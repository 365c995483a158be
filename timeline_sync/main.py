from __future__ import annotations

import os

import uvicorn


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "on"}


def main() -> None:
    """Serve the sync API; paths for config and state come from ``TIMELINE_SYNC_*`` env vars."""
    uvicorn.run(
        "timeline_sync.web_admin:app",
        host=os.getenv("TIMELINE_SYNC_HOST", "0.0.0.0"),
        port=int(os.getenv("TIMELINE_SYNC_PORT", "8080")),
        log_level=os.getenv("TIMELINE_SYNC_LOG_LEVEL", "info").lower(),
        reload=_env_flag("TIMELINE_SYNC_RELOAD"),
    )


if __name__ == "__main__":
    main()
