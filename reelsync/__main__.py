"""``python -m reelsync`` and the ``reelsync`` console script."""

from __future__ import annotations

import uvicorn

from reelsync.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "reelsync.main:app",
        host=settings.server_host,
        port=settings.server_port,
        log_level="debug" if settings.environment == "development" else "info",
        reload=settings.environment == "development",
    )


if __name__ == "__main__":  # pragma: no cover - runtime entrypoint
    main()
