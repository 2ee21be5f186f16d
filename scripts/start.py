#!/usr/bin/env python3
"""
Production entrypoint: release phase, then gunicorn serving app.wsgi:app.

PORT, WEB_CONCURRENCY and GUNICORN_TIMEOUT come from the environment (see
app.qrms.config). gunicorn replaces this process so it receives signals
directly.

Usage:
    python scripts/start.py
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.qrms.config import Settings, load_settings  # noqa: E402

logger = logging.getLogger("qrms.start")


def gunicorn_argv(settings: Settings) -> list[str]:
    if not 1 <= settings.port <= 65535:
        raise RuntimeError(f"PORT must be an integer 1-65535 (got {settings.port}).")
    if settings.web_concurrency < 1:
        raise RuntimeError(f"WEB_CONCURRENCY must be at least 1 (got {settings.web_concurrency}).")
    return [
        "gunicorn",
        "app.wsgi:app",
        "--bind", f"0.0.0.0:{settings.port}",
        "--workers", str(settings.web_concurrency),
        "--timeout", str(settings.worker_timeout),
        # One engine per worker: create_app disposes the inherited pool after fork.
        "--preload",
        "--access-logfile", "-",
        "--error-logfile", "-",
    ]


def main() -> None:
    settings = load_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        argv = gunicorn_argv(settings)
        from scripts.release import run_release

        run_release(settings)
    except Exception:
        logger.exception("Startup aborted")
        sys.exit(1)

    logger.info("Starting gunicorn on port %s (%s workers)", settings.port, settings.web_concurrency)
    os.execvp(argv[0], argv)


if __name__ == "__main__":
    main()
