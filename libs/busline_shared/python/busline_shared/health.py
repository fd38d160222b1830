from __future__ import annotations

import os
from collections.abc import Callable
from typing import Any

from fastapi import FastAPI
from fastapi.responses import JSONResponse


def add_standard_health(
    app: FastAPI,
    env_key: str = "ENV",
    readiness: Callable[[], dict[str, Any]] | None = None,
):
    """
    Register `/health` (liveness) and, when a readiness probe is given,
    `/health/ready`.

    The probe returns a dict that is merged into the response; a truthy
    `ready` key decides between 200 and 503.
    """

    @app.get("/health")
    def _health():
        return {
            "status": "ok",
            "env": os.getenv(env_key, "dev"),
            "service": app.title,
            "version": getattr(app, "version", None),
        }

    if readiness is None:
        return

    @app.get("/health/ready")
    def _ready():
        info = dict(readiness() or {})
        ok = bool(info.get("ready"))
        body = {"status": "ok" if ok else "unavailable", "service": app.title, **info}
        return JSONResponse(status_code=200 if ok else 503, content=body)
