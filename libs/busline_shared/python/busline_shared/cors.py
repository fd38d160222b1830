from __future__ import annotations

from fastapi.middleware.cors import CORSMiddleware

# The booking frontend's dev server (create-react-app default port).
DEV_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]


def configure_cors(app, allowed: str | None):
    """
    Allow the booking frontend to call the API.

    `allowed` is a comma-separated origin list, normally FRONTEND_URL or
    ALLOWED_ORIGINS. An empty value falls back to the local dev server; "*"
    opens the API to any origin but drops credentialed requests.
    """
    origins = [o.strip().rstrip("/") for o in (allowed or "").split(",") if o.strip()] or list(DEV_ORIGINS)
    wildcard = "*" in origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if wildcard else origins,
        allow_credentials=not wildcard,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )
