"""
Middleware configuration for the FastAPI app.
"""

from __future__ import annotations

from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

import refinery.config as config


def configure_middleware(app) -> None:
    """Configure the optional host allowlist and CORS for the FastAPI app."""
    # Optional host allowlist for production deployments
    if config.TRUSTED_HOSTS:
        app.add_middleware(
            TrustedHostMiddleware,
            allowed_hosts=config.TRUSTED_HOSTS,
        )

    if config.CORS_ALLOWED_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.CORS_ALLOWED_ORIGINS,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
