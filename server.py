"""
Memory Refinery - self-directed memory refinement for AI agents
HTTP server with PostgreSQL or SQLite backend
"""

import os

import uvicorn

import refinery.config as config
from app.main import app


if __name__ == "__main__":
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "8080"))
    config.logger.info("Memory refinery starting on %s:%s", host, port)
    uvicorn.run(app, host=host, port=port)
