"""
Entry point for running the call control server.

Usage:
    python -m call_control

This starts the FastAPI webhook server on http://0.0.0.0:8000
"""
import os

import uvicorn
from logging_setup import setup_logging

from .config import get_config

if __name__ == "__main__":
    config = get_config()

    # Initialize logging
    setup_logging(level=config.log_level, use_json=True)

    # Run the webhook server
    uvicorn.run(
        "call_control.webhook_server:create_app",
        factory=True,
        host="0.0.0.0",
        port=int(os.environ.get("PORT", "8000")),
        log_level="info"
    )
