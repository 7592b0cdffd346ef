"""
Scanwatch Service - Entry Point
===============================
Serves the HTTP API. The liveness poller and scan consumer run inside the
app lifespan (see POLLER_ENABLED and SCAN_CONSUMER_ENABLED).

Usage:
    python main.py
    uvicorn scanwatch:app --port 8000
"""

import logging
import os

from scanwatch import app
from scanwatch.config import LOG_LEVEL

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
