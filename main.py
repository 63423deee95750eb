#!/usr/bin/env python3
"""
Entrypoint - Marketplace Value-Transfer Core

Loads .env, configures logging and serves the FastAPI app with uvicorn.
"""

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.DEBUG if os.getenv("LOG_LEVEL", "").upper() == "DEBUG" else logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logging.getLogger('web3').setLevel(logging.WARNING)
logging.getLogger('urllib3').setLevel(logging.WARNING)
logging.getLogger('apscheduler').setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def main():
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "5000"))
    logger.info(f"🚀 Starting marketplace core on {host}:{port}")
    uvicorn.run("api_server:app", host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
