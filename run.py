import os
os.environ["PYTHONNOUSERSITE"] = "1"

import logging

import uvicorn

from nostr_identity.config import API_HOST, API_PORT, LOG_LEVEL, ensure_directories

logger = logging.getLogger(__name__)


if __name__ == "__main__":
    ensure_directories()
    logger.info("Starting identity service on %s:%d", API_HOST, API_PORT)

    uvicorn.run(
        "nostr_identity.main:app",
        port=API_PORT,
        host=API_HOST,
        reload=False,
        log_level=LOG_LEVEL.lower(),
    )
