"""Run the Filz Audit API server."""

import logging

import uvicorn

from filz_audit.api.config import Settings

if __name__ == "__main__":
    settings = Settings()
    logging.basicConfig(level=settings.log_level.upper())
    uvicorn.run(
        "filz_audit.api:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
