"""
Dispatch & Settlement Engine
============================
Entry point. Run with: uvicorn main:app

Runs as a single process: driver locations and demand snapshots are held
in memory, so do not start more than one worker.
"""

import uvicorn

from dispatch_engine.api.app import create_app
from dispatch_engine.config import settings

app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
        workers=1,
    )
