"""
Main Entry Point (Root Level)

Alternative entry point at root level.
"""

import uvicorn

from nudgecast.config import get_settings

if __name__ == "__main__":
    settings = get_settings()
    # Use import string to enable reload
    uvicorn.run(
        "nudgecast.api.app:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True
    )
