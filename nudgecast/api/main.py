"""
API Entry Point

Run with: python -m nudgecast.api.main
"""

import uvicorn

from nudgecast.config import get_settings

if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "nudgecast.api.app:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True
    )
