"""
Run script for the Mintops API.
"""

import os
import uvicorn

from mintops.infrastructure.config import get_settings

if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "mintops.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=os.getenv("MINTOPS_DEV_MODE", "").lower() == "true",
        log_level="info"
    )
