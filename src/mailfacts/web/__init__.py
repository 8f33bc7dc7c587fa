"""HTTP surface over the Pipeline API.

Provides a FastAPI app with:
- On-demand sync, extraction and query endpoints
- A health endpoint with counts and the last scheduled runs
- Background scheduling of sync and extraction
"""

from mailfacts.web.app import create_app

__all__ = ["create_app"]
