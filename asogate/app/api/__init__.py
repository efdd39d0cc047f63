"""API endpoints package for the ASO gateway."""

from asogate.app.api.tools import router as tools_router

__all__ = [
    "tools_router",
]
