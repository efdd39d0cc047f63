"""Services package for the ASO gateway.

This package provides:
- Scoring math and the fallback-aware scoring resolver
- Review analysis
- Tool handlers (ToolService)
"""

from asogate.app.services.scoring import (
    ScoreResult,
    ScoringResolver,
    get_scoring_resolver,
    reset_scoring_resolver,
)
from asogate.app.services.tools import (
    TOOL_REGISTRY,
    ToolResult,
    ToolService,
    get_tool_service,
    reset_tool_service,
)

__all__ = [
    "ScoreResult",
    "ScoringResolver",
    "get_scoring_resolver",
    "reset_scoring_resolver",
    "TOOL_REGISTRY",
    "ToolResult",
    "ToolService",
    "get_tool_service",
    "reset_tool_service",
]
