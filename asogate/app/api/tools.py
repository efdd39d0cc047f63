"""HTTP surface for the ASO tools."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body
from fastapi.responses import JSONResponse

from asogate.app.services.tools import get_tool_service

router = APIRouter(prefix="/tools", tags=["tools"])


@router.get("")
async def list_tools() -> List[Dict[str, Any]]:
    """List available tools with their argument schemas."""
    return get_tool_service().list_tools()


@router.post("/{name}")
async def call_tool(
    name: str,
    arguments: Optional[Dict[str, Any]] = Body(default=None),
) -> JSONResponse:
    """Run a tool; failures keep the same JSON shape with a matching status."""
    result = await get_tool_service().call(name, arguments)
    return JSONResponse(status_code=result.status_code, content=result.to_dict())
