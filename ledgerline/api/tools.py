"""
/api/v1/tools endpoint.
Thin HTTP wrapper around the tool dispatcher; failures come back as
ToolResult bodies, not HTTP errors.
"""

from typing import Any

from fastapi import APIRouter, Body, Depends

from ledgerline.dependencies import get_dispatcher
from ledgerline.dispatcher import ToolDispatcher
from ledgerline.schemas.contracts import ToolResult

router = APIRouter(prefix="/api/v1/tools", tags=["tools"])


@router.post("/invoke", response_model=ToolResult)
async def invoke_tool(
    invocation: dict[str, Any] = Body(..., examples=[{
        "operation": "extract",
        "tenant_id": "shop-001",
        "parameters": {"text": "QAB1CD2EF3 Confirmed.You have received Ksh500.00 from JOHN DOE ..."},
    }]),
    dispatcher: ToolDispatcher = Depends(get_dispatcher),
) -> ToolResult:
    """
    Invoke one operation. The envelope is validated by the dispatcher so a
    malformed request still gets a validation_error result.
    """
    return await dispatcher.invoke(invocation)
