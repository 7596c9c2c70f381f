"""API routes for the dispatch assistant."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from dispatch_copilot.core.auth import ASSISTANT_ROLES, OrgContext, require_roles
from dispatch_copilot.core.logging import logger
from dispatch_copilot.models.assistant import AssistantQueryRequest
from dispatch_copilot.services.dispatch_assistant import DispatchAssistant
from dispatch_copilot.services.dispatch_tools import DispatchToolExecutor
from dispatch_copilot.services.runtime import get_dispatch_assistant


router = APIRouter(prefix="/assistant", tags=["assistant"])


@router.post("/query")
async def query_assistant(
    request: AssistantQueryRequest,
    context: OrgContext = Depends(require_roles(*ASSISTANT_ROLES)),
    assistant: DispatchAssistant = Depends(get_dispatch_assistant),
):
    if context.authenticated and not context.user_verified:
        logger.info("Assistant user taken from header", org_id=context.org_id, user_id=context.user_id)
    reply = await assistant.process_query(
        request.message,
        user_id=context.user_id,
        conversation_state=request.conversation_state,
        org_id=context.org_id,
    )
    return reply.model_dump(mode="json", by_alias=True, exclude_none=True)


@router.get("/tools")
def list_tools(context: OrgContext = Depends(require_roles(*ASSISTANT_ROLES))):
    tools = DispatchToolExecutor.tool_schemas()
    return {"tools": tools, "count": len(tools), "org_id": context.org_id}
