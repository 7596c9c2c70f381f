"""Conversation orchestrator: bounded completion/tool loop over the dispatch catalogue."""
from __future__ import annotations

import asyncio
import json
import time
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set

from openai import AsyncOpenAI

from dispatch_copilot.core.config import Settings, get_settings
from dispatch_copilot.core.logging import logger
from dispatch_copilot.models.assistant import (
    AssistantReply,
    ChatMessage,
    ConversationState,
    MessageRole,
    ToolCall,
    ToolContext,
    ToolFunction,
)
from dispatch_copilot.services.dispatch_store import DispatchStore
from dispatch_copilot.services.dispatch_tools import DispatchToolExecutor


FALLBACK_MESSAGE = "I've completed the task as far as I can. Let me know if you need anything else."
FOLLOW_UP_MARKERS = ("need", "provide", "can you")
CREATING_LOAD_MODE = "creating_load"


class CompletionServiceError(Exception):
    """Raised when the completion service fails, times out, or answers malformed."""


def _answered_ids(items: List[ChatMessage], start: int) -> Set[str]:
    """Tool call ids answered by the run of tool messages beginning at `start`."""
    found: Set[str] = set()
    for item in items[start:]:
        if item.role != MessageRole.TOOL:
            break
        if item.tool_call_id:
            found.add(item.tool_call_id)
    return found


def sanitize_history(history: Iterable[ChatMessage]) -> List[ChatMessage]:
    """Drop caller-supplied system prompts and any tool message that lost its tool call.

    An assistant message keeps its `tool_calls` only when the tool messages
    directly after it answer every call. Otherwise it keeps its text and
    loses the dangling `tool_calls`.
    """
    items = [item for item in history if item.role != MessageRole.SYSTEM]

    cleaned: List[ChatMessage] = []
    open_ids: Set[str] = set()
    for index, item in enumerate(items):
        if item.role == MessageRole.TOOL:
            if item.tool_call_id in open_ids:
                open_ids.discard(item.tool_call_id)
                cleaned.append(item)
            continue
        open_ids = set()
        if item.role == MessageRole.ASSISTANT and item.tool_calls:
            ids = {call.id for call in item.tool_calls}
            if ids <= _answered_ids(items, index + 1):
                open_ids = ids
                cleaned.append(item)
            elif item.content:
                cleaned.append(ChatMessage(role=MessageRole.ASSISTANT, content=item.content))
            continue
        cleaned.append(item)
    return cleaned


def window_history(history: List[ChatMessage], size: int) -> List[ChatMessage]:
    """Last `size` messages, never starting on a tool result cut off from its call."""
    if size <= 0:
        return []
    recent = list(history[-size:])
    while recent and recent[0].role == MessageRole.TOOL:
        recent.pop(0)
    return recent


class DispatchAssistant:
    """Language-model dispatcher that acts through the tool executor."""

    def __init__(
        self,
        store: DispatchStore,
        executor: Optional[DispatchToolExecutor] = None,
        client: Any = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self.executor = executor or DispatchToolExecutor(store)
        self._enabled = bool(self.settings.assistant_enabled)
        self._client: Any = client

        if self._client is None and self._enabled:
            key = self.settings.resolved_openai_api_key()
            if key:
                self._client = AsyncOpenAI(
                    api_key=key,
                    base_url=self.settings.openai_base_url,
                    timeout=float(self.settings.assistant_completion_timeout_seconds),
                )
            else:
                logger.info("Dispatch assistant disabled (missing OPENAI_API_KEY).")

    def is_enabled(self) -> bool:
        return self._enabled and self._client is not None

    def system_prompt(self, user_id: str, org_id: str, mode: Optional[str], today: Optional[date] = None) -> str:
        today = today or date.today()
        tomorrow = today + timedelta(days=1)
        lines = [
            "You are Dipsy, the dispatch assistant for a trucking operation.",
            "Be friendly, brief, and action-first: perform the work with tools instead of describing it.",
            "",
            "What you can do:",
            "- search loads by status, origin, or destination",
            "- search drivers by status or location notes",
            "- create loads, update load details, and mark loads delivered",
            "- assign drivers to loads and show load details with the assigned driver",
            "- locate a truck and list the latest fleet positions",
            "",
            "Current context:",
            f"- User ID: {user_id}",
            f"- Organization: {org_id}",
            f"- Today's date: {today.isoformat()}",
            f"- Tomorrow's date: {tomorrow.isoformat()}",
        ]
        if mode:
            lines.append(f"- Active task: {mode}")
        lines.extend(
            [
                "",
                "Using the conversation:",
                "- \"that load\", \"this load\" or \"the load\" means the load most recently discussed.",
                "- \"that driver\", \"him\" or \"her\" means the driver most recently discussed.",
                "- A bare number such as 4404 is a load reference like LD-2025-4404.",
                "- A first name alone is a driver name; search drivers if unsure.",
                "- Never ask again for details that appear in the recent messages.",
                "",
                "Rules:",
                "- Call create_load as soon as origin, destination, rate, pickup_date, delivery_date, shipper,"
                " equipment_type and customer_reference are all known. Weight, commodity and miles are optional.",
                "- Always call assign_driver_to_load to assign; never claim an assignment in text alone.",
                "- If a tool reports several matching records, ask the operator which one they mean.",
                "- If a tool fails, say exactly why.",
            ]
        )
        return "\n".join(lines)

    @staticmethod
    def _coerce_state(conversation_state: Any) -> ConversationState:
        if conversation_state is None:
            return ConversationState()
        if isinstance(conversation_state, ConversationState):
            return conversation_state
        return ConversationState.model_validate(conversation_state)

    def _resolve_org(self, user_id: str, org_id: Optional[str]) -> Optional[str]:
        explicit = (org_id or "").strip()
        if explicit:
            return explicit
        return self.store.org_for_user(user_id)

    async def _complete(self, messages: List[Dict[str, Any]], deadline: float) -> ChatMessage:
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise CompletionServiceError("Turn deadline exceeded before the next completion")
        timeout = min(float(self.settings.assistant_completion_timeout_seconds), remaining)

        try:
            completion = await asyncio.wait_for(
                self._client.chat.completions.create(
                    model=self.settings.llm_model,
                    messages=messages,
                    tools=self.executor.tool_schemas(),
                    tool_choice="auto",
                    temperature=float(self.settings.llm_temperature),
                    max_tokens=int(self.settings.llm_max_tokens),
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise CompletionServiceError(f"Completion timed out after {timeout:.1f}s") from exc
        except Exception as exc:
            raise CompletionServiceError(f"Completion request failed: {exc}") from exc

        try:
            message = completion.choices[0].message
        except (AttributeError, IndexError, TypeError) as exc:
            raise CompletionServiceError("Completion returned no choices") from exc
        if message is None:
            raise CompletionServiceError("Completion returned no message")

        calls = []
        for call in getattr(message, "tool_calls", None) or []:
            calls.append(
                ToolCall(
                    id=str(call.id),
                    function=ToolFunction(
                        name=str(call.function.name or ""),
                        arguments=str(call.function.arguments or "{}"),
                    ),
                )
            )
        return ChatMessage(
            role=MessageRole.ASSISTANT,
            content=getattr(message, "content", None),
            tool_calls=calls or None,
        )

    async def _run_tool(self, call: ToolCall, context: ToolContext, actions: List[Dict[str, Any]]) -> Dict[str, Any]:
        name = call.function.name
        try:
            args = json.loads(call.function.arguments or "{}")
        except json.JSONDecodeError:
            args = None
        if isinstance(args, dict):
            result = await self.executor.execute(name, args, context)
        else:
            result = {"error": f"Arguments for {name} were not a valid JSON object"}

        ok = "error" not in result
        actions.append(
            {
                "tool": name,
                "args": args if isinstance(args, dict) else call.function.arguments,
                "ok": ok,
                "preview": str(result.get("message") or result.get("error") or result)[:220],
            }
        )
        logger.info("Assistant tool executed", tool=name, org_id=context.org_id, ok=ok)
        return result

    async def process_query(
        self,
        message: str,
        user_id: str,
        conversation_state: Any = None,
        org_id: Optional[str] = None,
    ) -> AssistantReply:
        """Answer one operator message, acting through tools until the model stops asking."""
        started = time.time()
        state = self._coerce_state(conversation_state)
        history = sanitize_history(state.history)

        org = self._resolve_org(user_id, org_id)
        if not org:
            logger.warning("Assistant query without organization", user_id=user_id)
            return AssistantReply(
                success=False,
                message="I couldn't find an organization for your account. Ask an admin to add you to one.",
                used_ai=False,
                conversation_history=history,
                processing_time_ms=(time.time() - started) * 1000,
            )

        user_message = ChatMessage(role=MessageRole.USER, content=message)
        updated = history + [user_message]
        if not self.is_enabled():
            return AssistantReply(
                success=False,
                message="The dispatch assistant is not configured right now. Please try again later.",
                used_ai=False,
                conversation_history=updated,
                processing_time_ms=(time.time() - started) * 1000,
            )

        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": self.system_prompt(user_id, org, state.mode)}
        ]
        messages.extend(item.to_api() for item in window_history(history, self.settings.bounded_history_window()))
        messages.append(user_message.to_api())

        context = ToolContext(org_id=org, user_id=user_id)
        actions: List[Dict[str, Any]] = []
        max_iterations = self.settings.bounded_max_iterations()
        deadline = asyncio.get_running_loop().time() + float(self.settings.assistant_turn_timeout_seconds)
        iterations = 0

        try:
            while iterations < max_iterations:
                iterations += 1
                reply = await self._complete(messages, deadline)

                if not reply.tool_calls:
                    answer = (reply.content or "").strip() or "Done. Let me know what you need next."
                    updated.append(ChatMessage(role=MessageRole.ASSISTANT, content=answer))
                    lowered = answer.lower()
                    needs_more_info = state.mode == CREATING_LOAD_MODE and any(
                        marker in lowered for marker in FOLLOW_UP_MARKERS
                    )
                    logger.info(
                        "Assistant turn finished",
                        org_id=org,
                        user_id=user_id,
                        iterations=iterations,
                        tools=len(actions),
                    )
                    return AssistantReply(
                        success=True,
                        message=answer,
                        used_ai=True,
                        conversation_history=updated,
                        needs_more_info=True if needs_more_info else None,
                        actions=actions,
                        iterations=iterations,
                        processing_time_ms=(time.time() - started) * 1000,
                    )

                messages.append(reply.to_api())
                updated.append(reply)
                for call in reply.tool_calls:
                    result = await self._run_tool(call, context, actions)
                    tool_message = ChatMessage(
                        role=MessageRole.TOOL,
                        tool_call_id=call.id,
                        content=json.dumps(result, ensure_ascii=True, default=str),
                    )
                    messages.append(tool_message.to_api())
                    updated.append(tool_message)
        except CompletionServiceError as exc:
            logger.error("Assistant completion failed", error=str(exc), org_id=org, iterations=iterations)
            return AssistantReply(
                success=False,
                message="I'm having trouble reaching the dispatch assistant right now. Please try again in a moment.",
                used_ai=False,
                conversation_history=updated,
                actions=actions,
                iterations=iterations,
                processing_time_ms=(time.time() - started) * 1000,
            )

        logger.warning("Assistant iteration cap reached", org_id=org, iterations=iterations, tools=len(actions))
        updated.append(ChatMessage(role=MessageRole.ASSISTANT, content=FALLBACK_MESSAGE))
        return AssistantReply(
            success=True,
            message=FALLBACK_MESSAGE,
            used_ai=True,
            conversation_history=updated,
            actions=actions,
            iterations=iterations,
            processing_time_ms=(time.time() - started) * 1000,
        )
