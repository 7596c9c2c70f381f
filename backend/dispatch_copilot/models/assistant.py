"""Conversation models for the dispatch assistant."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolFunction(BaseModel):
    name: str
    arguments: str = "{}"


class ToolCall(BaseModel):
    """One catalogue operation requested by the model."""

    id: str
    type: Literal["function"] = "function"
    function: ToolFunction


class ChatMessage(BaseModel):
    """A single chat message in the OpenAI wire shape."""

    role: MessageRole
    content: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    @model_validator(mode="after")
    def _check_role_fields(self) -> "ChatMessage":
        if self.role == MessageRole.TOOL and not self.tool_call_id:
            raise ValueError("tool messages require tool_call_id")
        if self.tool_calls and self.role != MessageRole.ASSISTANT:
            raise ValueError("only assistant messages may carry tool_calls")
        return self

    def to_api(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ConversationState(BaseModel):
    """Conversation the UI hands back on every turn."""

    model_config = ConfigDict(populate_by_name=True)

    history: List[ChatMessage] = Field(default_factory=list, alias="conversationHistory")
    mode: Optional[str] = None


class AssistantQueryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(min_length=1)
    conversation_state: Optional[ConversationState] = Field(default=None, alias="conversationState")


class AssistantReply(BaseModel):
    """Answer for one operator turn plus the updated history."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    message: str
    used_ai: bool = Field(default=True, alias="usedAI")
    conversation_history: List[ChatMessage] = Field(default_factory=list, alias="conversationHistory")
    needs_more_info: Optional[bool] = Field(default=None, alias="needsMoreInfo")
    actions: List[Dict[str, Any]] = Field(default_factory=list)
    iterations: int = 0
    processing_time_ms: float = Field(default=0.0, alias="processingTimeMs")


@dataclass
class ToolContext:
    """Organization scope and acting user for one tool invocation."""

    org_id: str
    user_id: str
