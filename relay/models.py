"""
Data models for the relay runtime.

Defines Content/Part (model-turn payloads), Event and EventActions (the
session log records), SessionKey and RunConfig.
Do not duplicate these definitions elsewhere.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

USER_AUTHOR = "user"


def new_id() -> str:
    return str(uuid.uuid4())


class FunctionCall(BaseModel):
    """A tool call requested by the model."""

    id: Optional[str] = None
    name: str
    args: Optional[Dict[str, Any]] = None


class FunctionResponse(BaseModel):
    """The result of a tool call, sent back to the model."""

    id: Optional[str] = None
    name: str
    response: Optional[Dict[str, Any]] = None


class Blob(BaseModel):
    """Inline binary data (uploaded files, artifacts)."""

    model_config = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")

    mime_type: str = "application/octet-stream"
    data: bytes = b""


class Part(BaseModel):
    """One element of a Content: text, a tool call, a tool result or a blob."""

    text: Optional[str] = None
    function_call: Optional[FunctionCall] = None
    function_response: Optional[FunctionResponse] = None
    inline_data: Optional[Blob] = None


class Content(BaseModel):
    """A single conversation turn: role ("user" | "model") and ordered parts."""

    role: str = "user"
    parts: List[Part] = Field(default_factory=list)

    @classmethod
    def from_text(cls, text: str, role: str = "user") -> "Content":
        return cls(role=role, parts=[Part(text=text)])

    @classmethod
    def from_function_call(cls, name: str, args: Optional[Dict[str, Any]] = None, role: str = "model") -> "Content":
        return cls(role=role, parts=[Part(function_call=FunctionCall(name=name, args=args))])

    @classmethod
    def from_function_response(
        cls, name: str, response: Optional[Dict[str, Any]] = None, role: str = "user"
    ) -> "Content":
        return cls(role=role, parts=[Part(function_response=FunctionResponse(name=name, response=response))])

    def text_parts(self) -> List[str]:
        return [p.text for p in self.parts if p.text is not None]


class EventActions(BaseModel):
    """Side effects recorded alongside an event."""

    transfer_to_agent: Optional[str] = None
    state_delta: Dict[str, Any] = Field(default_factory=dict)

    def merge(self, other: "EventActions") -> None:
        if other.transfer_to_agent:
            self.transfer_to_agent = other.transfer_to_agent
        self.state_delta.update(other.state_delta)


class Event(BaseModel):
    """
    Immutable record of one happening in a conversation.

    author is USER_AUTHOR or an agent name; branch is a dot-separated path
    ("" is the root branch). Partial events are streamed increments and are
    never persisted.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    invocation_id: str = ""
    timestamp: float = Field(default_factory=time.time)
    author: str = USER_AUTHOR
    branch: str = ""
    content: Optional[Content] = None
    actions: EventActions = Field(default_factory=EventActions)
    partial: bool = False
    turn_complete: Optional[bool] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def function_calls(self) -> List[FunctionCall]:
        if self.content is None:
            return []
        return [p.function_call for p in self.content.parts if p.function_call is not None]

    def function_responses(self) -> List[FunctionResponse]:
        if self.content is None:
            return []
        return [p.function_response for p in self.content.parts if p.function_response is not None]

    def is_final_response(self) -> bool:
        return not self.partial and not self.function_calls() and not self.function_responses()


@dataclass(frozen=True)
class SessionKey:
    app_name: str
    user_id: str
    session_id: str


class RunConfig(BaseModel):
    """Per-call runner options."""

    streaming_mode: Literal["none", "sse"] = "none"
    support_cfc: bool = False
    # <= 0 disables the limit.
    max_llm_calls: int = 500
    save_input_blobs_as_artifacts: bool = False
