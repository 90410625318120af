from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from .config import get_settings
from .models import Content, FunctionCall, Part, new_id

# Function declarations are plain JSON-schema dicts:
# {"name": ..., "description": ..., "parameters": {...} | None}


@dataclass
class GenerateConfig:
    system_instruction: List[str] = field(default_factory=list)
    function_declarations: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class LlmRequest:
    """Model-bound request, built fresh for every model call and never persisted."""

    model: Optional[str] = None
    contents: List[Content] = field(default_factory=list)
    tools: Dict[str, Any] = field(default_factory=dict)
    config: GenerateConfig = field(default_factory=GenerateConfig)

    def append_instructions(self, instructions: List[str]) -> None:
        self.config.system_instruction.extend(instructions)

    def append_tools(self, tools: List[Any]) -> None:
        for tool in tools:
            self.tools[tool.name] = tool
            declarations = [d for d in self.config.function_declarations if d.get("name") != tool.name]
            declaration = tool.declaration()
            if declaration is not None:
                declarations.append(declaration)
            self.config.function_declarations[:] = declarations


@dataclass
class LlmResponse:
    """Normalized (possibly partial) response from a model backend."""

    content: Optional[Content] = None
    partial: bool = False
    turn_complete: Optional[bool] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class BaseModelBackend:
    """
    Abstract model backend interface.

    `generate` is synchronous and lazy: streaming backends yield partial
    responses followed by one final (non-partial) response.
    """

    name: str = "base"

    def generate(self, request: LlmRequest, *, stream: bool = False) -> Iterator[LlmResponse]:  # pragma: no cover - interface only
        raise NotImplementedError


class EchoBackend(BaseModelBackend):
    """
    Deterministic backend that answers with the latest user text.

    Used when no remote provider is configured; it never calls tools.
    """

    def __init__(self, name: str = "echo") -> None:
        self.name = name

    def generate(self, request: LlmRequest, *, stream: bool = False) -> Iterator[LlmResponse]:
        text = _last_user_text(request.contents)
        reply = f"echo: {text}" if text else "echo"
        if stream:
            yield LlmResponse(content=Content.from_text(reply[: len(reply) // 2], role="model"), partial=True)
        yield LlmResponse(content=Content.from_text(reply, role="model"), turn_complete=True)


def _last_user_text(contents: List[Content]) -> str:
    for content in reversed(contents):
        if content.role != "user":
            continue
        texts = [t for t in content.text_parts() if t]
        if texts:
            return " ".join(texts)
    return ""


OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"


class OpenRouterBackend(BaseModelBackend):
    """
    OpenRouter backend: one API key, many models (OpenAI, Claude, Gemini, etc.).

    Speaks the OpenAI chat-completions format. Streaming is not used; a single
    final response is produced per call.
    """

    def __init__(self, api_key: str, model: Optional[str] = None, url: str = OPENROUTER_API_URL) -> None:
        self.api_key = api_key
        self.name = model or "openai/gpt-4o-mini"
        self.url = url

    def build_payload(self, request: LlmRequest) -> Dict[str, Any]:
        messages: List[Dict[str, Any]] = []
        if request.config.system_instruction:
            messages.append({"role": "system", "content": "\n\n".join(request.config.system_instruction)})
        for content in request.contents:
            messages.extend(_content_to_messages(content))

        body: Dict[str, Any] = {"model": request.model or self.name, "messages": messages}
        if request.config.function_declarations:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": decl["name"],
                        "description": decl.get("description", ""),
                        "parameters": decl.get("parameters")
                        or {"type": "object", "properties": {}, "additionalProperties": True},
                    },
                }
                for decl in request.config.function_declarations
            ]
        return body

    def generate(self, request: LlmRequest, *, stream: bool = False) -> Iterator[LlmResponse]:  # pragma: no cover - network
        import httpx

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        resp = httpx.post(self.url, headers=headers, json=self.build_payload(request), timeout=60)
        resp.raise_for_status()
        yield parse_chat_completion(resp.json())


def _content_to_messages(content: Content) -> List[Dict[str, Any]]:
    role = "assistant" if content.role == "model" else "user"
    texts = [p.text for p in content.parts if p.text]
    calls = [p.function_call for p in content.parts if p.function_call is not None]
    results = [p.function_response for p in content.parts if p.function_response is not None]

    messages: List[Dict[str, Any]] = []
    if texts or calls:
        message: Dict[str, Any] = {"role": role, "content": "\n".join(texts) if texts else None}
        if calls:
            message["tool_calls"] = [
                {
                    "id": call.id or call.name,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.args or {})},
                }
                for call in calls
            ]
        messages.append(message)
    for result in results:
        messages.append(
            {
                "role": "tool",
                "tool_call_id": result.id or result.name,
                "content": json.dumps(result.response),
            }
        )
    return messages


def parse_chat_completion(data: Dict[str, Any]) -> LlmResponse:
    """Convert a chat-completions response body into an LlmResponse."""
    try:
        message = data["choices"][0]["message"]
    except (KeyError, IndexError, TypeError):
        return LlmResponse(error_code="MALFORMED_RESPONSE", error_message="response has no choices")

    parts: List[Part] = []
    if message.get("content"):
        parts.append(Part(text=message["content"]))
    for call in message.get("tool_calls") or []:
        function = call.get("function") or {}
        raw_args = function.get("arguments") or "{}"
        try:
            args = json.loads(raw_args)
        except json.JSONDecodeError:
            args = {"raw": raw_args}
        parts.append(
            Part(function_call=FunctionCall(id=call.get("id") or new_id(), name=function.get("name", ""), args=args))
        )
    return LlmResponse(content=Content(role="model", parts=parts), turn_complete=True)


def build_backend(model: Optional[str] = None) -> BaseModelBackend:
    """Factory that chooses the concrete backend implementation."""
    settings = get_settings()
    if settings.provider_name == "openrouter":
        if not settings.openrouter_api_key:
            return EchoBackend()
        return OpenRouterBackend(api_key=settings.openrouter_api_key, model=model or settings.openrouter_model)
    return EchoBackend(name=model or "echo")
