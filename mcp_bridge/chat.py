#!/usr/bin/env python3
"""
Tool-calling chat client.

Sends the conversation plus the namespaced tool catalog to the LLM backend
(litellm), executes the tool calls of each reply against the owning
connection and feeds the results back until the model answers without tool
calls or the iteration bound is hit.
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp
import litellm

from .catalog import ToolCatalog
from .errors import (
    BridgeError,
    ConfigurationError,
    IterationBoundExceeded,
    LLMBackendError,
    OperationTimeout,
    ToolExecutionFailure,
)
from .models import ChatCompletion, ChatTurn, ToolError, ToolResult

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = """You are a helpful assistant with access to MCP (Model Context Protocol) tools.

IMPORTANT RULES:
1. When the user asks you to do something, COMPLETE THE TASK to the end
2. If you said you would do something, DO IT - do not stop halfway
3. Use the available tools to complete tasks
4. If a tool fails, try another approach
5. Be concise and direct

When you need to create, modify or look up information, use the available tools."""

OPENROUTER_MODELS_URL = "https://openrouter.ai/api/v1/models"
POPULAR_MODEL_MARKERS = ("claude", "gpt-4", "gpt-3.5", "gemini", "llama", "mistral", "command")
MAX_LISTED_MODELS = 20


@dataclass
class ChatOptions:
    """Per-request overrides; None falls back to the client's settings"""
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    use_tools: Optional[bool] = None
    max_iterations: Optional[int] = None


def _get(obj: Any, key: str, default: Any = None) -> Any:
    # litellm replies are objects; injected completion functions may return dicts
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _arguments_text(arguments: Any) -> str:
    # Some backends hand back already-decoded arguments
    if not arguments:
        return "{}"
    if isinstance(arguments, str):
        return arguments
    return json.dumps(arguments, ensure_ascii=False)


def clean_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Strip non-protocol fields (refusal, reasoning, index...) from each message"""
    cleaned = []
    for msg in messages:
        clean: Dict[str, Any] = {"role": msg.get("role"), "content": msg.get("content")}

        if msg.get("role") == "tool" and msg.get("tool_call_id"):
            clean["tool_call_id"] = msg["tool_call_id"]

        if msg.get("role") == "assistant" and msg.get("tool_calls"):
            clean["tool_calls"] = [
                {
                    "id": call.get("id"),
                    "type": call.get("type", "function"),
                    "function": {
                        "name": call["function"].get("name") or "",
                        "arguments": _arguments_text(call["function"].get("arguments")),
                    },
                }
                for call in msg["tool_calls"]
            ]

        cleaned.append(clean)
    return cleaned


def normalize_reply(response: Any) -> Dict[str, Any]:
    """Extract the assistant message of a completion as a plain dict"""
    choices = _get(response, "choices") or []
    if not choices:
        raise LLMBackendError("No choices in LLM response")
    message = _get(choices[0], "message")
    if message is None:
        raise LLMBackendError("No message in LLM response")

    tool_calls = []
    for call in _get(message, "tool_calls") or []:
        function = _get(call, "function") or {}
        tool_calls.append({
            "id": _get(call, "id"),
            "type": _get(call, "type") or "function",
            "function": {
                "name": _get(function, "name") or "",
                "arguments": _arguments_text(_get(function, "arguments")),
            },
        })

    content = _get(message, "content")
    if content is None:
        # Null content is only valid alongside tool calls
        content = None if tool_calls else ""

    reply: Dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        reply["tool_calls"] = tool_calls
    return reply


def popular_models(models: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    popular = [m for m in models if any(marker in m.get("id", "") for marker in POPULAR_MODEL_MARKERS)]
    return (popular or models)[:MAX_LISTED_MODELS]


@dataclass
class ToolChatClient:
    catalog: ToolCatalog
    api_key: Optional[str] = None
    model: str = "openrouter/anthropic/claude-sonnet-4"
    temperature: float = 0.7
    max_tokens: int = 4096
    max_iterations: int = 10
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    timeout: float = 300.0
    app_name: str = "MCP Bridge"
    models_url: str = OPENROUTER_MODELS_URL
    completion_fn: Callable[..., Awaitable[Any]] = field(default=litellm.acompletion, repr=False)

    @classmethod
    def from_settings(cls, settings, catalog: ToolCatalog, **kwargs) -> "ToolChatClient":
        return cls(
            catalog=catalog,
            api_key=settings.api_key,
            model=settings.model,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            max_iterations=settings.max_iterations,
            timeout=settings.llm_timeout,
            app_name=settings.client_name,
            **kwargs,
        )

    @property
    def registry(self):
        return self.catalog.registry

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _require_api_key(self) -> str:
        if not self.api_key:
            raise ConfigurationError("LLM API key not configured. Set OPENROUTER_API_KEY")
        return self.api_key

    def _model_name(self, model: Optional[str]) -> str:
        """Route bare OpenRouter ids (e.g. 'openai/gpt-4o') through litellm's openrouter provider"""
        model = model or self.model
        if self.model.startswith("openrouter/") and not model.startswith("openrouter/"):
            model = f"openrouter/{model}"
        return model

    @staticmethod
    def _send_tools(messages: List[Dict[str, Any]], use_tools: Optional[bool]) -> bool:
        if use_tools is not None:
            return use_tools
        # Result-feeding turns go out without the catalog
        return not (messages and messages[-1].get("role") == "tool")

    # ----- single turn -----
    async def chat(self, messages: List[Dict[str, Any]], options: Optional[ChatOptions] = None,
                   execute_tools: bool = True) -> ChatTurn:
        """One completion request; tool calls of the reply are executed in order"""
        options = options or ChatOptions()
        api_key = self._require_api_key()
        model = self._model_name(options.model)

        if "openrouter/" in model.lower():
            # Show the app name instead of "litellm" in the OpenRouter dashboard
            os.environ["OR_APP_NAME"] = self.app_name

        cleaned = clean_messages(messages)
        params: Dict[str, Any] = {
            "model": model,
            "messages": cleaned,
            "temperature": self.temperature if options.temperature is None else options.temperature,
            "max_tokens": options.max_tokens or self.max_tokens,
            "api_key": api_key,
        }
        if self._send_tools(cleaned, options.use_tools):
            tools = self.catalog.function_specs()
            if tools:
                params["tools"] = tools
                params["tool_choice"] = "auto"

        logger.info(f"LLM request: model={model} messages={len(cleaned)} tools={len(params.get('tools', []))}")
        reply = normalize_reply(await self._complete(params))

        tool_calls = reply.get("tool_calls")
        if not tool_calls or not execute_tools:
            return ChatTurn(message=reply)

        # Sequential: provider side effects stay ordered
        results = []
        for call in tool_calls:
            results.append(await self.execute_tool_call(call))
        return ChatTurn(message=reply, tool_results=results)

    async def _complete(self, params: Dict[str, Any]) -> Any:
        try:
            return await asyncio.wait_for(self.completion_fn(**params), timeout=self.timeout)
        except (asyncio.TimeoutError, litellm.Timeout) as e:
            raise OperationTimeout(f"LLM request timed out after {self.timeout}s") from e
        except BridgeError:
            raise
        except Exception as e:
            logger.error(f"LLM request failed: {e}")
            raise LLMBackendError(f"LLM request failed: {e}") from e

    async def execute_tool_call(self, call: Dict[str, Any]) -> ToolResult:
        """Run one tool call; every failure becomes the tool's own error output"""
        call_id = call.get("id")
        function = call.get("function") or {}
        name = function.get("name") or ""

        try:
            connection, tool_name = self.catalog.resolve(name)
            arguments = json.loads(_arguments_text(function.get("arguments")))
            if not isinstance(arguments, dict):
                raise ToolExecutionFailure(f"Arguments for {name} must be a JSON object")
        except ToolExecutionFailure as e:
            return self._error_result(call_id, name, str(e))
        except json.JSONDecodeError as e:
            return self._error_result(call_id, name, f"Invalid JSON arguments for {name}: {e}")
        except (TypeError, ValueError) as e:
            return self._error_result(call_id, name, f"Malformed tool call {name!r}: {e}")

        outcome = await self.registry.call_tool(connection.id, tool_name, arguments)
        if isinstance(outcome, ToolError):
            return self._error_result(call_id, name, outcome.error)

        return ToolResult(tool_call_id=call_id, name=name,
                          output=json.dumps(outcome.content, indent=2, ensure_ascii=False))

    @staticmethod
    def _error_result(call_id: str, name: str, error: str) -> ToolResult:
        logger.warning(f"Tool '{name}' failed: {error}")
        return ToolResult(tool_call_id=call_id, name=name,
                          output=json.dumps({"error": error}, indent=2, ensure_ascii=False))

    # ----- bounded loop -----
    async def chat_with_tool_loop(self, messages: List[Dict[str, Any]],
                                  options: Optional[ChatOptions] = None) -> ChatCompletion:
        options = options or ChatOptions()
        max_iterations = self.max_iterations if options.max_iterations is None else options.max_iterations
        if not isinstance(max_iterations, int) or isinstance(max_iterations, bool) or max_iterations < 1:
            raise ValueError(f"max_iterations must be at least 1, got {max_iterations}")

        conversation = list(messages)
        if not any(m.get("role") == "system" for m in conversation):
            conversation.insert(0, {"role": "system", "content": self.system_prompt})

        for iteration in range(1, max_iterations + 1):
            # Calls of the last permitted reply would have nowhere to go
            turn = await self.chat(conversation, options, execute_tools=iteration < max_iterations)
            conversation.append(turn.message)

            if not turn.message.get("tool_calls"):
                logger.info(f"Tool loop finished after {iteration} iteration(s)")
                return ChatCompletion(messages=conversation, final_message=turn.message)

            for result in turn.tool_results or []:
                conversation.append({"role": "tool", "tool_call_id": result.tool_call_id, "content": result.output})

        logger.warning(f"Tool loop hit max iterations ({max_iterations})")
        raise IterationBoundExceeded(max_iterations, conversation)

    # ----- model listing -----
    async def list_models(self) -> List[Dict[str, Any]]:
        """Popular chat models from the OpenRouter catalog"""
        api_key = self._require_api_key()
        headers = {"Authorization": f"Bearer {api_key}"}
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=30)) as session:
                async with session.get(self.models_url, headers=headers) as response:
                    if response.status != 200:
                        raise LLMBackendError(f"Failed to fetch models: {response.status}")
                    data = await response.json()
        except aiohttp.ClientError as e:
            raise LLMBackendError(f"Failed to fetch models: {e}") from e
        return popular_models(data.get("data") or [])
