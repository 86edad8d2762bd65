"""
Chat-completions client used by the turn handler and the supervisor.

Every failure mode of the upstream call (network error, API error, timeout,
malformed body) surfaces as a single LLMError so callers have one thing to
recover from.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI, OpenAIError

from clinconnect.config.constants import LOGGER_NAME

logger = logging.getLogger(LOGGER_NAME)


class LLMError(RuntimeError):
    """The model could not produce a usable reply."""


@dataclass
class ToolCall:
    """A function call requested by the model."""

    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    call_id: str = "call_0"
    raw_arguments: str = "{}"

    def as_messages(self, output: Dict[str, Any]) -> List[Dict[str, Any]]:
        """The assistant call and the tool output, ready to append to a conversation."""
        return [
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {
                        "id": self.call_id,
                        "type": "function",
                        "function": {"name": self.name, "arguments": self.raw_arguments},
                    }
                ],
            },
            {
                "role": "tool",
                "tool_call_id": self.call_id,
                "content": json.dumps(output, default=str),
            },
        ]


@dataclass
class LLMReply:
    """Either finished text, a tool call, or both."""

    text: Optional[str] = None
    tool_call: Optional[ToolCall] = None


class ChatCompletionClient:
    """Thin wrapper around ``AsyncOpenAI().chat.completions``."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI],
        model: str,
        timeout: float = 15.0,
        temperature: float = 0.7,
    ):
        self.client = client
        self.model = model
        self.timeout = timeout
        self.temperature = temperature

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        model: Optional[str] = None,
    ) -> LLMReply:
        """
        Run one completion.

        Args:
            messages: Chat messages, system prompt first
            tools: Function tool definitions the model may call
            model: Override for the configured model

        Returns:
            LLMReply with text and/or the first requested tool call

        Raises:
            LLMError: on any upstream or decoding failure
        """
        if self.client is None:
            raise LLMError("OpenAI client is not configured (missing OPENAI_API_KEY)")

        request: Dict[str, Any] = {
            "model": model or self.model,
            "messages": messages,
            "temperature": self.temperature,
        }
        if tools:
            request["tools"] = tools
            request["parallel_tool_calls"] = False

        logger.debug(f"Chat completion request: model={request['model']}, messages={len(messages)}, tools={len(tools or [])}")
        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(**request), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            raise LLMError(f"Chat completion timed out after {self.timeout}s") from e
        except OpenAIError as e:
            raise LLMError(f"Chat completion failed: {e}") from e

        try:
            message = response.choices[0].message
        except (AttributeError, IndexError, TypeError) as e:
            raise LLMError("Malformed chat completion response") from e

        tool_call = None
        if message.tool_calls:
            first = message.tool_calls[0]
            raw_arguments = first.function.arguments or "{}"
            try:
                arguments = json.loads(raw_arguments)
            except ValueError as e:
                raise LLMError(f"Malformed arguments for tool {first.function.name}") from e
            if not isinstance(arguments, dict):
                raise LLMError(f"Tool arguments for {first.function.name} are not an object")
            tool_call = ToolCall(
                name=first.function.name,
                arguments=arguments,
                call_id=first.id,
                raw_arguments=raw_arguments,
            )

        text = (message.content or "").strip() or None
        if text is None and tool_call is None:
            raise LLMError("Chat completion returned neither text nor a tool call")

        logger.debug(f"Chat completion reply: text={text!r}, tool={tool_call.name if tool_call else None}")
        return LLMReply(text=text, tool_call=tool_call)
