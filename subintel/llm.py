"""Async LLM client for text completions, tool-calling turns and inline-PDF extraction."""
from __future__ import annotations

import base64
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any

from subintel.utils import parse_json_object

log = logging.getLogger(__name__)


class LLMCallError(Exception):
    """LLM call failed or the client is not configured."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class ToolTurn:
    """Reply text plus any tool calls the model asked for."""
    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)


def _openai_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    converted: list[dict[str, Any]] = []
    for message in messages:
        if message["role"] == "tool":
            converted.append({
                "role": "tool", "tool_call_id": message["tool_call_id"], "content": message["content"],
            })
        elif message.get("tool_calls"):
            converted.append({
                "role": "assistant",
                "content": message.get("content") or None,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                    }
                    for call in message["tool_calls"]
                ],
            })
        else:
            converted.append({"role": message["role"], "content": message["content"]})
    return converted


def _anthropic_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Tool results travel as user blocks; consecutive user turns are merged."""
    converted: list[dict[str, Any]] = []
    for message in messages:
        if message["role"] == "tool":
            role = "user"
            blocks = [{"type": "tool_result", "tool_use_id": message["tool_call_id"], "content": message["content"]}]
        elif message.get("tool_calls"):
            role = "assistant"
            blocks = [{"type": "text", "text": message["content"]}] if message.get("content") else []
            blocks.extend(
                {"type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments}
                for call in message["tool_calls"]
            )
        else:
            role = message["role"]
            blocks = [{"type": "text", "text": message["content"]}]
        if converted and converted[-1]["role"] == role:
            converted[-1]["content"].extend(blocks)
        else:
            converted.append({"role": role, "content": blocks})
    return converted


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "openai")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-haiku-4-5-20251001"
            key = self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            if key:
                self._client = anthropic.AsyncAnthropic(api_key=key)
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs: dict[str, Any] = {}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            if key or url:
                self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    @property
    def configured(self) -> bool:
        return self._client is not None

    def _require_client(self) -> Any:
        if self._client is None:
            raise LLMCallError(f"No API key configured for LLM provider {self.provider!r}")
        return self._client

    def _openai_token_kwargs(self, max_tokens: int) -> dict[str, int]:
        # Hosted OpenAI reasoning models reject max_tokens
        if self.provider == "openai":
            return {"max_completion_tokens": max_tokens}
        return {"max_tokens": max_tokens}

    async def complete(
        self,
        prompt: str,
        *,
        system: str | None = None,
        temperature: float = 0,
        max_tokens: int = 2048,
    ) -> str:
        """Send a single user prompt and return the raw reply text."""
        client = self._require_client()
        try:
            if self.provider == "anthropic":
                kwargs: dict[str, Any] = {}
                if system:
                    kwargs["system"] = system
                response = await client.messages.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    messages=[{"role": "user", "content": prompt}],
                    **kwargs,
                )
                return "".join(
                    block.text for block in response.content if getattr(block, "type", "") == "text"
                ).strip()

            messages: list[dict[str, Any]] = []
            if system:
                messages.append({"role": "system", "content": system})
            messages.append({"role": "user", "content": prompt})
            response = await client.chat.completions.create(
                model=self.model,
                temperature=temperature,
                messages=messages,
                **self._openai_token_kwargs(max_tokens),
            )
            return (response.choices[0].message.content or "").strip()
        except LLMCallError:
            raise
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

    async def complete_with_document(
        self,
        pdf_bytes: bytes,
        file_name: str,
        prompt: str,
        *,
        temperature: float = 0,
        max_tokens: int = 16000,
    ) -> str:
        """Send a PDF inline alongside an instruction and return the raw reply text."""
        client = self._require_client()
        encoded = base64.b64encode(pdf_bytes).decode("ascii")
        try:
            if self.provider == "anthropic":
                response = await client.messages.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    messages=[{
                        "role": "user",
                        "content": [
                            {
                                "type": "document",
                                "source": {"type": "base64", "media_type": "application/pdf", "data": encoded},
                                "title": file_name,
                            },
                            {"type": "text", "text": prompt},
                        ],
                    }],
                )
                return "".join(
                    block.text for block in response.content if getattr(block, "type", "") == "text"
                ).strip()

            response = await client.chat.completions.create(
                model=self.model,
                temperature=temperature,
                messages=[{
                    "role": "user",
                    "content": [
                        {
                            "type": "file",
                            "file": {
                                "file_data": f"data:application/pdf;base64,{encoded}",
                                "filename": file_name,
                            },
                        },
                        {"type": "text", "text": prompt},
                    ],
                }],
                **self._openai_token_kwargs(max_tokens),
            )
            return (response.choices[0].message.content or "").strip()
        except LLMCallError:
            raise
        except Exception as exc:
            raise LLMCallError(f"LLM document call failed for {file_name}: {exc}", retryable=True) from exc

    async def complete_with_tools(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        *,
        system: str | None = None,
        allow_tools: bool = True,
        temperature: float = 0,
        max_tokens: int = 4096,
    ) -> ToolTurn:
        """One chat turn in which the model may call ``tools``.

        ``messages`` are provider-neutral: ``{"role": "user"|"assistant",
        "content": ...}``, assistant turns optionally carrying ``tool_calls``
        (:class:`ToolCall` list), and tool results as ``{"role": "tool",
        "tool_call_id": ..., "content": ...}``.  Each tool is ``{"name",
        "description", "parameters"}`` with a JSON schema for the arguments.
        With ``allow_tools=False`` the model has to answer in text.
        """
        client = self._require_client()
        try:
            if self.provider == "anthropic":
                kwargs: dict[str, Any] = {}
                if system:
                    kwargs["system"] = system
                response = await client.messages.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    messages=_anthropic_messages(messages),
                    tools=[
                        {"name": t["name"], "description": t["description"], "input_schema": t["parameters"]}
                        for t in tools
                    ],
                    tool_choice={"type": "auto" if allow_tools else "none"},
                    **kwargs,
                )
                text = "".join(
                    block.text for block in response.content if getattr(block, "type", "") == "text"
                ).strip()
                calls = [
                    ToolCall(id=block.id, name=block.name, arguments=dict(block.input or {}))
                    for block in response.content if getattr(block, "type", "") == "tool_use"
                ]
                return ToolTurn(text=text, tool_calls=calls)

            chat: list[dict[str, Any]] = []
            if system:
                chat.append({"role": "system", "content": system})
            chat.extend(_openai_messages(messages))
            response = await client.chat.completions.create(
                model=self.model,
                temperature=temperature,
                messages=chat,
                tools=[{"type": "function", "function": t} for t in tools],
                tool_choice="auto" if allow_tools else "none",
                **self._openai_token_kwargs(max_tokens),
            )
            message = response.choices[0].message
            calls = [
                ToolCall(id=tc.id, name=tc.function.name, arguments=parse_json_object(tc.function.arguments))
                for tc in (message.tool_calls or [])
            ]
            return ToolTurn(text=(message.content or "").strip(), tool_calls=calls)
        except LLMCallError:
            raise
        except Exception as exc:
            raise LLMCallError(f"LLM tool call failed: {exc}", retryable=True) from exc


def get_llm_client() -> LLMClient:
    """Client built from ``LLM_PROVIDER`` / ``LLM_MODEL`` settings."""
    from subintel.config import get_settings

    settings = get_settings()
    return LLMClient(provider=settings.llm_provider or None, model=settings.llm_model or None)
