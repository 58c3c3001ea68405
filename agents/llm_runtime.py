from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

import httpx

from models.errors import LLMError
from models.schemas import HistoryMessage, MessageRole, ToolCall
from settings import SETTINGS

CARE_TEAM_PREFIX = "[Care team said to the user]: "


@dataclass
class LLMResult:
    text: str
    provider: str
    model: str
    raw: Dict[str, Any]
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: Dict[str, int] = field(default_factory=dict)


def to_chat_messages(history: Iterable[HistoryMessage]) -> List[Dict[str, Any]]:
    """Conversation history as provider-neutral chat messages.

    Care team messages are replayed as assistant turns with a visible prefix so the
    model knows a human said them.
    """
    out: List[Dict[str, Any]] = []
    for m in history:
        if m.role == MessageRole.USER:
            urls = [u for u in m.image_urls if u and u.strip()]
            content = m.content
            if urls and not content.strip():
                content = "(User sent an image with no text)"
            out.append({"role": "user", "content": content, "image_urls": urls})
        elif m.role == MessageRole.ASSISTANT:
            out.append({"role": "assistant", "content": m.content})
        elif m.role == MessageRole.HUMAN_AGENT:
            out.append({"role": "assistant", "content": f"{CARE_TEAM_PREFIX}{m.content}"})
    return out


class LLMRuntime:
    """Swappable chat-completion runtime with tool calling over raw provider REST APIs.

    ``invoke`` raises :class:`LLMError` whenever no usable answer can be produced;
    callers own their deterministic fallbacks.
    """

    def __init__(self, provider: str | None = None, model: str | None = None, temperature: float = 0.2) -> None:
        self.provider = (provider or SETTINGS.default_llm_provider or "heuristic").lower()
        self.model = model or SETTINGS.default_model or "heuristic-local"
        self.temperature = temperature

    def available(self) -> bool:
        if self.provider == "anthropic":
            return bool(SETTINGS.anthropic_api_key)
        if self.provider in {"xai", "grok"}:
            return bool(SETTINGS.xai_api_key)
        if self.provider == "openai":
            return bool(SETTINGS.openai_api_key)
        return False

    def with_options(self, provider: str | None = None, model: str | None = None, temperature: float | None = None) -> "LLMRuntime":
        return type(self)(
            provider=provider or self.provider,
            model=model or self.model,
            temperature=self.temperature if temperature is None else temperature,
        )

    async def invoke(
        self,
        system_prompt: str,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]] | None = None,
        tool_choice: str | None = None,
    ) -> LLMResult:
        if not self.available():
            raise LLMError(f"llm_unavailable:{self.provider}")
        try:
            if self.provider == "anthropic":
                return await self._invoke_anthropic(system_prompt, messages, tools, tool_choice)
            if self.provider in {"xai", "grok"}:
                return await self._invoke_chat_completions(
                    SETTINGS.xai_base_url, SETTINGS.xai_api_key, "xai", system_prompt, messages, tools, tool_choice
                )
            return await self._invoke_chat_completions(
                SETTINGS.openai_base_url, SETTINGS.openai_api_key, "openai", system_prompt, messages, tools, tool_choice
            )
        except httpx.HTTPError as exc:
            raise LLMError(f"llm_request_failed:{exc!r}") from exc
        except (KeyError, TypeError, ValueError) as exc:
            raise LLMError(f"llm_response_malformed:{exc!r}") from exc

    async def call_structured(self, system_prompt: str, user_prompt: str, tool: Dict[str, Any]) -> Dict[str, Any]:
        """Force a single tool call and return its arguments."""
        result = await self.invoke(
            system_prompt,
            [{"role": "user", "content": user_prompt}],
            tools=[tool],
            tool_choice=tool["name"],
        )
        for call in result.tool_calls:
            if call.name == tool["name"]:
                return dict(call.arguments)
        raise LLMError(f"structured_output_missing:{tool['name']}")

    async def _invoke_chat_completions(
        self,
        base_url: str,
        api_key: str,
        provider: str,
        system_prompt: str,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]] | None,
        tool_choice: str | None,
    ) -> LLMResult:
        body: Dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "system", "content": system_prompt}, *self._openai_messages(messages)],
            "temperature": self.temperature,
        }
        if tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {"name": t["name"], "description": t.get("description", ""), "parameters": t["parameters"]},
                }
                for t in tools
            ]
            if tool_choice:
                body["tool_choice"] = {"type": "function", "function": {"name": tool_choice}}
        async with httpx.AsyncClient(timeout=SETTINGS.llm_timeout_seconds) as client:
            resp = await client.post(
                f"{base_url.rstrip('/')}/chat/completions",
                headers={"Authorization": f"Bearer {api_key}"},
                json=body,
            )
            resp.raise_for_status()
            data = resp.json()
        choices = data.get("choices") or []
        message = (choices[0].get("message") or {}) if choices else {}
        tool_calls: List[ToolCall] = []
        for tc in message.get("tool_calls") or []:
            fn = tc.get("function") or {}
            raw_args = fn.get("arguments") or "{}"
            args = json.loads(raw_args) if isinstance(raw_args, str) else dict(raw_args)
            tool_calls.append(ToolCall(name=str(fn.get("name", "")), arguments=args, call_id=tc.get("id")))
        usage = data.get("usage") or {}
        return LLMResult(
            text=self._extract_chat_completion_text(message),
            provider=provider,
            model=self.model,
            raw=data,
            tool_calls=tool_calls,
            usage={
                "input_tokens": int(usage.get("prompt_tokens", 0) or 0),
                "output_tokens": int(usage.get("completion_tokens", 0) or 0),
            },
        )

    async def _invoke_anthropic(
        self,
        system_prompt: str,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]] | None,
        tool_choice: str | None,
    ) -> LLMResult:
        body: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": SETTINGS.llm_max_tokens,
            "temperature": self.temperature,
            "system": system_prompt,
            "messages": self._anthropic_messages(messages),
        }
        if tools:
            body["tools"] = [
                {"name": t["name"], "description": t.get("description", ""), "input_schema": t["parameters"]} for t in tools
            ]
            if tool_choice:
                body["tool_choice"] = {"type": "tool", "name": tool_choice}
        async with httpx.AsyncClient(timeout=SETTINGS.llm_timeout_seconds) as client:
            resp = await client.post(
                f"{SETTINGS.anthropic_base_url.rstrip('/')}/messages",
                headers={
                    "x-api-key": SETTINGS.anthropic_api_key,
                    "anthropic-version": "2023-06-01",
                    "content-type": "application/json",
                },
                json=body,
            )
            resp.raise_for_status()
            data = resp.json()
        text_parts: List[str] = []
        tool_calls: List[ToolCall] = []
        for block in data.get("content", []):
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text":
                text_parts.append(str(block.get("text", "")))
            elif block.get("type") == "tool_use":
                tool_calls.append(
                    ToolCall(name=str(block.get("name", "")), arguments=dict(block.get("input") or {}), call_id=block.get("id"))
                )
        usage = data.get("usage") or {}
        return LLMResult(
            text="\n".join(t for t in text_parts if t).strip(),
            provider="anthropic",
            model=self.model,
            raw=data,
            tool_calls=tool_calls,
            usage={
                "input_tokens": int(usage.get("input_tokens", 0) or 0),
                "output_tokens": int(usage.get("output_tokens", 0) or 0),
            },
        )

    def _openai_messages(self, messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for m in messages:
            role = m["role"]
            if role == "tool":
                out.append({"role": "tool", "tool_call_id": m.get("tool_call_id") or "", "content": m.get("content", "")})
            elif role == "assistant" and m.get("tool_calls"):
                out.append(
                    {
                        "role": "assistant",
                        "content": m.get("content") or None,
                        "tool_calls": [
                            {
                                "id": tc.call_id or uuid.uuid4().hex,
                                "type": "function",
                                "function": {"name": tc.name, "arguments": json.dumps(tc.arguments, ensure_ascii=True)},
                            }
                            for tc in m["tool_calls"]
                        ],
                    }
                )
            elif role == "user" and m.get("image_urls"):
                parts: List[Dict[str, Any]] = []
                if m.get("content", "").strip():
                    parts.append({"type": "text", "text": m["content"]})
                parts.extend({"type": "image_url", "image_url": {"url": url}} for url in m["image_urls"])
                out.append({"role": "user", "content": parts})
            else:
                out.append({"role": role, "content": m.get("content", "")})
        return out

    def _anthropic_messages(self, messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for m in messages:
            role = m["role"]
            if role == "tool":
                role = "user"
                blocks = [{"type": "tool_result", "tool_use_id": m.get("tool_call_id") or "", "content": m.get("content", "")}]
            elif role == "assistant":
                blocks = [{"type": "text", "text": m["content"]}] if m.get("content") else []
                blocks.extend(
                    {"type": "tool_use", "id": tc.call_id or uuid.uuid4().hex, "name": tc.name, "input": tc.arguments}
                    for tc in m.get("tool_calls") or []
                )
            else:
                blocks = [{"type": "text", "text": m.get("content") or " "}]
                blocks.extend({"type": "image", "source": {"type": "url", "url": url}} for url in m.get("image_urls") or [])
            if not blocks:
                continue
            # The Messages API wants strictly alternating roles, starting with the user.
            if not out and role == "assistant":
                out.append({"role": "user", "content": [{"type": "text", "text": "(conversation started)"}]})
            if out and out[-1]["role"] == role:
                out[-1]["content"].extend(blocks)
            else:
                out.append({"role": role, "content": blocks})
        return out

    def _extract_chat_completion_text(self, message: Dict[str, Any]) -> str:
        content = message.get("content", "") if isinstance(message, dict) else ""
        if content is None:
            return ""
        if isinstance(content, str):
            return content.strip()
        if isinstance(content, list):
            out: List[str] = []
            for part in content:
                if isinstance(part, dict) and "text" in part:
                    out.append(str(part.get("text", "")))
            return "\n".join(t for t in out if t).strip()
        return str(content).strip()
