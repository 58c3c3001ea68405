from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from agents.llm_runtime import LLMResult, LLMRuntime
from agents.orchestrator import ToolOrchestrator
from models.schemas import AgentRecord, ToolResult

logger = logging.getLogger(__name__)

PLAIN_TEXT_PROMPT = "Reply to the user in plain text only. Do not use any tools."
RECORD_SNIPPET_LENGTH = 120


@dataclass
class ToolLoopResult:
    text: str
    provider: str = ""
    model: str = ""
    usage: Dict[str, int] = field(default_factory=lambda: {"input_tokens": 0, "output_tokens": 0})
    rounds: int = 0


def format_tool_result(result: ToolResult) -> str:
    if not result.success:
        return json.dumps({"success": False, "error": result.error}, ensure_ascii=True)
    if result.data is None:
        return "Success"
    if isinstance(result.data, str):
        return result.data
    return json.dumps(result.data, ensure_ascii=True, default=str)


def format_records_for_prompt(records: Sequence[AgentRecord], snippet_length: int = RECORD_SNIPPET_LENGTH) -> str:
    if not records:
        return "No existing records yet."
    blocks = []
    for r in records:
        snippet = r.content if len(r.content) <= snippet_length else r.content[:snippet_length] + "…"
        blocks.append(f"- recordId: {r.record_id}\n  title: {r.title}\n  content: {snippet}")
    return "\n\n".join(blocks)


def records_prompt_block(records: Sequence[AgentRecord]) -> str:
    return (
        "--- Current Auto Agent Brain records (check these before adding anything) ---\n"
        f"{format_records_for_prompt(records)}\n--- End of existing records ---"
    )


def _add_usage(total: Dict[str, int], result: LLMResult) -> None:
    for key in ("input_tokens", "output_tokens"):
        total[key] = total.get(key, 0) + int(result.usage.get(key, 0) or 0)


async def run_tool_loop(
    llm: LLMRuntime,
    system_prompt: str,
    messages: List[Dict[str, Any]],
    orchestrator: ToolOrchestrator,
    tools: List[Dict[str, Any]],
    max_rounds: int,
    plain_text_prompt: str = PLAIN_TEXT_PROMPT,
    require_text: bool = True,
) -> ToolLoopResult:
    """Let the model call tools for up to ``max_rounds`` rounds, then force a text reply.

    Raises :class:`LLMError` if the model cannot be reached at all.
    """
    convo = list(messages)
    outcome = ToolLoopResult(text="")
    response = await llm.invoke(system_prompt, convo, tools=tools or None)
    _add_usage(outcome.usage, response)

    for _ in range(max_rounds):
        if not response.tool_calls:
            break
        outcome.rounds += 1
        convo.append({"role": "assistant", "content": response.text, "tool_calls": list(response.tool_calls)})
        for call in response.tool_calls:
            result = await orchestrator.execute_tool_call(call)
            convo.append({"role": "tool", "tool_call_id": call.call_id or "", "content": format_tool_result(result)})
        response = await llm.invoke(system_prompt, convo, tools=tools or None)
        _add_usage(outcome.usage, response)

    text = (response.text or "").strip()
    if not text and require_text:
        logger.info("tool_loop_plain_text_retry", extra={"tenant_id": orchestrator.tenant_id, "rounds": outcome.rounds})
        convo.append({"role": "user", "content": plain_text_prompt})
        response = await llm.invoke(system_prompt, convo)
        _add_usage(outcome.usage, response)
        text = (response.text or "").strip()

    outcome.text = text
    outcome.provider = response.provider
    outcome.model = response.model
    return outcome
