from __future__ import annotations

import asyncio

from agents.escalation import HANDOFF_TEXT
from models.schemas import ConversationStatus, MessageRole, ToolCall

from conftest import ScriptedLLM, text_reply, tool_reply


def test_care_team_answer_is_learned_and_reused(platform_factory):
    """A human answers once; after return the agent can answer the same question itself."""

    async def _run():
        llm = ScriptedLLM(
            replies=[
                # learning pass after the human hands back
                tool_reply(
                    ToolCall(
                        name="record_learned_knowledge",
                        arguments={"title": "Lab results", "content": "Lab results are posted to the portal within 48 hours"},
                        call_id="k1",
                    )
                ),
                text_reply(""),
                # next user turn
                text_reply("Lab results show up in the portal within 48 hours."),
            ]
        )
        platform = platform_factory(llm=llm)
        await platform.tenants.save_config("clinic-1", {"rag_enabled": True})
        conversation = await platform.conversations.create_conversation("clinic-1", user_id="u7")
        cid = conversation.conversation_id
        machine = platform.state_machine

        first = await machine.handle_inbound("clinic-1", cid, "I'd like to talk to a person about my lab results")
        assert first.assistant_content == HANDOFF_TEXT
        assert first.status == ConversationStatus.HANDOFF_REQUESTED

        await machine.join("clinic-1", cid, "nurse-2")
        waiting = await machine.handle_inbound("clinic-1", cid, "When will my lab results be ready?")
        assert waiting.assistant_content is None
        await machine.post_human_message("clinic-1", cid, "Lab results are posted to the portal within 48 hours.")

        await machine.return_to_agent("clinic-1", cid)
        await platform.background.drain()
        assert [r.title for r in await platform.tools.brain.list_records("clinic-1")] == ["Lab results"]

        later = await machine.handle_inbound("clinic-1", cid, "How long do lab results take?")
        assert later.assistant_content == "Lab results show up in the portal within 48 hours."
        assert "portal within 48 hours" in llm.calls[-1]["system_prompt"]

        roles = [m.role for m in await platform.conversations.list_messages("clinic-1", cid)]
        assert roles == [
            MessageRole.USER,
            MessageRole.ASSISTANT,
            MessageRole.USER,
            MessageRole.HUMAN_AGENT,
            MessageRole.USER,
            MessageRole.ASSISTANT,
        ]

    asyncio.run(_run())


def test_concurrent_handoff_requests_reserve_once(platform_factory):
    async def _run():
        platform = platform_factory()
        conversation = await platform.conversations.create_conversation("clinic-1")
        cid = conversation.conversation_id
        turns = await asyncio.gather(
            *[platform.state_machine.handle_inbound("clinic-1", cid, "I want to talk to a human") for _ in range(3)]
        )
        assert sum(1 for t in turns if t.assistant_content == HANDOFF_TEXT) == 1
        current = await platform.conversations.get_conversation("clinic-1", cid)
        assert current.status == ConversationStatus.HANDOFF_REQUESTED

    asyncio.run(_run())
