from __future__ import annotations

import asyncio
import logging

import pytest

from agents.escalation import HANDOFF_TEXT, REPEAT_HANDOFF_ACK
from agents.handoff import BackgroundTaskRunner
from models.errors import ConversationNotFoundError, InvalidTransitionError
from models.schemas import ChannelType, ConversationStatus, MessageRole, ToolCall
from tools.notification_tools import NotificationError, NotificationTools

from conftest import ScriptedLLM, text_reply, tool_reply


class FailingNotifications(NotificationTools):
    def __init__(self) -> None:
        super().__init__(account_sid="", auth_token="", from_number="")

    async def send_whatsapp(self, to, body, from_number=None):
        raise NotificationError("Twilio send failed (500): upstream")


def test_open_conversation_reserves_handoff_without_calling_the_model(platform_factory):
    async def _run():
        llm = ScriptedLLM()
        platform = platform_factory(llm=llm)
        conversation = await platform.conversations.create_conversation("t1")
        turn = await platform.state_machine.handle_inbound("t1", conversation.conversation_id, "I want to talk to a human please")
        assert turn.assistant_content == HANDOFF_TEXT
        assert turn.request_handoff
        assert turn.status == ConversationStatus.HANDOFF_REQUESTED
        assert llm.calls == []

        again = await platform.state_machine.handle_inbound("t1", conversation.conversation_id, "let me speak to a person")
        assert again.assistant_content == REPEAT_HANDOFF_ACK
        assert again.status == ConversationStatus.HANDOFF_REQUESTED
        assert again.request_handoff is False
        messages = await platform.conversations.list_messages("t1", conversation.conversation_id)
        assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT] * 2

    asyncio.run(_run())


def test_agent_keeps_answering_while_waiting_for_a_human(platform_factory):
    async def _run():
        llm = ScriptedLLM(replies=[text_reply("Our clinic opens at 8am.")])
        platform = platform_factory(llm=llm)
        conversation = await platform.conversations.create_conversation("t1")
        await platform.conversations.set_status("t1", conversation.conversation_id, ConversationStatus.HANDOFF_REQUESTED)
        turn = await platform.state_machine.handle_inbound("t1", conversation.conversation_id, "When do you open?")
        assert turn.assistant_content == "Our clinic opens at 8am."
        assert turn.status == ConversationStatus.HANDOFF_REQUESTED

    asyncio.run(_run())


def test_model_reply_with_marker_requests_handoff(platform_factory):
    async def _run():
        llm = ScriptedLLM(replies=[text_reply("I can't help with that billing dispute.\n[HANDOFF]")])
        platform = platform_factory(llm=llm)
        conversation = await platform.conversations.create_conversation("t1")
        turn = await platform.state_machine.handle_inbound("t1", conversation.conversation_id, "Why was I charged twice?")
        assert turn.assistant_content == "I can't help with that billing dispute."
        assert turn.request_handoff
        assert turn.status == ConversationStatus.HANDOFF_REQUESTED

    asyncio.run(_run())


def test_joined_conversation_stores_user_messages_silently(platform_factory):
    async def _run():
        llm = ScriptedLLM()
        platform = platform_factory(llm=llm)
        conversation = await platform.conversations.create_conversation("t1")
        joined = await platform.state_machine.join("t1", conversation.conversation_id, "op-7")
        assert joined.joined_by == "op-7"
        turn = await platform.state_machine.handle_inbound("t1", conversation.conversation_id, "hello?")
        assert turn.assistant_message_id is None
        assert turn.status == ConversationStatus.HUMAN_JOINED
        assert turn.request_handoff is False
        assert llm.calls == []
        messages = await platform.conversations.list_messages("t1", conversation.conversation_id)
        assert [m.content for m in messages] == ["hello?"]

    asyncio.run(_run())


def test_return_to_agent_requires_a_handoff_state(platform_factory):
    async def _run():
        platform = platform_factory()
        conversation = await platform.conversations.create_conversation("t1")
        with pytest.raises(InvalidTransitionError):
            await platform.state_machine.return_to_agent("t1", conversation.conversation_id)
        with pytest.raises(ConversationNotFoundError):
            await platform.state_machine.return_to_agent("t1", "missing")

    asyncio.run(_run())


def test_return_to_agent_reopens_and_learns_in_background(platform_factory):
    async def _run():
        llm = ScriptedLLM(
            replies=[
                tool_reply(
                    ToolCall(
                        name="record_learned_knowledge",
                        arguments={"title": "Downtown branch phone", "content": "Downtown branch: 555-0142"},
                        call_id="c1",
                    )
                ),
                text_reply(""),
            ]
        )
        platform = platform_factory(llm=llm)
        await platform.tenants.save_config("t1", {"rag_enabled": True})
        conversation = await platform.conversations.create_conversation("t1", user_id="u1")
        cid = conversation.conversation_id
        await platform.state_machine.join("t1", cid, "op-1")
        await platform.conversations.append_message("t1", cid, MessageRole.USER, "What's the downtown number?")
        await platform.state_machine.post_human_message("t1", cid, "The downtown branch number is 555-0142.")

        reopened = await platform.state_machine.return_to_agent("t1", cid)
        assert reopened.status == ConversationStatus.OPEN
        assert reopened.joined_by is None
        await platform.background.drain()

        records = await platform.tools.brain.list_records("t1")
        assert [r.title for r in records] == ["Downtown branch phone"]
        assert platform.background.pending == 0
        history = llm.calls[0]["messages"]
        assert any("[Care team said to the user]" in str(m.get("content")) for m in history)

    asyncio.run(_run())


def test_background_failures_are_logged_not_raised(caplog):
    async def _boom():
        raise RuntimeError("learning exploded")

    async def _run():
        runner = BackgroundTaskRunner()
        runner.schedule(_boom(), name="learning:t1:c1")
        await runner.drain()
        return runner.pending

    with caplog.at_level(logging.ERROR, logger="agents.handoff"):
        assert asyncio.run(_run()) == 0
    assert any(r.getMessage() == "background_task_failed" for r in caplog.records)


def test_human_message_on_widget_is_only_stored(platform_factory):
    async def _run():
        notifications = NotificationTools(account_sid="", auth_token="", from_number="")
        platform = platform_factory(notifications=notifications)
        conversation = await platform.conversations.create_conversation("t1")
        message = await platform.state_machine.post_human_message("t1", conversation.conversation_id, "Hi, I'm Dana.")
        assert message.role == MessageRole.HUMAN_AGENT
        assert notifications.sent == []

    asyncio.run(_run())


def test_human_message_on_whatsapp_is_sent_then_stored(platform_factory):
    async def _run():
        notifications = NotificationTools(account_sid="", auth_token="", from_number="")
        platform = platform_factory(notifications=notifications)
        conversation = await platform.conversations.create_conversation(
            "t1", external_user_id="+15551234567", channel=ChannelType.WHATSAPP
        )
        await platform.state_machine.post_human_message("t1", conversation.conversation_id, "We moved you to 3pm.")
        assert notifications.sent[0]["to"] == "+15551234567"
        assert notifications.sent[0]["body"] == "We moved you to 3pm."

    asyncio.run(_run())


def test_failed_whatsapp_send_stores_nothing(platform_factory):
    async def _run():
        platform = platform_factory(notifications=FailingNotifications())
        conversation = await platform.conversations.create_conversation(
            "t1", external_user_id="+15551234567", channel=ChannelType.WHATSAPP
        )
        with pytest.raises(NotificationError):
            await platform.state_machine.post_human_message("t1", conversation.conversation_id, "Hello")
        assert await platform.conversations.list_messages("t1", conversation.conversation_id) == []

        missing_number = await platform.conversations.create_conversation("t1", channel=ChannelType.WHATSAPP)
        with pytest.raises(NotificationError):
            await platform.state_machine.post_human_message("t1", missing_number.conversation_id, "Hello")

    asyncio.run(_run())


def test_whatsapp_inbound_reuses_the_senders_conversation(platform_factory):
    async def _run():
        notifications = NotificationTools(account_sid="", auth_token="", from_number="")
        llm = ScriptedLLM(replies=[text_reply("Hi! How can I help?"), text_reply("We are open until 6pm.")])
        platform = platform_factory(llm=llm, notifications=notifications)
        first = await platform.state_machine.handle_whatsapp_inbound("t1", "whatsapp:+15550001111", "hello")
        second = await platform.state_machine.handle_whatsapp_inbound("t1", "whatsapp:+15550001111", "closing time?")
        assert first.conversation_id == second.conversation_id
        conversation = await platform.conversations.get_conversation("t1", first.conversation_id)
        assert conversation.channel == ChannelType.WHATSAPP
        assert conversation.external_user_id == "+15550001111"
        assert [s["body"] for s in notifications.sent] == ["Hi! How can I help?", "We are open until 6pm."]

    asyncio.run(_run())


def test_whatsapp_reply_failure_does_not_lose_the_turn(platform_factory):
    async def _run():
        llm = ScriptedLLM(replies=[text_reply("Hello!")])
        platform = platform_factory(llm=llm, notifications=FailingNotifications())
        turn = await platform.state_machine.handle_whatsapp_inbound("t1", "+15550002222", "hi")
        assert turn.assistant_content == "Hello!"
        messages = await platform.conversations.list_messages("t1", turn.conversation_id)
        assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT]

    asyncio.run(_run())
