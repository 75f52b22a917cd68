"""
Tests for completion streaming, segmenting and transfer classification.
"""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from src.intake.config import get_config
from src.intake.events import CallerTurn, ReplyKind
from src.intake.llm import (
    FALLBACK_REPLY,
    TRANSFER_MARKER,
    CompletionService,
    ConversationHistory,
    SegmentSplitter,
    classify_reply,
    get_greeting,
    get_system_prompt,
)
from src.intake.tools import TRANSFER_TO_ATTORNEY, TRANSFER_TO_MAIN_LINE, TRANSFER_TOOLS


class FakeStream:
    def __init__(self, chunks):
        self._chunks = chunks

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for chunk in self._chunks:
            yield chunk


def text_chunk(content):
    delta = SimpleNamespace(content=content, tool_calls=None)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta)])


def tool_chunk(index, *, id=None, name=None, arguments=None):
    call = SimpleNamespace(index=index, id=id, function=SimpleNamespace(name=name, arguments=arguments))
    delta = SimpleNamespace(content=None, tool_calls=[call])
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta)])


def fake_client(*streams):
    create = AsyncMock(side_effect=[FakeStream(chunks) for chunks in streams])
    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


async def collect(service, text="hello", interaction_count=0):
    turn = CallerTurn(text=text, interaction_count=interaction_count)
    return [reply async for reply in service.complete(turn)]


class TestSegmentSplitter:

    def test_splits_on_sentence_end(self):
        splitter = SegmentSplitter()

        assert splitter.feed("Hello there. How are") == ["Hello there."]
        assert splitter.feed(" you? Good") == ["How are you?"]
        assert splitter.flush() == "Good"

    def test_splits_on_bullet(self):
        splitter = SegmentSplitter()

        assert splitter.feed("I can help • with that.") == ["I can help"]
        assert splitter.flush() == "with that."

    def test_sentence_end_without_whitespace_waits(self):
        splitter = SegmentSplitter()

        assert splitter.feed("Version 2.5 is out.") == []
        assert splitter.flush() == "Version 2.5 is out."

    def test_flush_empty(self):
        assert SegmentSplitter().flush() is None


class TestClassifyReply:

    def test_ordinary(self):
        assert classify_reply(" What is your name? ") == ("What is your name?", ReplyKind.ORDINARY, None)

    def test_marker_is_stripped(self):
        text, kind, trigger = classify_reply("Please hold. [transfer]")

        assert text == "Please hold."
        assert kind == ReplyKind.TRANSFER
        assert trigger == TRANSFER_MARKER


class TestPrompts:

    def test_greeting_is_a_question(self):
        greeting = get_greeting(get_config())

        assert greeting.startswith("Thank you for calling")
        assert greeting.endswith("?")

    def test_system_prompt_mentions_tools_and_call(self):
        prompt = get_system_prompt(get_config(), "CA1")

        assert "CA1" in prompt
        assert TRANSFER_TO_MAIN_LINE in prompt
        assert TRANSFER_TO_ATTORNEY in prompt


class TestConversationHistory:

    def test_trim_keeps_window_starting_with_user(self):
        history = ConversationHistory(max_turns=2)
        history.add_user_message("one")
        history.add_assistant_message("a")
        history.add_user_message("two")
        history.add_tool_exchange(None, [{"id": "c1", "name": "saveIntakeData", "arguments": ""}], [("c1", "{}")])
        history.add_user_message("three")

        messages = history.get_messages()

        assert len(messages) <= 4
        assert messages[0]["role"] == "user"

    def test_tool_exchange_shape(self):
        history = ConversationHistory()
        history.add_tool_exchange("", [{"id": "c1", "name": "saveIntakeData", "arguments": ""}], [("c1", '{"ok": 1}')])

        assistant, tool = history.get_messages()

        assert assistant["content"] is None
        assert assistant["tool_calls"][0]["function"] == {"name": "saveIntakeData", "arguments": "{}"}
        assert tool == {"role": "tool", "content": '{"ok": 1}', "tool_call_id": "c1"}


class TestComplete:

    @pytest.mark.asyncio
    async def test_ordinary_reply_is_segmented_with_session_indices(self):
        client = fake_client(
            [text_chunk("Hello. "), text_chunk("How can I help?")],
            [text_chunk("Got it. "), text_chunk("Anything else?")],
        )
        service = CompletionService(config=get_config(), client=client)

        first = await collect(service, "hi", 0)
        second = await collect(service, "my name is Jane", 1)

        assert [r.text for r in first] == ["Hello.", "How can I help?"]
        assert [r.index for r in first + second] == [0, 1, 2, 3]
        assert all(r.kind == ReplyKind.ORDINARY for r in first + second)
        assert second[0].interaction_count == 1
        assert service.next_index == 4

    @pytest.mark.asyncio
    async def test_history_records_turn_and_reply(self):
        service = CompletionService(config=get_config(), client=fake_client([text_chunk("Sure thing.")]))

        await collect(service, "hi")

        assert service.history.get_messages() == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "Sure thing."},
        ]

    @pytest.mark.asyncio
    async def test_marker_classifies_transfer(self):
        client = fake_client([text_chunk("Let me get someone. "), text_chunk(TRANSFER_MARKER)])
        service = CompletionService(config=get_config(), client=client)

        replies = await collect(service)

        assert [r.kind for r in replies] == [ReplyKind.ORDINARY, ReplyKind.TRANSFER]
        assert replies[-1].text == TRANSFER_TOOLS[TRANSFER_TO_MAIN_LINE]
        assert replies[-1].trigger == TRANSFER_MARKER

    @pytest.mark.asyncio
    async def test_transfer_tool_ends_completion(self):
        client = fake_client([
            tool_chunk(0, id="call_1", name=TRANSFER_TO_ATTORNEY, arguments='{"callSid":'),
            tool_chunk(0, arguments=' "CA1"}'),
        ])
        service = CompletionService(config=get_config(), client=client)

        replies = await collect(service)

        assert len(replies) == 1
        assert replies[0].is_transfer
        assert replies[0].trigger == TRANSFER_TO_ATTORNEY
        assert replies[0].text == TRANSFER_TOOLS[TRANSFER_TO_ATTORNEY]
        messages = service.history.get_messages()
        assert messages[1]["tool_calls"][0]["function"]["arguments"] == '{"callSid": "CA1"}'
        assert json.loads(messages[2]["content"])["status"] == "transfer_pending"
        assert client.chat.completions.create.await_count == 1

    @pytest.mark.asyncio
    async def test_save_intake_continues_with_second_round(self):
        client = fake_client(
            [tool_chunk(0, id="call_1", name="saveIntakeData", arguments='{"name": "Jane Doe"}')],
            [text_chunk("Thanks. Your case is saved.")],
        )
        service = CompletionService(config=get_config(), client=client)

        replies = await collect(service)

        assert [r.text for r in replies] == ["Thanks.", "Your case is saved."]
        assert service.tools.record.name == "Jane Doe"
        second_messages = client.chat.completions.create.call_args_list[1].kwargs["messages"]
        assert second_messages[-1]["role"] == "tool"
        assert json.loads(second_messages[-1]["content"])["caseNumber"].startswith("ILH-")

    @pytest.mark.asyncio
    async def test_provider_error_yields_fallback(self):
        create = AsyncMock(side_effect=RuntimeError("rate limited"))
        client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
        service = CompletionService(config=get_config(), client=client)

        replies = await collect(service)

        assert [r.text for r in replies] == [FALLBACK_REPLY]
        assert replies[0].kind == ReplyKind.ORDINARY

    @pytest.mark.asyncio
    async def test_set_call_sid_reaches_tools(self):
        service = CompletionService(config=get_config(), client=fake_client())

        service.set_call_sid("CA9")

        assert service.tools.call_sid == "CA9"
