"""Test suite for streaming generation and context-overflow recovery."""

import asyncio

import pytest

from conftest import MODEL_ID, drain
from ondevice_chat.domain.errors import EngineError
from ondevice_chat.domain.models import Message
from ondevice_chat.services.generation import (
    CoalescedUpdater,
    build_context,
    is_context_overflow,
    render_error,
    select_context_window,
)


def seed(conversation, count):
    """Append count alternating user/assistant turns, oldest first."""
    for i in range(count):
        conversation.append(Message.create(f"turn {i}", is_user=i % 2 == 0))


async def wait_for_text(conversation, message_id, text, turns=50):
    for _ in range(turns):
        if conversation.get(message_id).text == text:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"placeholder never reached {text!r}")


@pytest.mark.asyncio
async def test_send_streams_into_placeholder(make_harness):
    """Test the placeholder is in place before any delta and holds the full reply after."""
    gate = asyncio.Event()
    harness = await make_harness([gate, "Hi", " there"])
    conversation = harness.conversation

    task = asyncio.create_task(harness.generation.send("hello"))
    await drain()

    messages = conversation.messages
    assert [(m.is_user, m.text) for m in messages] == [(False, ""), (True, "hello")]
    assert harness.generation.is_loading

    gate.set()
    assert await task is True
    assert [(m.is_user, m.text) for m in conversation.messages] == [(False, "Hi there"), (True, "hello")]
    assert not harness.generation.is_loading

    await conversation.flush()
    records = await harness.repository.load(MODEL_ID)
    assert [r["text"] for r in records] == ["hello", "Hi there"]


@pytest.mark.asyncio
async def test_send_builds_chronological_context(make_harness):
    """Test prior turns are sent oldest first without the placeholder."""
    harness = await make_harness()
    seed(harness.conversation, 2)

    await harness.generation.send("hello")

    call = harness.generator.calls[0]
    assert call.prompt is None
    assert [(t.role, t.content) for t in call.messages] == [
        ("user", "turn 0"),
        ("assistant", "turn 1"),
        ("user", "hello"),
    ]


@pytest.mark.asyncio
async def test_send_uses_bare_prompt_without_context_history(make_harness):
    harness = await make_harness(use_context_history=False)
    seed(harness.conversation, 2)

    assert await harness.generation.send("  hello  ")

    call = harness.generator.calls[0]
    assert call.messages is None
    assert call.prompt == "hello"


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["", "   ", "\n\t"])
async def test_send_rejects_blank_input(make_harness, text):
    harness = await make_harness()

    assert await harness.generation.send(text) is False
    assert harness.conversation.messages == []
    assert harness.generator.calls == []


@pytest.mark.asyncio
async def test_send_rejects_without_model(make_harness):
    harness = await make_harness(ready=False)

    assert await harness.generation.send("hello") is False
    assert harness.conversation.messages == []


@pytest.mark.asyncio
async def test_send_rejects_while_in_flight(make_harness):
    """Test a second send during a generation is dropped."""
    gate = asyncio.Event()
    harness = await make_harness([gate, "first"])

    task = asyncio.create_task(harness.generation.send("one"))
    await drain()
    assert await harness.generation.send("two") is False
    assert len(harness.conversation.messages) == 2

    gate.set()
    assert await task is True
    assert len(harness.generator.calls) == 1


@pytest.mark.asyncio
async def test_streamed_updates_are_visible_between_deltas(make_harness):
    gate = asyncio.Event()
    harness = await make_harness(["Hi", gate, " there"])

    task = asyncio.create_task(harness.generation.send("hello"))
    await drain()
    placeholder_id = harness.conversation.messages[0].id
    await wait_for_text(harness.conversation, placeholder_id, "Hi")

    gate.set()
    await task
    assert harness.conversation.get(placeholder_id).text == "Hi there"


@pytest.mark.asyncio
async def test_context_overflow_prunes_once_and_retries(make_harness):
    """Test an overflow with ten prior messages keeps three plus the current turn."""
    harness = await make_harness([EngineError("Error: context window exceeded")], ["Recovered"])
    conversation = harness.conversation
    seed(conversation, 10)

    assert await harness.generation.send("hello") is True

    assert len(harness.generator.calls) == 2
    retry_context = harness.generator.calls[1].messages
    assert [t.content for t in retry_context] == ["turn 7", "turn 8", "turn 9", "hello"]

    messages = conversation.messages
    assert messages[0].text == "Recovered"
    included = [m for m in messages[1:] if m.include_in_context]
    assert len(included) == 4
    assert all(m.remain_tokens is not None for m in messages)
    assert messages[0].remain_tokens == len("turn 7turn 8turn 9hello")


@pytest.mark.asyncio
@pytest.mark.parametrize("eligible", [0, 1, 2, 3, 4, 7])
async def test_pruning_keeps_latest_three_plus_current(make_harness, eligible):
    harness = await make_harness([EngineError("Context is full")], ["ok"])
    seed(harness.conversation, eligible)

    await harness.generation.send("hello")

    retry_context = harness.generator.calls[1].messages
    assert len(retry_context) == min(3, eligible) + 1
    assert retry_context[-1].content == "hello"
    excluded = [m for m in harness.conversation.messages if not m.include_in_context]
    assert len(excluded) == eligible - min(3, eligible)


@pytest.mark.asyncio
async def test_second_overflow_is_rendered(make_harness):
    harness = await make_harness(
        [EngineError("context length exceeded")],
        [EngineError("context length exceeded")],
    )
    seed(harness.conversation, 5)

    assert await harness.generation.send("hello") is False

    assert len(harness.generator.calls) == 2
    assert harness.conversation.messages[0].text == "Error: context length exceeded"
    assert not harness.generation.is_loading


@pytest.mark.asyncio
async def test_overflow_without_context_history_is_not_retried(make_harness):
    harness = await make_harness([EngineError("context window exceeded")], use_context_history=False)

    assert await harness.generation.send("hello") is False

    assert len(harness.generator.calls) == 1
    assert harness.conversation.messages[0].text == "Error: context window exceeded"


@pytest.mark.asyncio
async def test_other_failure_renders_partial_reply_as_error(make_harness):
    harness = await make_harness(["partial", RuntimeError("engine crashed")])

    assert await harness.generation.send("hello") is False

    assert len(harness.generator.calls) == 1
    assert harness.conversation.messages[0].text == "Error: engine crashed"
    assert not harness.generation.is_loading


@pytest.mark.asyncio
async def test_error_without_message_renders_class_name(make_harness):
    harness = await make_harness([RuntimeError()])

    await harness.generation.send("hello")

    assert harness.conversation.messages[0].text == "Error: RuntimeError"


@pytest.mark.asyncio
async def test_teardown_stops_updates(make_harness):
    """Test nothing is applied once the session token is cancelled."""
    gate = asyncio.Event()
    harness = await make_harness(["Hi", gate, " there"])

    task = asyncio.create_task(harness.generation.send("hello"))
    await drain()
    placeholder_id = harness.conversation.messages[0].id
    await wait_for_text(harness.conversation, placeholder_id, "Hi")

    harness.token.cancel()
    gate.set()

    assert await task is False
    assert harness.conversation.get(placeholder_id).text == "Hi"


@pytest.mark.asyncio
async def test_abort_stops_turn_and_clears_loading(make_harness):
    gate = asyncio.Event()
    harness = await make_harness(["Hi", gate, " there"])

    task = asyncio.create_task(harness.generation.send("hello"))
    await drain()
    placeholder_id = harness.conversation.messages[0].id
    await wait_for_text(harness.conversation, placeholder_id, "Hi")

    harness.generation.abort()
    gate.set()

    assert await task is False
    assert harness.conversation.get(placeholder_id).text == "Hi"
    assert not harness.generation.is_loading


@pytest.mark.asyncio
async def test_abort_skips_overflow_retry(make_harness):
    gate = asyncio.Event()
    harness = await make_harness([gate, EngineError("context window exceeded")])
    seed(harness.conversation, 5)

    task = asyncio.create_task(harness.generation.send("hello"))
    await drain()
    harness.generation.abort()
    gate.set()

    assert await task is False
    assert len(harness.generator.calls) == 1
    assert all(m.include_in_context for m in harness.conversation.messages)


@pytest.mark.asyncio
async def test_model_removed_mid_stream_is_a_failure(make_harness):
    gate = asyncio.Event()
    harness = await make_harness(["Hi", gate, " there"])

    task = asyncio.create_task(harness.generation.send("hello"))
    await drain()
    placeholder_id = harness.conversation.messages[0].id
    await wait_for_text(harness.conversation, placeholder_id, "Hi")

    await harness.models.remove_model()
    gate.set()

    assert await task is False
    assert harness.conversation.get(placeholder_id).text == "Error: Model was unloaded during generation"


@pytest.mark.asyncio
async def test_scroll_hint_fires_on_send(make_harness):
    hints = []
    harness = await make_harness(on_scroll_hint=lambda: hints.append(True))

    await harness.generation.send("hello")

    assert hints == [True]


@pytest.mark.asyncio
async def test_coalesced_updater_merges_pending_values():
    applied = []
    updater = CoalescedUpdater(applied.append)

    updater.schedule("H")
    updater.schedule("Hi")
    updater.schedule("Hi there")
    assert updater.scheduled
    assert applied == []

    await asyncio.sleep(0)
    assert applied == ["Hi there"]
    assert not updater.scheduled


@pytest.mark.asyncio
async def test_coalesced_updater_cancel_drops_pending():
    applied = []
    updater = CoalescedUpdater(applied.append)

    updater.schedule("Hi")
    updater.cancel()
    await drain()

    assert applied == []


@pytest.mark.parametrize(
    "message, expected",
    [
        ("Error: context window exceeded", True),
        ("Context is full", True),
        ("input length exceeds the context length", True),
        ("connection refused", False),
        ("", False),
    ],
)
def test_is_context_overflow(message, expected):
    assert is_context_overflow(EngineError(message)) is expected


def test_render_error():
    assert render_error(ValueError("bad input")) == "Error: bad input"
    assert render_error(TimeoutError()) == "Error: TimeoutError"


def test_build_context_skips_empty_and_excluded():
    placeholder = Message.create("", is_user=False)
    excluded = Message(text="old", is_user=True, include_in_context=False)
    messages = [
        placeholder,
        Message.create("hello", is_user=True),
        Message.create("", is_user=False),
        Message.create("earlier", is_user=False),
        excluded,
    ]

    turns = build_context(messages, placeholder.id)

    assert [(t.role, t.content) for t in turns] == [("assistant", "earlier"), ("user", "hello")]


def test_select_context_window_ignores_empty_messages():
    user = Message.create("hello", is_user=True)
    placeholder = Message.create("", is_user=False)
    older = [Message.create(f"m{i}", is_user=False) for i in range(4)]
    messages = [placeholder, user, Message.create("", is_user=False)] + older

    keep = select_context_window(messages, user.id, placeholder.id, keep_latest=3)

    # messages are newest-first, so the latest three are the first three non-empty
    assert keep == {user.id, older[0].id, older[1].id, older[2].id}
