"""
Unit tests for ConversationEngine

Runs the engine against the via-proxy transport with httpx.MockTransport
standing in for the chat proxy.
"""
import asyncio
import json

import httpx
import pytest
from unittest.mock import Mock

from core.models import Character, ConversationSettings, Message, RateLimitInfo
from services.conversation_service import SEND_FAILURE_REPLY, ConversationEngine
from services.conversation_store import ConversationStore

PROXY_URL = "http://proxy.test"


def rate_limit_headers(limit, remaining):
    return {"X-RateLimit-Limit": str(limit), "X-RateLimit-Remaining": str(remaining)}


def reply(content, headers=None):
    return httpx.Response(200, json={"message": content}, headers=headers or {})


def sse_reply(deltas):
    lines = [f"data: {json.dumps({'content': delta})}\n\n" for delta in deltas]
    body = ("".join(lines) + "data: [DONE]\n\n").encode()
    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body)


def sent_contents(request):
    return [m["content"] for m in json.loads(request.content)["messages"]]


@pytest.fixture
def character():
    return Character(
        id="aria",
        name="Aria",
        personality="curious",
        first_mes="Hello, traveler.",
        alternate_greetings=["Welcome back.", "Oh, it's you."],
    )


@pytest.fixture
def store():
    return ConversationStore()


@pytest.fixture
def conversation(store, character):
    return store.create(character)


@pytest.fixture
def make_engine(store, character, conversation):
    def factory(handler, requests=None, **settings):
        def recording_handler(request):
            if requests is not None:
                requests.append(request)
            return handler(request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(recording_handler))
        return ConversationEngine(
            store,
            character,
            conversation.id,
            settings=ConversationSettings(**settings),
            notifier=Mock(),
            http_client=client,
            proxy_url=PROXY_URL,
        )

    return factory


def seed(store, conversation, *messages):
    greeting = store.get("aria", conversation.id).messages[0]
    store.update("aria", conversation.id, messages=[greeting, *messages])


class TestSend:
    """Test send"""

    @pytest.mark.asyncio
    async def test_send_batched(self, make_engine):
        requests = []
        seen = {}

        def handler(request):
            seen["loading"] = engine.is_loading
            return reply("Hi Sam", rate_limit_headers(25, 24))

        engine = make_engine(handler, requests, streaming=False)

        message = await engine.send("Hello")

        assert seen["loading"] is True
        assert [m.role for m in engine.messages] == ["assistant", "user", "assistant"]
        assert engine.messages[-1].content == "Hi Sam"
        assert engine.messages[-1].id == message.id
        assert sent_contents(requests[0]) == ["Hello, traveler.", "Hello"]
        assert engine.rate_limit == RateLimitInfo(limit=25, remaining=24)
        assert engine.is_loading is False
        assert engine.streaming_message is None
        assert engine.view.should_auto_scroll is True
        engine.notifier.assert_not_called()

    @pytest.mark.asyncio
    async def test_send_with_image(self, make_engine):
        requests = []
        engine = make_engine(lambda r: reply("Nice picture"), requests, streaming=False)

        await engine.send("Look", image="data:image/png;base64,AAAA")

        assert engine.messages[1].image == "data:image/png;base64,AAAA"
        sent = json.loads(requests[0].content)["messages"][1]
        assert sent["image"] == "data:image/png;base64,AAAA"

    @pytest.mark.parametrize("streaming", [True, False])
    @pytest.mark.asyncio
    async def test_streaming_and_batched_commit_same_content(self, make_engine, streaming):
        def handler(request):
            if json.loads(request.content)["settings"]["streaming"]:
                return sse_reply(["Hello", " ", "world"])
            return reply("Hello world")

        engine = make_engine(handler, streaming=streaming)

        message = await engine.send("Hi")

        assert message.content == "Hello world"
        assert engine.messages[-1].content == "Hello world"
        assert engine.streaming_message is None

    @pytest.mark.asyncio
    async def test_send_failure_commits_apology(self, make_engine):
        def handler(request):
            return httpx.Response(
                429,
                json={"error": {"message": "Daily limit reached for this model.", "type": "rate_limit_exceeded", "code": 429}},
                headers=rate_limit_headers(25, 0),
            )

        engine = make_engine(handler, streaming=False)

        message = await engine.send("Hello")

        assert message.content == SEND_FAILURE_REPLY
        assert [m.role for m in engine.messages] == ["assistant", "user", "assistant"]
        assert engine.rate_limit == RateLimitInfo(limit=25, remaining=0)
        engine.notifier.assert_called_once_with(
            "error", "Daily limit reached for this model. (remaining 0/25)"
        )
        assert engine.is_loading is False

    @pytest.mark.asyncio
    async def test_send_network_failure(self, make_engine):
        def handler(request):
            raise httpx.ConnectError("Connection refused", request=request)

        engine = make_engine(handler, streaming=True)

        message = await engine.send("Hello")

        assert message.content == SEND_FAILURE_REPLY
        engine.notifier.assert_called_once_with("error", "Connection refused")

    @pytest.mark.asyncio
    async def test_send_resets_pagination(self, make_engine):
        engine = make_engine(lambda r: reply("ok"), streaming=False)
        engine.view.visible_message_count = 30
        engine.view.show_load_more = True

        await engine.send("Hello")

        assert engine.view.visible_message_count == 8
        assert engine.view.show_load_more is False


class TestRegenerate:
    """Test regenerate"""

    @pytest.mark.asyncio
    async def test_first_regenerate_seeds_variants(self, make_engine, store, conversation):
        seed(store, conversation, Message(id="u1", role="user", content="Hi"),
             Message(id="a1", role="assistant", content="First answer"))
        requests = []
        engine = make_engine(lambda r: reply("Second answer"), requests, streaming=False)

        message = await engine.regenerate("a1")

        assert message.variants == ["First answer", "Second answer"]
        assert message.current_variant == 1
        assert message.content == message.variants[1]
        assert engine.messages[-1] == message
        assert sent_contents(requests[0]) == ["Hello, traveler.", "Hi"]
        assert engine.view.regenerating_message_id is None

    @pytest.mark.asyncio
    async def test_regenerate_appends_variant(self, make_engine, store, conversation):
        seed(store, conversation, Message(id="u1", role="user", content="Hi"),
             Message(id="a1", role="assistant", content="Two", variants=["One", "Two"], current_variant=1))
        engine = make_engine(lambda r: reply("Three"), streaming=False)

        message = await engine.regenerate("a1")

        assert message.variants == ["One", "Two", "Three"]
        assert message.current_variant == 2

    @pytest.mark.asyncio
    async def test_regenerate_keeps_later_messages(self, make_engine, store, conversation):
        seed(store, conversation,
             Message(id="u1", role="user", content="Hi"),
             Message(id="a1", role="assistant", content="First"),
             Message(id="u2", role="user", content="And then?"))
        engine = make_engine(lambda r: reply("Again"), streaming=False)

        await engine.regenerate("a1")

        assert [m.id for m in engine.messages][1:] == ["u1", "a1", "u2"]

    @pytest.mark.asyncio
    async def test_regenerate_failure_leaves_message(self, make_engine, store, conversation):
        seed(store, conversation, Message(id="u1", role="user", content="Hi"),
             Message(id="a1", role="assistant", content="First answer"))
        engine = make_engine(lambda r: httpx.Response(500, json={"error": {"message": "Upstream down", "type": "server_error"}}), streaming=True)
        before = engine.messages

        assert await engine.regenerate("a1") is None

        assert engine.messages == before
        engine.notifier.assert_called_once_with("error", "Upstream down")
        assert engine.is_loading is False

    @pytest.mark.asyncio
    async def test_regenerate_ignores_user_and_unknown(self, make_engine, store, conversation):
        seed(store, conversation, Message(id="u1", role="user", content="Hi"))
        requests = []
        engine = make_engine(lambda r: reply("x"), requests, streaming=False)

        assert await engine.regenerate("u1") is None
        assert await engine.regenerate("missing") is None
        assert requests == []


class TestRetryFromUserMessage:
    """Test retry_from_user_message"""

    @pytest.mark.asyncio
    async def test_retry_discards_later_messages(self, make_engine, store, conversation):
        seed(store, conversation,
             Message(id="u1", role="user", content="Hi"),
             Message(id="a1", role="assistant", content="Old answer"),
             Message(id="u2", role="user", content="More"),
             Message(id="a2", role="assistant", content="More answer"))
        requests = []
        engine = make_engine(lambda r: reply("Fresh answer"), requests, streaming=False)

        message = await engine.retry_from_user_message("u1")

        assert [m.content for m in engine.messages] == ["Hello, traveler.", "Hi", "Fresh answer"]
        assert engine.messages[-1].id == message.id
        assert sent_contents(requests[0]) == ["Hello, traveler.", "Hi"]

    @pytest.mark.asyncio
    async def test_retry_requires_user_message(self, make_engine, store, conversation):
        seed(store, conversation, Message(id="a1", role="assistant", content="Hi"))
        requests = []
        engine = make_engine(lambda r: reply("x"), requests, streaming=False)

        assert await engine.retry_from_user_message("a1") is None
        assert requests == []

    @pytest.mark.asyncio
    async def test_retry_failure_leaves_history(self, make_engine, store, conversation):
        seed(store, conversation,
             Message(id="u1", role="user", content="Hi"),
             Message(id="a1", role="assistant", content="Old answer"))
        engine = make_engine(lambda r: httpx.Response(503), streaming=False)
        before = engine.messages

        assert await engine.retry_from_user_message("u1") is None

        assert engine.messages == before
        engine.notifier.assert_called_once_with("error", "Failed to get response")


class TestLocalOperations:
    """Test operations that never call upstream"""

    @pytest.fixture
    def engine(self, make_engine):
        return make_engine(lambda r: pytest.fail("unexpected request"), streaming=False)

    def test_delete_generation_with_two_variants(self, engine, store, conversation):
        seed(store, conversation,
             Message(id="a1", role="assistant", content="B", variants=["A", "B"], current_variant=1))

        assert engine.delete_generation("a1") is True

        message = engine.messages[1]
        assert message.variants == ["A"]
        assert message.current_variant == 0
        assert message.content == "A"

    def test_delete_generation_keeps_index_in_middle(self, engine, store, conversation):
        seed(store, conversation,
             Message(id="a1", role="assistant", content="B", variants=["A", "B", "C"], current_variant=1))

        engine.delete_generation("a1")

        message = engine.messages[1]
        assert message.variants == ["A", "C"]
        assert message.current_variant == 1
        assert message.content == "C"

    def test_delete_generation_with_one_variant_deletes_message(self, engine, store, conversation):
        seed(store, conversation,
             Message(id="a1", role="assistant", content="A", variants=["A"], current_variant=0))

        assert engine.delete_generation("a1") is True

        assert [m.id for m in engine.messages if m.id == "a1"] == []
        assert len(engine.messages) == 1

    def test_delete_generation_without_variants(self, engine, store, conversation):
        seed(store, conversation, Message(id="a1", role="assistant", content="A"))

        engine.delete_generation("a1")

        assert len(engine.messages) == 1

    def test_delete_message(self, engine, store, conversation):
        seed(store, conversation,
             Message(id="u1", role="user", content="Hi"),
             Message(id="a1", role="assistant", content="Hey"))

        assert engine.delete_message("u1") is True
        assert engine.delete_message("u1") is False
        assert [m.id for m in engine.messages][1:] == ["a1"]
        assert engine.view.should_auto_scroll is False

    def test_delete_from_here(self, engine, store, conversation):
        seed(store, conversation,
             Message(id="u1", role="user", content="Hi"),
             Message(id="a1", role="assistant", content="Hey"),
             Message(id="u2", role="user", content="Bye"))

        assert engine.delete_from_here("a1") is True

        assert [m.id for m in engine.messages][1:] == ["u1"]

    def test_edit_message(self, engine, store, conversation):
        seed(store, conversation, Message(id="u1", role="user", content="Hi", timestamp=1))

        edited = engine.edit_message("u1", "  Hello there  ")

        assert edited.content == "Hello there"
        assert edited.timestamp > 1
        assert engine.messages[1].content == "Hello there"

    def test_edit_message_keeps_variant_in_sync(self, engine, store, conversation):
        seed(store, conversation,
             Message(id="a1", role="assistant", content="B", variants=["A", "B"], current_variant=1))

        edited = engine.edit_message("a1", "B2")

        assert edited.variants == ["A", "B2"]
        assert edited.content == edited.variants[edited.current_variant]

    def test_edit_message_rejects_blank(self, engine, store, conversation):
        seed(store, conversation, Message(id="u1", role="user", content="Hi"))

        assert engine.edit_message("u1", "   ") is None
        assert engine.messages[1].content == "Hi"

    def test_switch_variant(self, engine, store, conversation):
        seed(store, conversation,
             Message(id="a1", role="assistant", content="B", variants=["A", "B"], current_variant=1))

        assert engine.switch_variant("a1", 0) is True
        assert engine.messages[1].content == "A"
        assert engine.messages[1].current_variant == 0
        assert engine.switch_variant("a1", 2) is False
        assert engine.switch_variant("a1", -1) is False
        assert engine.is_loading is False

    def test_switch_greeting(self, engine):
        assert engine.switch_greeting(1) is True
        assert engine.messages[0].content == "Welcome back."
        assert engine.switch_greeting(0) is True
        assert engine.messages[0].content == "Hello, traveler."
        assert engine.switch_greeting(3) is False

    def test_switch_greeting_needs_assistant_first(self, engine, store, conversation):
        store.update("aria", conversation.id, messages=[Message(role="user", content="Hi")])

        assert engine.switch_greeting(1) is False

    def test_visible_messages_and_load_more(self, engine, store, conversation):
        seed(store, conversation, *[Message(role="user", content=str(i)) for i in range(19)])

        assert len(engine.visible_messages) == 8
        assert engine.visible_messages[-1].content == "18"

        engine.load_more_messages()
        assert engine.view.visible_message_count == 18
        engine.load_more_messages()
        assert engine.view.visible_message_count == 20
        assert engine.view.should_auto_scroll is False

    def test_display_character_fills_placeholders(self, store, conversation):
        character = Character(id="aria", name="Aria", description="{{char}} waits for {{user}}")
        engine = ConversationEngine(store, character, conversation.id, http_client=httpx.AsyncClient())

        assert engine.display_character.description == "Aria waits for User"


class TestSettings:
    """Test settings updates"""

    def test_model_change_resets_rate_limit(self, make_engine, store):
        engine = make_engine(lambda r: reply("x"), streaming=False)
        engine.rate_limit = RateLimitInfo(limit=25, remaining=10)

        engine.update_settings(ConversationSettings(streaming=False, temperature=1.2))
        assert engine.rate_limit is not None

        engine.update_settings(ConversationSettings(model="cosmosrp-it"))
        assert engine.rate_limit is None
        assert engine.settings.model == "cosmosrp-it"
        assert all(c.settings.model == "cosmosrp-it" for c in store.list("aria"))

    def test_update_conversation_settings(self, make_engine, store, character, conversation):
        other = store.create(character)
        engine = make_engine(lambda r: reply("x"), streaming=False)

        engine.update_conversation_settings(ConversationSettings(model="gpt-4o"))

        assert engine.conversation.settings.model == "gpt-4o"
        assert store.get("aria", other.id).settings.model == "cosmosrp"


class TestCancellation:
    """Test cancel and supersede"""

    @pytest.mark.asyncio
    async def test_cancel_in_flight_send(self, make_engine):
        entered = asyncio.Event()

        async def handler(request):
            entered.set()
            await asyncio.Event().wait()

        engine = make_engine(handler, streaming=False)
        task = asyncio.create_task(engine.send("Hello"))
        await entered.wait()

        assert engine.is_loading is True
        assert engine.cancel() is True
        assert await task is None

        assert engine.is_loading is False
        assert [m.role for m in engine.messages] == ["assistant", "user"]
        assert engine.cancel() is False

    @pytest.mark.asyncio
    async def test_new_send_supersedes_stale_one(self, make_engine):
        entered = asyncio.Event()
        calls = []

        async def handler(request):
            calls.append(request)
            if len(calls) == 1:
                entered.set()
                await asyncio.Event().wait()
            return reply("Second reply")

        engine = make_engine(handler, streaming=False)
        first = asyncio.create_task(engine.send("one"))
        await entered.wait()

        second = await engine.send("two")

        assert await first is None
        assert second.content == "Second reply"
        assert [m.content for m in engine.messages] == ["Hello, traveler.", "one", "two", "Second reply"]
        assert engine.is_loading is False

    @pytest.mark.asyncio
    async def test_cancel_when_idle(self, make_engine):
        engine = make_engine(lambda r: reply("x"), streaming=False)

        assert engine.cancel() is False
