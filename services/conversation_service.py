"""
Conversation Engine.

This module drives the message lifecycle of one conversation on the client:
sending, regenerating, retrying, editing and deleting messages, switching
variants and greetings. It is the headless counterpart of the chat screen.

Key Components:
- `ConversationEngine.execute_turn`: The single routine that produces an
  assistant reply. It resolves the transport for the current settings, runs
  it in streaming or batched mode and records the rate-limit headers it sees.
  `send`, `regenerate` and `retry_from_user_message` differ only in the
  history they pass in and how they splice the reply back into the list.
- `ViewState`: Pagination and scrolling hints for a UI (visible message
  count, load-more button, auto-scroll, the message being regenerated).
- `ConversationEngine.cancel`: Aborts the in-flight operation. Starting a new
  send/regenerate/retry supersedes any operation still running, and waits
  for it to unwind before touching state.

Failure Handling:
- A failed send still answers the turn with a fixed apology message and
  raises a notification with the upstream detail.
- A failed regenerate or retry leaves the conversation untouched and only
  raises a notification.
- Notifications append the remaining quota when the failed response carried
  rate-limit headers.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Set

import httpx

from core.exceptions import TransportError
from core.logging_config import get_logger
from core.models import (
    DEFAULT_SETTINGS,
    Character,
    Conversation,
    ConversationSettings,
    Message,
    Persona,
    RateLimitInfo,
    new_id,
    now_ms,
)
from core.prompt import replace_character_placeholders
from providers.chat_transport import ChatTurn, ProgressCallback, resolve_transport
from services.conversation_store import ConversationStore

logger = get_logger(__name__)

SEND_FAILURE_REPLY = (
    "Sorry, I encountered an error while processing your message. Please try again."
)
INITIAL_VISIBLE_MESSAGES = 8
LOAD_MORE_STEP = 10
DEFAULT_CLIENT_TIMEOUT = 60.0

Notifier = Callable[[str, str], None]


def _log_notification(level: str, message: str) -> None:
    logger.info(f"[{level}] {message}")


def find_message(messages: List[Message], message_id: str) -> Optional[int]:
    for index, message in enumerate(messages):
        if message.id == message_id:
            return index
    return None


@dataclass
class ViewState:
    visible_message_count: int = INITIAL_VISIBLE_MESSAGES
    show_load_more: bool = False
    should_auto_scroll: bool = False
    regenerating_message_id: Optional[str] = None

    def reset_pagination(self) -> None:
        self.visible_message_count = INITIAL_VISIBLE_MESSAGES
        self.show_load_more = False
        self.regenerating_message_id = None


class ConversationEngine:
    """Message lifecycle for one conversation of one character"""

    def __init__(
        self,
        store: ConversationStore,
        character: Character,
        conversation_id: str,
        settings: Optional[ConversationSettings] = None,
        persona: Optional[Persona] = None,
        notifier: Optional[Notifier] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        proxy_url: str = "",
    ):
        self.store = store
        self.character = character
        self.conversation_id = conversation_id
        self.settings = settings or DEFAULT_SETTINGS.model_copy(deep=True)
        self.persona = persona
        self.notifier = notifier or _log_notification
        self.proxy_url = proxy_url

        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(DEFAULT_CLIENT_TIMEOUT)
        )

        self.is_loading = False
        self.streaming_message: Optional[Message] = None
        self.rate_limit: Optional[RateLimitInfo] = None
        self.view = ViewState(should_auto_scroll=True)

        self._inflight: Optional[asyncio.Task] = None
        self._aborted: Set[asyncio.Task] = set()

    @property
    def conversation(self) -> Conversation:
        return self.store.require(self.character.id, self.conversation_id)

    @property
    def messages(self) -> List[Message]:
        return list(self.conversation.messages)

    @property
    def visible_messages(self) -> List[Message]:
        return self.messages[-self.view.visible_message_count:]

    @property
    def display_character(self) -> Character:
        """The character with {{char}}/{{user}} filled in for display"""
        return replace_character_placeholders(self.character, self.persona)

    async def aclose(self) -> None:
        self.cancel()
        if self._owns_client:
            await self.http_client.aclose()

    # Transport

    async def execute_turn(
        self, history: List[Message], on_progress: Optional[ProgressCallback] = None
    ) -> str:
        """
        Produce the next assistant reply for `history`.

        Raises:
            TransportError: the call failed; its rate-limit info, if any, has
                already been recorded on the engine
        """
        transport = resolve_transport(self.settings, self.http_client, self.proxy_url)
        turn = ChatTurn(
            history=list(history),
            settings=self.settings,
            character=self.character,
            persona=self.persona,
        )
        logger.debug(
            f"Executing chat turn via {transport.source_name}",
            extra={
                "transport": transport.source_name,
                "model": self.settings.model,
                "streaming": self.settings.streaming,
                "history_length": len(history),
            },
        )
        try:
            result = await transport.execute(turn, on_progress)
        except TransportError as e:
            if e.rate_limit is not None:
                self.rate_limit = e.rate_limit
            raise

        if result.rate_limit is not None:
            self.rate_limit = result.rate_limit
        return result.content

    # Operations that call upstream

    async def send(self, content: str, image: Optional[str] = None) -> Optional[Message]:
        """Append a user message and answer it; returns the committed reply"""
        return await self._run(self._send(content, image))

    async def regenerate(self, message_id: str) -> Optional[Message]:
        """Generate a new variant for an assistant message"""
        return await self._run(self._regenerate(message_id))

    async def retry_from_user_message(self, message_id: str) -> Optional[Message]:
        """Answer a user message again, discarding everything after it"""
        return await self._run(self._retry_from_user_message(message_id))

    def cancel(self) -> bool:
        """Abort the in-flight operation; returns False when nothing was running"""
        task = self._inflight
        if task is None or task.done():
            return False
        self._aborted.add(task)
        task.cancel()
        logger.info("Cancelled in-flight chat operation")
        return True

    async def _run(self, operation: Awaitable[Optional[Message]]) -> Optional[Message]:
        previous = self._inflight
        if previous is not None and not previous.done():
            self.cancel()
            await asyncio.wait([previous])

        task = asyncio.ensure_future(operation)
        self._inflight = task
        try:
            return await task
        except asyncio.CancelledError:
            if task not in self._aborted:
                raise
            return None
        finally:
            self._aborted.discard(task)
            if self._inflight is task:
                self._inflight = None

    async def _send(self, content: str, image: Optional[str]) -> Message:
        self.view.reset_pagination()
        self.view.should_auto_scroll = True

        user_message = Message(role="user", content=content, image=image)
        history = self.messages + [user_message]
        self._commit(history)

        reply_id = new_id()
        self.is_loading = True
        try:
            reply = await self.execute_turn(history, self._stream_into(reply_id))
        except TransportError as e:
            self._notify_failure("send", e)
            reply = SEND_FAILURE_REPLY
        finally:
            self._finish()

        assistant = Message(id=reply_id, role="assistant", content=reply)
        self._commit(history + [assistant])
        return assistant

    async def _regenerate(self, message_id: str) -> Optional[Message]:
        messages = self.messages
        index = find_message(messages, message_id)
        if index is None or messages[index].role != "assistant":
            return None

        target = messages[index]
        self.view.regenerating_message_id = message_id
        self.view.should_auto_scroll = True
        self.is_loading = True
        try:
            content = await self.execute_turn(messages[:index], self._stream_into(target.id))
        except TransportError as e:
            self._notify_failure("regenerate", e)
            return None
        finally:
            self._finish()

        variants = list(target.variants) if target.variants else [target.content]
        variants.append(content)
        updated = target.model_copy(
            update={
                "variants": variants,
                "current_variant": len(variants) - 1,
                "content": content,
            }
        )
        self._replace(updated)
        return updated

    async def _retry_from_user_message(self, message_id: str) -> Optional[Message]:
        messages = self.messages
        index = find_message(messages, message_id)
        if index is None or messages[index].role != "user":
            return None

        history = messages[: index + 1]
        reply_id = new_id()
        self.view.should_auto_scroll = True
        self.is_loading = True
        try:
            content = await self.execute_turn(history, self._stream_into(reply_id))
        except TransportError as e:
            self._notify_failure("retry", e)
            return None
        finally:
            self._finish()

        assistant = Message(id=reply_id, role="assistant", content=content)
        self._commit(history + [assistant])
        return assistant

    # Local operations

    def edit_message(self, message_id: str, new_content: str) -> Optional[Message]:
        new_content = new_content.strip()
        messages = self.messages
        index = find_message(messages, message_id)
        if index is None or not new_content:
            return None

        target = messages[index]
        update = {"content": new_content, "timestamp": now_ms()}
        if target.variants:
            variants = list(target.variants)
            variants[target.current_variant or 0] = new_content
            update["variants"] = variants

        updated = target.model_copy(update=update)
        self._replace(updated, auto_scroll=False)
        return updated

    def delete_message(self, message_id: str) -> bool:
        messages = self.messages
        remaining = [message for message in messages if message.id != message_id]
        if len(remaining) == len(messages):
            return False
        self._commit(remaining, auto_scroll=False)
        return True

    def delete_from_here(self, message_id: str) -> bool:
        messages = self.messages
        index = find_message(messages, message_id)
        if index is None:
            return False
        self._commit(messages[:index], auto_scroll=False)
        return True

    def delete_generation(self, message_id: str) -> bool:
        """Drop the selected variant, or the whole message when it has at most one"""
        messages = self.messages
        index = find_message(messages, message_id)
        if index is None:
            return False

        target = messages[index]
        if not target.variants or len(target.variants) <= 1:
            return self.delete_message(message_id)

        current = target.current_variant or 0
        variants = [v for i, v in enumerate(target.variants) if i != current]
        current = min(current, len(variants) - 1)
        self._replace(
            target.model_copy(
                update={
                    "variants": variants,
                    "current_variant": current,
                    "content": variants[current],
                }
            ),
            auto_scroll=False,
        )
        return True

    def switch_variant(self, message_id: str, variant_index: int) -> bool:
        messages = self.messages
        index = find_message(messages, message_id)
        if index is None:
            return False

        target = messages[index]
        if not target.variants or not 0 <= variant_index < len(target.variants):
            return False

        self._replace(
            target.model_copy(
                update={
                    "content": target.variants[variant_index],
                    "current_variant": variant_index,
                }
            ),
            auto_scroll=False,
        )
        return True

    def switch_greeting(self, greeting_index: int) -> bool:
        greetings = self.character.greetings()
        if not 0 <= greeting_index < len(greetings):
            return False

        messages = self.messages
        if not messages or messages[0].role != "assistant":
            return False

        first = messages[0].model_copy(update={"content": greetings[greeting_index]})
        self._commit([first] + messages[1:], auto_scroll=False)
        return True

    def load_more_messages(self) -> None:
        self.view.visible_message_count = min(
            self.view.visible_message_count + LOAD_MORE_STEP, len(self.messages)
        )
        self.view.show_load_more = False
        self.view.should_auto_scroll = False

    # Settings

    def update_settings(self, settings: ConversationSettings) -> None:
        """Replace the global settings and copy them into every conversation of the character"""
        if settings.model != self.settings.model:
            self.rate_limit = None
        self.settings = settings
        self.store.propagate_settings(self.character.id, settings)

    def update_conversation_settings(self, settings: ConversationSettings) -> Conversation:
        return self.store.update(
            self.character.id, self.conversation_id, settings=settings
        )

    # Helpers

    def _stream_into(self, message_id: str) -> Optional[ProgressCallback]:
        if not self.settings.streaming:
            return None
        self.streaming_message = Message(id=message_id, role="assistant", content="")

        def on_progress(content: str) -> None:
            self.streaming_message = Message(
                id=message_id, role="assistant", content=content
            )

        return on_progress

    def _finish(self) -> None:
        self.is_loading = False
        self.streaming_message = None
        self.view.regenerating_message_id = None

    def _commit(self, messages: List[Message], auto_scroll: Optional[bool] = None) -> None:
        self.store.update(self.character.id, self.conversation_id, messages=messages)
        if auto_scroll is not None:
            self.view.should_auto_scroll = auto_scroll

    def _replace(self, message: Message, auto_scroll: Optional[bool] = None) -> None:
        messages = self.messages
        index = find_message(messages, message.id)
        if index is None:
            return
        messages[index] = message
        self._commit(messages, auto_scroll)

    def _notify_failure(self, operation: str, error: TransportError) -> None:
        logger.warning(
            f"Chat {operation} failed: {error.message}",
            extra={"operation": operation, "status_code": error.status_code},
        )
        self.notifier("error", error.user_message())
