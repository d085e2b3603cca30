"""Conversation/message store: the in-memory read authority that UI surfaces subscribe to."""

from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from chatcore.errors import ConcurrentGenerationError, ErrorKind, NotFoundError
from chatcore.models.conversation import (
    Conversation,
    ConversationFilter,
    ConversationSnapshot,
    ConversationView,
    SortField,
    StoreSnapshot,
)
from chatcore.models.llm import ModelDescriptor
from chatcore.models.messages import Message, MessageError, MessageRole, MessageStatus, ToolCallRecord, utcnow
from chatcore.services.persistence import PersistenceAdapter, WriteBehindBuffer, load_snapshot
from chatcore.utils.ids import new_id
from chatcore.utils.logging import get_logger

logger = get_logger(__name__)

Listener = Callable[[Any], None]
Unsubscribe = Callable[[], None]

_META_FIELDS = frozenset({"title", "tags", "pinned", "archived", "system_prompt", "model"})


@dataclass
class StoreConfig:
    debounce_ms: int = 500


@dataclass
class StoreStats:
    conversation_count: int
    total_message_count: int
    active_conversations: int
    archived_conversations: int
    pinned_conversations: int


class ConversationStore:
    """Holds conversations and their ordered messages.

    Every mutation is synchronous and sends exactly one notification to each
    interested subscriber once it is complete; ``batch()`` widens that
    boundary to several mutations. Touched conversations are handed to the
    write-behind buffer at the same boundary.
    """

    def __init__(self, persistence: PersistenceAdapter | None = None, config: StoreConfig | None = None):
        self.config = config or StoreConfig()
        self.persistence = persistence
        self.buffer = WriteBehindBuffer(persistence, self.config.debounce_ms) if persistence else None

        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[Message]] = {}
        self._message_index: dict[str, str] = {}

        self._listeners: dict[int, tuple[str | None, Listener]] = {}
        self._next_listener_id = 0

        self._depth = 0
        # conversation id -> deleted
        self._touched: dict[str, bool] = {}

    # Subscriptions

    def subscribe(self, listener: Listener, conversation_id: str | None = None) -> Unsubscribe:
        """Register a listener.

        Conversation-scoped listeners receive a ``ConversationView`` whenever
        that conversation changes; global listeners receive a ``StoreSnapshot``
        on every mutation.

        Returns:
            A callable that removes the listener
        """
        listener_id = self._next_listener_id
        self._next_listener_id += 1
        self._listeners[listener_id] = (conversation_id, listener)

        def unsubscribe() -> None:
            self._listeners.pop(listener_id, None)

        return unsubscribe

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Group several mutations into a single notification."""
        self._depth += 1
        try:
            yield
        finally:
            self._depth -= 1
            if self._depth == 0 and self._touched:
                touched, self._touched = self._touched, {}
                self._commit(touched)

    def _touch(self, conversation_id: str, deleted: bool = False) -> None:
        self._touched[conversation_id] = deleted

    def _commit(self, touched: dict[str, bool]) -> None:
        if self.buffer is not None:
            for conversation_id, deleted in touched.items():
                if deleted:
                    self.buffer.schedule_delete(conversation_id)
                else:
                    self.buffer.schedule(conversation_id, lambda cid=conversation_id: self.conversation_snapshot(cid))

        snapshot: StoreSnapshot | None = None
        views: dict[str, ConversationView] = {}
        for scope, listener in list(self._listeners.values()):
            if scope is None:
                if snapshot is None:
                    snapshot = self.snapshot()
                state: Any = snapshot
            elif scope in touched:
                if scope not in views:
                    views[scope] = self.view(scope)
                state = views[scope]
            else:
                continue

            try:
                listener(state)
            except Exception as e:
                logger.error(f"Store listener failed: {e}", exc_info=True)

    # Projections

    def view(self, conversation_id: str) -> ConversationView:
        return ConversationView(
            conversation=self._conversations.get(conversation_id),
            messages=tuple(self._messages.get(conversation_id, ())),
        )

    def snapshot(self) -> StoreSnapshot:
        return StoreSnapshot(
            conversations=tuple(self.list_conversations(include_archived=True)),
            streaming_conversation_ids=frozenset(
                cid for cid in self._conversations if self.streaming_message(cid) is not None
            ),
        )

    def conversation_snapshot(self, conversation_id: str) -> ConversationSnapshot | None:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return None
        return ConversationSnapshot(conversation=conversation, messages=list(self._messages[conversation_id]))

    # Conversations

    def create_conversation(
        self,
        model: ModelDescriptor,
        title: str | None = None,
        tags: Iterable[str] = (),
        system_prompt: str | None = None,
        conversation_id: str | None = None,
    ) -> Conversation:
        conversation_id = conversation_id or new_id()
        if conversation_id in self._conversations:
            raise ValueError(f"Conversation {conversation_id} already exists")

        conversation = Conversation(
            id=conversation_id,
            title=title or "New conversation",
            model=model,
            tags=tuple(dict.fromkeys(tags)),
            system_prompt=system_prompt,
        )
        with self.batch():
            self._conversations[conversation_id] = conversation
            self._messages[conversation_id] = []
            self._touch(conversation_id)
        logger.info(f"Created conversation {conversation_id} with model {model.model_id}")
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    def require_conversation(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    def set_conversation_meta(self, conversation_id: str, **changes: Any) -> Conversation:
        """Update conversation metadata (title, tags, pinned, archived, system_prompt, model)."""
        unknown = set(changes) - _META_FIELDS
        if unknown:
            raise ValueError(f"Unknown conversation fields: {', '.join(sorted(unknown))}")
        conversation = self.require_conversation(conversation_id)
        if "tags" in changes:
            changes["tags"] = tuple(dict.fromkeys(changes["tags"]))

        updated = conversation.model_copy(update={**changes, "updated_at": utcnow()})
        with self.batch():
            self._conversations[conversation_id] = updated
            self._touch(conversation_id)
        return updated

    def toggle_pin(self, conversation_id: str) -> Conversation:
        conversation = self.require_conversation(conversation_id)
        return self.set_conversation_meta(conversation_id, pinned=not conversation.pinned)

    def add_tag(self, conversation_id: str, tag: str) -> Conversation:
        conversation = self.require_conversation(conversation_id)
        if tag in conversation.tags:
            return conversation
        return self.set_conversation_meta(conversation_id, tags=(*conversation.tags, tag))

    def remove_tag(self, conversation_id: str, tag: str) -> Conversation:
        conversation = self.require_conversation(conversation_id)
        if tag not in conversation.tags:
            return conversation
        return self.set_conversation_meta(conversation_id, tags=tuple(t for t in conversation.tags if t != tag))

    def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation and all its messages."""
        if conversation_id not in self._conversations:
            return False
        with self.batch():
            del self._conversations[conversation_id]
            for message in self._messages.pop(conversation_id, []):
                self._message_index.pop(message.id, None)
            self._touch(conversation_id, deleted=True)
        logger.info(f"Deleted conversation {conversation_id}")
        return True

    def list_conversations(
        self,
        filter: ConversationFilter | None = None,
        sort: SortField = SortField.UPDATED_AT,
        descending: bool = True,
        offset: int = 0,
        limit: int | None = None,
        include_archived: bool = False,
    ) -> list[Conversation]:
        """List conversations as a pure projection of the current state.

        Archived conversations are hidden unless ``include_archived`` is set
        or the filter asks for them explicitly.
        """
        conversations = [c for c in self._conversations.values() if _matches(c, filter, include_archived)]
        conversations.sort(key=_sort_key(sort), reverse=descending)
        end = None if limit is None else offset + limit
        return conversations[offset:end]

    def search_conversations(self, query: str) -> list[Conversation]:
        return self.list_conversations(ConversationFilter(search=query), sort=SortField.LAST_MESSAGE_AT)

    def stats(self) -> StoreStats:
        conversations = list(self._conversations.values())
        return StoreStats(
            conversation_count=len(conversations),
            total_message_count=sum(len(m) for m in self._messages.values()),
            active_conversations=sum(1 for c in conversations if not c.archived),
            archived_conversations=sum(1 for c in conversations if c.archived),
            pinned_conversations=sum(1 for c in conversations if c.pinned),
        )

    # Messages

    def add_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str = "",
        status: MessageStatus = MessageStatus.COMPLETED,
        tool_calls: Iterable[ToolCallRecord] = (),
        message_id: str | None = None,
    ) -> Message:
        """Append a message to a conversation.

        Raises:
            NotFoundError: If the conversation does not exist
            ConcurrentGenerationError: If adding a streaming message while another one streams
        """
        conversation = self.require_conversation(conversation_id)
        message_id = message_id or new_id()
        if message_id in self._message_index:
            raise ValueError(f"Message {message_id} already exists")
        if status == MessageStatus.STREAMING:
            self._check_can_stream(conversation_id, message_id)

        now = utcnow()
        message = Message(
            id=message_id,
            conversation_id=conversation_id,
            role=role,
            content=content,
            status=status,
            tool_calls=tuple(tool_calls),
            created_at=now,
            updated_at=now,
        )
        messages = self._messages[conversation_id]
        with self.batch():
            messages.append(message)
            self._message_index[message_id] = conversation_id
            self._conversations[conversation_id] = conversation.model_copy(
                update={"message_count": len(messages), "last_message_at": now, "updated_at": now}
            )
            self._touch(conversation_id)
        return message

    def update_message(
        self,
        message_id: str,
        *,
        content: str | None = None,
        status: MessageStatus | None = None,
        tool_calls: Iterable[ToolCallRecord] | None = None,
        error: MessageError | None = None,
    ) -> Message:
        """Replace fields of a message."""
        message = self.require_message(message_id)
        changes: dict[str, Any] = {"updated_at": utcnow()}
        if content is not None:
            changes["content"] = content
        if status is not None:
            if status == MessageStatus.STREAMING and message.status != MessageStatus.STREAMING:
                self._check_can_stream(message.conversation_id, message_id)
            changes["status"] = status
        if tool_calls is not None:
            changes["tool_calls"] = tuple(tool_calls)
        if error is not None:
            changes["error"] = error
        return self._replace(message, changes)

    def append_token(self, message_id: str, delta: str) -> Message:
        """Concatenate a streamed delta; the first delta flips ``pending`` to ``streaming``.

        Raises:
            ValueError: If the message is already completed or errored
            ConcurrentGenerationError: If another message in the conversation is streaming
        """
        message = self.require_message(message_id)
        if message.is_settled:
            raise ValueError(f"Message {message_id} is already {message.status}")
        changes: dict[str, Any] = {"content": message.content + delta, "updated_at": utcnow()}
        if message.status == MessageStatus.PENDING:
            self._check_can_stream(message.conversation_id, message_id)
            changes["status"] = MessageStatus.STREAMING
        return self._replace(message, changes)

    def reset_content(self, message_id: str) -> Message:
        """Discard partial content before a retried generation."""
        message = self.require_message(message_id)
        if message.is_settled:
            raise ValueError(f"Message {message_id} is already {message.status}")
        return self._replace(message, {"content": "", "updated_at": utcnow()})

    def finalize(self, message_id: str, error: MessageError | None = None) -> Message:
        """Settle a message as ``completed``, or as ``error`` when ``error`` is given."""
        message = self.require_message(message_id)
        if message.is_settled:
            raise ValueError(f"Message {message_id} is already {message.status}")
        status = MessageStatus.ERROR if error is not None else MessageStatus.COMPLETED
        return self._replace(message, {"status": status, "error": error, "updated_at": utcnow()}, bump=True)

    def delete_message(self, message_id: str) -> bool:
        conversation_id = self._message_index.get(message_id)
        if conversation_id is None:
            return False
        messages = self._messages[conversation_id]
        with self.batch():
            messages[:] = [m for m in messages if m.id != message_id]
            del self._message_index[message_id]
            self._conversations[conversation_id] = self._conversations[conversation_id].model_copy(
                update={"message_count": len(messages), "updated_at": utcnow()}
            )
            self._touch(conversation_id)
        return True

    def get_messages(self, conversation_id: str) -> list[Message]:
        self.require_conversation(conversation_id)
        return list(self._messages[conversation_id])

    def get_message(self, message_id: str) -> Message | None:
        conversation_id = self._message_index.get(message_id)
        if conversation_id is None:
            return None
        return next(m for m in self._messages[conversation_id] if m.id == message_id)

    def require_message(self, message_id: str) -> Message:
        message = self.get_message(message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")
        return message

    def streaming_message(self, conversation_id: str) -> Message | None:
        return next(
            (m for m in self._messages.get(conversation_id, ()) if m.status == MessageStatus.STREAMING),
            None,
        )

    def _check_can_stream(self, conversation_id: str, message_id: str) -> None:
        current = self.streaming_message(conversation_id)
        if current is not None and current.id != message_id:
            raise ConcurrentGenerationError(
                f"Conversation {conversation_id} is already streaming message {current.id}"
            )

    def _replace(self, message: Message, changes: dict[str, Any], bump: bool = False) -> Message:
        updated = message.model_copy(update=changes)
        conversation_id = message.conversation_id
        messages = self._messages[conversation_id]
        index = next(i for i, m in enumerate(messages) if m.id == message.id)
        with self.batch():
            messages[index] = updated
            if bump:
                self._conversations[conversation_id] = self._conversations[conversation_id].model_copy(
                    update={"updated_at": updated.updated_at}
                )
            self._touch(conversation_id)
        return updated

    # Persistence

    def import_snapshot(self, snapshot: ConversationSnapshot, mark_interrupted: bool = True) -> ConversationView:
        """Install a loaded or imported conversation into memory."""
        conversation = snapshot.conversation
        messages = []
        for message in snapshot.messages:
            if mark_interrupted and not message.is_settled:
                message = message.model_copy(
                    update={
                        "status": MessageStatus.ERROR,
                        "error": MessageError(kind=ErrorKind.EXECUTION_ERROR, message="Generation was interrupted"),
                    }
                )
            messages.append(message)

        with self.batch():
            for old in self._messages.get(conversation.id, []):
                self._message_index.pop(old.id, None)
            self._conversations[conversation.id] = conversation.model_copy(update={"message_count": len(messages)})
            self._messages[conversation.id] = messages
            for message in messages:
                self._message_index[message.id] = conversation.id
            self._touch(conversation.id)
        return self.view(conversation.id)

    async def load_conversation(self, conversation_id: str) -> ConversationView:
        """Load a conversation from persistence unless it is already in memory.

        A missing or unreadable conversation starts empty instead of failing.
        """
        if conversation_id in self._conversations or self.persistence is None:
            return self.view(conversation_id)

        snapshot = await load_snapshot(self.persistence, conversation_id)
        if snapshot is None:
            logger.info(f"No persisted data for conversation {conversation_id}, starting empty")
            return self.view(conversation_id)
        return self.import_snapshot(snapshot)

    async def load_all(self) -> int:
        """Load every persisted conversation. Returns the number loaded."""
        if self.persistence is None:
            return 0
        try:
            conversation_ids = await self.persistence.list_ids()
        except Exception as e:
            logger.error(f"Failed to list persisted conversations: {e}", exc_info=True)
            return 0
        loaded = 0
        for conversation_id in conversation_ids:
            view = await self.load_conversation(conversation_id)
            if view.conversation is not None:
                loaded += 1
        logger.info(f"Loaded {loaded} conversation(s) from persistence")
        return loaded

    async def flush(self) -> None:
        """Force pending writes to persistence."""
        if self.buffer is not None:
            await self.buffer.flush()


def _matches(conversation: Conversation, filter: ConversationFilter | None, include_archived: bool) -> bool:
    if filter is None:
        return include_archived or not conversation.archived
    if filter.archived is not None:
        if conversation.archived != filter.archived:
            return False
    elif conversation.archived and not include_archived:
        return False
    if filter.tags and not any(tag in conversation.tags for tag in filter.tags):
        return False
    if filter.pinned is not None and conversation.pinned != filter.pinned:
        return False
    if filter.providers and conversation.model.provider not in filter.providers:
        return False
    if filter.search:
        query = filter.search.casefold()
        if query not in conversation.title.casefold() and query not in (conversation.system_prompt or "").casefold():
            return False
    activity = conversation.last_message_at or conversation.updated_at
    if filter.date_from and activity < filter.date_from:
        return False
    if filter.date_to and activity > filter.date_to:
        return False
    return True


def _sort_key(sort: SortField) -> Callable[[Conversation], Any]:
    match sort:
        case SortField.CREATED_AT:
            return lambda c: c.created_at
        case SortField.LAST_MESSAGE_AT:
            return lambda c: c.last_message_at or c.updated_at
        case SortField.TITLE:
            return lambda c: c.title.casefold()
        case SortField.MESSAGE_COUNT:
            return lambda c: c.message_count
        case _:
            return lambda c: c.updated_at
