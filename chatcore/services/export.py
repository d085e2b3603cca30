"""Export conversations as JSON, Markdown or plain text, and import JSON exports."""

import json
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import StrEnum

from pydantic import ValidationError

from chatcore.models.conversation import ConversationSnapshot
from chatcore.models.messages import MessageRole
from chatcore.services.store import ConversationStore
from chatcore.utils.ids import new_id
from chatcore.utils.logging import get_logger

logger = get_logger(__name__)

EXPORT_VERSION = 1

_ROLE_LABELS = {
    MessageRole.USER: "User",
    MessageRole.ASSISTANT: "Assistant",
    MessageRole.TOOL: "Tool",
    MessageRole.SYSTEM: "System",
}


class ExportFormat(StrEnum):
    JSON = "json"
    MARKDOWN = "markdown"
    TEXT = "text"


_MIME_TYPES = {
    ExportFormat.JSON: "application/json",
    ExportFormat.MARKDOWN: "text/markdown",
    ExportFormat.TEXT: "text/plain",
}
_EXTENSIONS = {ExportFormat.JSON: "json", ExportFormat.MARKDOWN: "md", ExportFormat.TEXT: "txt"}
_SEPARATORS = {
    ExportFormat.MARKDOWN: "\n\n---\n\n",
    ExportFormat.TEXT: "\n\n" + "=" * 80 + "\n\n",
}


@dataclass
class ExportResult:
    content: str
    filename: str
    mime_type: str

    @property
    def size(self) -> int:
        return len(self.content.encode("utf-8"))


@dataclass
class ImportResult:
    conversation_ids: list[str] = field(default_factory=list)
    message_count: int = 0
    errors: list[str] = field(default_factory=list)


def render(snapshot: ConversationSnapshot, fmt: ExportFormat) -> str:
    """Serialize one conversation.

    JSON keeps every field. Markdown is role-prefixed paragraphs and plain
    text is message content only; neither carries metadata.
    """
    match fmt:
        case ExportFormat.JSON:
            return snapshot.model_dump_json(indent=2)
        case ExportFormat.MARKDOWN:
            return "\n\n".join(
                f"**{_ROLE_LABELS[m.role]}:** {m.content}" for m in snapshot.messages if m.content
            )
        case ExportFormat.TEXT:
            return "\n\n".join(m.content for m in snapshot.messages if m.content)
    raise ValueError(f"Unsupported export format: {fmt}")


def export_conversation(store: ConversationStore, conversation_id: str, fmt: ExportFormat) -> ExportResult:
    """Export a single conversation from the store.

    Raises:
        NotFoundError: If the conversation does not exist
    """
    conversation = store.require_conversation(conversation_id)
    snapshot = store.conversation_snapshot(conversation_id)
    content = render(snapshot, fmt)
    logger.info(f"Exported conversation {conversation_id} as {fmt} ({len(content)} chars)")
    return ExportResult(
        content=content,
        filename=f"{_slugify(conversation.title)}.{_EXTENSIONS[fmt]}",
        mime_type=_MIME_TYPES[fmt],
    )


def export_conversations(store: ConversationStore, conversation_ids: Sequence[str], fmt: ExportFormat) -> ExportResult:
    """Export several conversations into one document."""
    snapshots = []
    for conversation_id in conversation_ids:
        store.require_conversation(conversation_id)
        snapshots.append(store.conversation_snapshot(conversation_id))

    if fmt == ExportFormat.JSON:
        content = json.dumps(
            {
                "version": EXPORT_VERSION,
                "conversations": [s.model_dump(mode="json") for s in snapshots],
            },
            indent=2,
        )
    else:
        content = _SEPARATORS[fmt].join(render(s, fmt) for s in snapshots)

    return ExportResult(
        content=content,
        filename=f"conversations.{_EXTENSIONS[fmt]}",
        mime_type=_MIME_TYPES[fmt],
    )


def import_conversations(store: ConversationStore, data: str) -> ImportResult:
    """Import a JSON export (single conversation or multi-conversation document).

    Conversations whose id already exists in the store are imported under
    fresh conversation and message ids.

    Raises:
        ValueError: If ``data`` is not valid JSON
    """
    payload = json.loads(data)
    items = payload.get("conversations", [payload]) if isinstance(payload, dict) else payload
    if not isinstance(items, list):
        raise ValueError("Import data must be a conversation or a list of conversations")

    result = ImportResult()
    with store.batch():
        for item in items:
            try:
                snapshot = ConversationSnapshot.model_validate(item)
            except ValidationError as e:
                logger.warning(f"Skipping invalid conversation in import: {e.error_count()} error(s)")
                result.errors.append(str(e))
                continue

            snapshot = _with_fresh_ids(store, snapshot)
            store.import_snapshot(snapshot)
            result.conversation_ids.append(snapshot.conversation.id)
            result.message_count += len(snapshot.messages)

    logger.info(f"Imported {len(result.conversation_ids)} conversation(s), {result.message_count} message(s)")
    return result


def _with_fresh_ids(store: ConversationStore, snapshot: ConversationSnapshot) -> ConversationSnapshot:
    collides = store.get_conversation(snapshot.conversation.id) is not None or any(
        store.get_message(m.id) is not None for m in snapshot.messages
    )
    if not collides:
        return snapshot

    conversation_id = new_id()
    return ConversationSnapshot(
        conversation=snapshot.conversation.model_copy(update={"id": conversation_id}),
        messages=[m.model_copy(update={"id": new_id(), "conversation_id": conversation_id}) for m in snapshot.messages],
    )


def _slugify(title: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    return slug[:50] or "conversation"
