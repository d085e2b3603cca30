"""Persistence adapters and the write-behind buffer that feeds them."""

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from chatcore.models.conversation import ConversationSnapshot
from chatcore.utils.logging import get_logger

logger = get_logger(__name__)


class PersistenceAdapter(Protocol):
    """Opaque key-value durability layer for conversation snapshots."""

    async def load(self, conversation_id: str) -> ConversationSnapshot | None: ...

    async def save(self, conversation_id: str, snapshot: ConversationSnapshot) -> None: ...

    async def delete(self, conversation_id: str) -> None: ...

    async def list_ids(self) -> list[str]: ...


class InMemoryPersistence:
    """Keeps serialized snapshots in a dict. Useful for tests and ephemeral sessions."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.save_count = 0

    async def load(self, conversation_id: str) -> ConversationSnapshot | None:
        raw = self.data.get(conversation_id)
        return ConversationSnapshot.model_validate_json(raw) if raw is not None else None

    async def save(self, conversation_id: str, snapshot: ConversationSnapshot) -> None:
        self.data[conversation_id] = snapshot.model_dump_json()
        self.save_count += 1

    async def delete(self, conversation_id: str) -> None:
        self.data.pop(conversation_id, None)

    async def list_ids(self) -> list[str]:
        return list(self.data)


class JsonFilePersistence:
    """One JSON file per conversation under ``directory``."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, conversation_id: str) -> Path:
        if not conversation_id or "/" in conversation_id or "\\" in conversation_id or conversation_id.startswith("."):
            raise ValueError(f"Invalid conversation id: {conversation_id!r}")
        return self.directory / f"{conversation_id}.json"

    async def load(self, conversation_id: str) -> ConversationSnapshot | None:
        path = self._path(conversation_id)
        if not path.exists():
            return None
        raw = await asyncio.to_thread(path.read_text, encoding="utf-8")
        return ConversationSnapshot.model_validate_json(raw)

    async def save(self, conversation_id: str, snapshot: ConversationSnapshot) -> None:
        path = self._path(conversation_id)
        data = snapshot.model_dump_json(indent=2)
        await asyncio.to_thread(self._write_atomic, path, data)

    @staticmethod
    def _write_atomic(path: Path, data: str) -> None:
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(data, encoding="utf-8")
        tmp.replace(path)

    async def delete(self, conversation_id: str) -> None:
        path = self._path(conversation_id)
        await asyncio.to_thread(path.unlink, missing_ok=True)

    async def list_ids(self) -> list[str]:
        return sorted(p.stem for p in self.directory.glob("*.json"))


SnapshotProvider = Callable[[], ConversationSnapshot | None]


class WriteBehindBuffer:
    """Coalesces store mutations into debounced writes, keyed by conversation id.

    The store only records which conversations are dirty; snapshots are
    materialized when the write actually happens. Without a running event
    loop, entries stay pending until ``flush``.
    """

    def __init__(self, adapter: PersistenceAdapter, debounce_ms: int = 500):
        self.adapter = adapter
        self.debounce_ms = debounce_ms
        # None marks a pending delete
        self._pending: dict[str, SnapshotProvider | None] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._writes: set[asyncio.Task] = set()

    @property
    def pending_ids(self) -> list[str]:
        return list(self._pending)

    def schedule(self, conversation_id: str, provider: SnapshotProvider) -> None:
        """Mark a conversation dirty; write it after the quiet period."""
        self._pending[conversation_id] = provider
        self._arm(conversation_id)

    def schedule_delete(self, conversation_id: str) -> None:
        self._pending[conversation_id] = None
        self._arm(conversation_id)

    def _arm(self, conversation_id: str) -> None:
        timer = self._timers.pop(conversation_id, None)
        if timer is not None:
            timer.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._timers[conversation_id] = loop.call_later(self.debounce_ms / 1000, self._fire, conversation_id)

    def _fire(self, conversation_id: str) -> None:
        self._timers.pop(conversation_id, None)
        task = asyncio.get_running_loop().create_task(self._write(conversation_id))
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)

    async def _write(self, conversation_id: str) -> None:
        if conversation_id not in self._pending:
            return
        provider = self._pending.pop(conversation_id)
        try:
            if provider is None:
                await self.adapter.delete(conversation_id)
                logger.debug(f"Deleted persisted conversation {conversation_id}")
                return
            snapshot = provider()
            if snapshot is None:
                return
            await self.adapter.save(conversation_id, snapshot)
            logger.debug(f"Persisted conversation {conversation_id} ({len(snapshot.messages)} messages)")
        except Exception as e:
            logger.error(f"Failed to persist conversation {conversation_id}: {e}", exc_info=True)

    async def flush(self) -> None:
        """Write every pending conversation now and wait for in-flight writes."""
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for conversation_id in list(self._pending):
            await self._write(conversation_id)
        if self._writes:
            await asyncio.gather(*self._writes)


async def load_snapshot(adapter: PersistenceAdapter, conversation_id: str) -> ConversationSnapshot | None:
    """Load a snapshot, treating unreadable data as missing."""
    try:
        return await adapter.load(conversation_id)
    except Exception as e:
        logger.error(f"Failed to load conversation {conversation_id}: {e}", exc_info=True)
        return None
