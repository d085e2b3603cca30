"""Chat service: turns a user send into a workflow run streaming into the store."""

import asyncio
import re
from dataclasses import dataclass

from chatcore.errors import ConcurrentGenerationError, user_message_for
from chatcore.graphs.engine import WorkflowEngine, WorkflowHandle
from chatcore.graphs.runtime import StepSink
from chatcore.models.conversation import Conversation
from chatcore.models.llm import LLMMessage
from chatcore.models.messages import Message, MessageError, MessageRole, MessageStatus
from chatcore.models.workflow import AgentDefinition, RunStatus, SequentialSpec, WorkflowRun, WorkflowSpec
from chatcore.services.store import ConversationStore
from chatcore.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TITLE = "New conversation"

_WHITESPACE = re.compile(r"\s+")


def generate_title(first_message: str, max_length: int = 50) -> str:
    """Clean and truncate a first message into a conversation title."""
    cleaned = _WHITESPACE.sub(" ", first_message.strip())
    if len(cleaned) <= max_length:
        return cleaned
    return cleaned[: max_length - 3] + "..."


def build_history(messages: list[Message]) -> list[LLMMessage]:
    """Settled user/assistant turns as model context. Errored turns are skipped."""
    return [
        LLMMessage(role=str(m.role), content=m.content)
        for m in messages
        if m.role in (MessageRole.USER, MessageRole.ASSISTANT) and m.status == MessageStatus.COMPLETED and m.content
    ]


@dataclass
class ChatTurn:
    """One send: the stored user message, the assistant placeholder and the run driving it."""

    user_message: Message
    assistant_message_id: str
    handle: WorkflowHandle
    task: asyncio.Task[WorkflowRun]

    @property
    def run(self) -> WorkflowRun:
        return self.handle.run

    async def wait(self) -> WorkflowRun:
        return await asyncio.shield(self.task)


class ChatService:
    """Runs chat turns against the store, one active generation per conversation."""

    def __init__(self, store: ConversationStore, engine: WorkflowEngine):
        self.store = store
        self.engine = engine
        self._active: dict[str, ChatTurn] = {}

    def default_spec(self, conversation: Conversation, tools_enabled: bool = True) -> SequentialSpec:
        """Single-step chat with the conversation's model and system prompt."""
        agent = AgentDefinition(
            id="assistant",
            name="Assistant",
            system_prompt=conversation.system_prompt or "",
            model=conversation.model,
            tools=[] if tools_enabled else None,
        )
        return SequentialSpec.single(agent)

    def is_generating(self, conversation_id: str) -> bool:
        return conversation_id in self._active

    def start(
        self,
        conversation_id: str,
        content: str,
        *,
        spec: WorkflowSpec | None = None,
        tools_enabled: bool = True,
    ) -> ChatTurn:
        """Store the user message and start generating the reply.

        Args:
            conversation_id: Target conversation
            content: User message text
            spec: Workflow to run; defaults to single-step chat
            tools_enabled: Whether the default single-step agent may call tools

        Raises:
            NotFoundError: If the conversation does not exist or ``spec`` names an unknown agent
            ConcurrentGenerationError: If a reply is already being generated
        """
        conversation = self.store.require_conversation(conversation_id)
        if conversation_id in self._active or self.store.streaming_message(conversation_id) is not None:
            raise ConcurrentGenerationError(f"Conversation {conversation_id} already has an active generation")

        spec = self.engine.resolve(spec or self.default_spec(conversation, tools_enabled))
        history = build_history(self.store.get_messages(conversation_id))
        with self.store.batch():
            user_message = self.store.add_message(conversation_id, MessageRole.USER, content)
            assistant = self.store.add_message(conversation_id, MessageRole.ASSISTANT, status=MessageStatus.PENDING)
            if conversation.title == DEFAULT_TITLE and not history:
                self.store.set_conversation_meta(conversation_id, title=generate_title(content))

        handle = self.engine.start(
            spec,
            content,
            conversation_id=conversation_id,
            history=history,
            sink=self._sink(assistant.id),
        )
        handle.run.metadata["message_id"] = assistant.id
        task = asyncio.create_task(self._settle(conversation_id, assistant.id, handle))
        turn = ChatTurn(user_message=user_message, assistant_message_id=assistant.id, handle=handle, task=task)
        self._active[conversation_id] = turn
        logger.info(f"Conversation {conversation_id}: started {spec.pattern} run {handle.run.id}")
        return turn

    async def send(self, conversation_id: str, content: str, **kwargs) -> tuple[Message, WorkflowRun]:
        """Send a message and wait for the reply to settle.

        Returns:
            The settled assistant message and the finished run
        """
        turn = self.start(conversation_id, content, **kwargs)
        run = await turn.wait()
        return self.store.require_message(turn.assistant_message_id), run

    def cancel(self, conversation_id: str) -> bool:
        """Cancel the active generation, if any."""
        turn = self._active.get(conversation_id)
        if turn is None:
            return False
        turn.handle.cancel()
        return True

    async def shutdown(self) -> None:
        """Cancel every active generation and wait for their messages to settle."""
        turns = list(self._active.values())
        for turn in turns:
            turn.handle.cancel()
        await asyncio.gather(*(turn.task for turn in turns), return_exceptions=True)

    def _sink(self, message_id: str) -> StepSink:
        def on_reset(prefix: str) -> None:
            self.store.update_message(message_id, content=prefix)

        return StepSink(
            on_token=lambda delta: self.store.append_token(message_id, delta),
            on_tool_calls=lambda records: self.store.update_message(message_id, tool_calls=records),
            on_reset=on_reset,
        )

    async def _settle(self, conversation_id: str, message_id: str, handle: WorkflowHandle) -> WorkflowRun:
        try:
            run = await handle.result()
            message = self.store.get_message(message_id)
            if message is None or message.is_settled:
                logger.debug(f"Message {message_id} was removed or settled before its run finished")
                return run

            with self.store.batch():
                if run.output is not None and run.output != message.content:
                    self.store.update_message(message_id, content=run.output)
                if run.status == RunStatus.FAILED:
                    kind = run.error_kind
                    self.store.finalize(message_id, MessageError(kind=kind, message=user_message_for(kind)))
                else:
                    self.store.finalize(message_id)

            if run.status == RunStatus.CANCELLED:
                logger.info(f"Conversation {conversation_id}: run {run.id} cancelled, partial reply kept")
            return run
        finally:
            self._active.pop(conversation_id, None)
