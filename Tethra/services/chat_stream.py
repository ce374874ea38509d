import asyncio
import enum
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import httpx

from Tethra.config import DEFAULT_TITLE
from Tethra.schemas.chat import (
    ConversationRetitled,
    StreamEnded,
    StreamStarted,
    StreamToken,
    assistant_parts,
    user_parts,
)
from Tethra.services.errors import (
    ConversationBusy,
    GatewayError,
    InvalidChatRequest,
    OrchestratorClosed,
    TransportDropped,
    UpstreamFatalError,
    error_text,
)
from Tethra.services.events import EventBus
from Tethra.services.model_router import ModelRouter, Route
from Tethra.services.providers import TokenStream
from Tethra.services.storage import ChatStorage
from Tethra.services.titles import retitle_conversation

logger = logging.getLogger(__name__)


class StreamState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_CREDENTIAL = "awaiting_credential"
    STREAMING = "streaming"
    PERSISTING = "persisting"
    DONE = "done"


# In-memory state of one provider round-trip; lives until its buffer is flushed as the assistant turn
@dataclass
class StreamSession:
    conversation_id: str
    message_id: str
    user_text: str
    model: Optional[str] = None
    state: StreamState = StreamState.IDLE
    buffer: list[str] = field(default_factory=list)
    route: Optional[Route] = None
    error: Optional[GatewayError] = None
    user_created_at: Optional[datetime] = None
    full_text: Optional[str] = None
    task: Optional[asyncio.Task] = None

    @property
    def text(self) -> str:
        return "".join(self.buffer)


@dataclass(frozen=True)
class SubmitResult:
    conversation_id: str
    message_id: str
    accepted: bool = True


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChatOrchestrator:
    """Drives chat requests: persist the user turn, stream the reply, persist the assistant turn.

    Each accepted request runs as its own task and is observable only through
    the event bus. At most one request per conversation is in flight; a second
    one is rejected with ConversationBusy. Every accepted request ends with
    exactly one `stream_ended` and, once its user turn is stored, exactly one
    persisted assistant message.
    """

    def __init__(
        self,
        storage: ChatStorage,
        router: ModelRouter,
        events: EventBus,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        auto_title: bool = False,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.storage = storage
        self.router = router
        self.events = events
        self.http_client = http_client
        self.auto_title = auto_title
        self._clock = clock
        self._active: dict[str, StreamSession] = {}
        self._closed = False

    # Ensures we have a conversation id
    @staticmethod
    def _generate_conversation_id(existing_conversation_id: Optional[str] = None) -> str:
        if existing_conversation_id:
            return existing_conversation_id
        return str(uuid.uuid4())

    def submit_chat(self, conversation_id: Optional[str], user_text: str, model: Optional[str] = None) -> SubmitResult:
        """Accept a chat request and start streaming it in the background.

        Raises a ChatRejected subclass when the request is refused; nothing is
        persisted in that case. Must be called from a running event loop.
        """
        if self._closed:
            raise OrchestratorClosed("chat orchestrator is shutting down")
        if conversation_id is not None and conversation_id.strip() == "":
            raise InvalidChatRequest("conversation_id cannot be empty string")
        if not isinstance(user_text, str) or not user_text.strip():
            raise InvalidChatRequest("Missing user message")

        conversation_id = self._generate_conversation_id(conversation_id)
        if conversation_id in self._active:
            raise ConversationBusy(conversation_id)

        session = StreamSession(
            conversation_id=conversation_id,
            message_id=str(uuid.uuid4()),
            user_text=user_text,
            model=(model or "").strip() or None,
        )
        self._active[conversation_id] = session
        session.task = asyncio.create_task(self._run(session), name=f"chat-stream:{conversation_id}")
        session.task.add_done_callback(self._task_done)
        logger.info("chat.accepted: conv=%s msg=%s model=%s", conversation_id, session.message_id, session.model)
        return SubmitResult(conversation_id=conversation_id, message_id=session.message_id)

    def session(self, conversation_id: str) -> Optional[StreamSession]:
        return self._active.get(conversation_id)

    def is_streaming(self, conversation_id: str) -> bool:
        return conversation_id in self._active

    async def wait(self, conversation_id: str) -> None:
        session = self._active.get(conversation_id)
        if session is not None and session.task is not None:
            await asyncio.gather(session.task, return_exceptions=True)

    async def drain(self) -> None:
        tasks = [s.task for s in list(self._active.values()) if s.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def aclose(self) -> None:
        """Stop accepting requests and cancel in-flight streams; each flushes its partial reply."""
        self._closed = True
        tasks = [s.task for s in list(self._active.values()) if s.task is not None and not s.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("chat.shutdown: cancelled=%d", len(tasks))
        # A task cancelled before its first step never ran its body; _finish records both turns
        for session in list(self._active.values()):
            session.error = TransportDropped("stream cancelled before the response completed")
            self._finish(session)

    def _task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("chat.stream.bg.task.error", exc_info=exc)

    async def _run(self, session: StreamSession) -> None:
        stream: Optional[TokenStream] = None
        t0 = time.perf_counter()
        try:
            session.state = StreamState.AWAITING_CREDENTIAL
            self._persist_user_turn(session)

            route = self.router.resolve(session.model)
            session.route = route
            self._record_model(session, route.model)
            if route.error is not None:
                session.error = route.error
                return

            stream = route.open_client(self.http_client).stream(route.upstream_model, session.user_text)
            session.state = StreamState.STREAMING
            self.events.publish(
                StreamStarted(conversation_id=session.conversation_id, message_id=session.message_id)
            )

            # Buffer and live feed are updated in the same step, so they never disagree
            async for token in stream:
                session.buffer.append(token)
                self.events.publish(StreamToken(conversation_id=session.conversation_id, token=token))
            session.error = stream.error

        except asyncio.CancelledError:
            session.error = TransportDropped("stream cancelled before the response completed")
            if stream is not None:
                await stream.aclose()
            raise
        except Exception as exc:
            logger.exception("chat.stream.error: conv=%s", session.conversation_id)
            session.error = UpstreamFatalError(f"chat stream failed: {exc}")
        finally:
            self._finish(session)
            logger.info(
                "stream.done: conv=%s chars=%d ms=%d error=%s",
                session.conversation_id,
                len(session.text),
                int((time.perf_counter() - t0) * 1000),
                type(session.error).__name__ if session.error else None,
            )

        if self.auto_title and session.error is None:
            await self._maybe_retitle(session)

    # Persist user message ASAP, before any network call
    def _persist_user_turn(self, session: StreamSession) -> None:
        created_at = self._clock()
        try:
            self.storage.ensure_conversation(session.conversation_id)
            self.storage.append_message(session.conversation_id, "user", user_parts(session.user_text), created_at)
            session.user_created_at = created_at
        except Exception:
            logger.exception("chat.persist.user.error: conv=%s", session.conversation_id)

    def _record_model(self, session: StreamSession, model: str) -> None:
        try:
            self.storage.update_conversation_model(session.conversation_id, model)
        except Exception:
            logger.warning("chat.model.update.error: conv=%s model=%s", session.conversation_id, model, exc_info=True)

    def _assistant_timestamp(self, session: StreamSession) -> datetime:
        now = self._clock()
        if session.user_created_at is not None and now <= session.user_created_at:
            return session.user_created_at + timedelta(microseconds=1)
        return now

    # Exactly once per session: write the assistant turn, emit stream_ended, release the conversation
    def _finish(self, session: StreamSession) -> None:
        session.state = StreamState.PERSISTING
        partial = session.text
        full_text = error_text(session.error, partial) if session.error is not None else partial
        session.full_text = full_text
        # An assistant turn is only written after its user turn; retry a failed user write once
        if session.user_created_at is None:
            self._persist_user_turn(session)
        if session.user_created_at is None:
            logger.error("chat.persist.assistant.skipped: conv=%s msg=%s user turn missing", session.conversation_id, session.message_id)
        else:
            try:
                self.storage.append_message(
                    session.conversation_id,
                    "assistant",
                    assistant_parts(full_text),
                    self._assistant_timestamp(session),
                    message_id=session.message_id,
                )
            except Exception:
                logger.exception("chat.persist.assistant.error: conv=%s msg=%s", session.conversation_id, session.message_id)

        session.state = StreamState.DONE
        if self._active.get(session.conversation_id) is session:
            del self._active[session.conversation_id]
        self.events.publish(
            StreamEnded(
                conversation_id=session.conversation_id,
                message_id=session.message_id,
                full_text=full_text,
                error=session.error.user_message() if session.error is not None else None,
            )
        )

    async def _maybe_retitle(self, session: StreamSession) -> None:
        try:
            if self.storage.get_title(session.conversation_id) != DEFAULT_TITLE:
                return
            if self.storage.count_messages(session.conversation_id, role="user") != 1:
                return
            title = await retitle_conversation(self.storage, session.conversation_id, session.route, self.http_client)
            if title:
                self.events.publish(ConversationRetitled(conversation_id=session.conversation_id, title=title))
        except Exception:
            logger.exception("chat.title.bg.error: conv=%s", session.conversation_id)
