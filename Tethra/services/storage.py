from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, Optional

from sqlalchemy.orm import Session, sessionmaker

from Tethra.crud.chat import (
    count_messages,
    create_chat_message,
    get_chat_history,
    get_conversation,
    get_or_create_conversation,
    update_conversation_model as _update_conversation_model,
    update_conversation_title as _update_conversation_title,
)
from Tethra.schemas.chat import MessageContent, decode_content, encode_content

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredMessage:
    id: str
    conversation_id: str
    role: str
    content: MessageContent
    created_at: Optional[datetime]


# Storage collaborator used by the chat orchestrator.
# Every call runs in its own session so an in-flight stream can't be affected by request lifecycles;
# writes are serialized because several chat tasks may persist at the same time.
class ChatStorage:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._write_lock = threading.Lock()

    @contextmanager
    def _session(self, write: bool = False) -> Iterator[Session]:
        session = self._session_factory()
        try:
            if write:
                with self._write_lock:
                    yield session
                    session.commit()
            else:
                yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def ensure_conversation(self, conversation_id: str) -> None:
        with self._session(write=True) as session:
            get_or_create_conversation(session, conversation_id)

    def append_message(
        self,
        conversation_id: str,
        role: str,
        content: MessageContent,
        timestamp: datetime,
        message_id: Optional[str] = None,
    ) -> str:
        encoded = encode_content(content)
        with self._session(write=True) as session:
            msg = create_chat_message(session, conversation_id, role, encoded, created_at=timestamp, message_id=message_id)
            stored_id = msg.id
        logger.debug("storage.message.saved: conv=%s role=%s id=%s", conversation_id, role, stored_id)
        return stored_id

    def update_conversation_model(self, conversation_id: str, model: str) -> None:
        with self._session(write=True) as session:
            _update_conversation_model(session, conversation_id, model)

    def update_conversation_title(self, conversation_id: str, title: str) -> None:
        with self._session(write=True) as session:
            _update_conversation_title(session, conversation_id, title)

    def get_messages(self, conversation_id: str) -> list[StoredMessage]:
        with self._session() as session:
            return [
                StoredMessage(
                    id=m.id,
                    conversation_id=m.conversation_id,
                    role=m.role,
                    content=decode_content(m.content),
                    created_at=m.created_at,
                )
                for m in get_chat_history(session, conversation_id)
            ]

    def get_title(self, conversation_id: str) -> Optional[str]:
        with self._session() as session:
            conv = get_conversation(session, conversation_id)
            return conv.title if conv else None

    def count_messages(self, conversation_id: str, role: Optional[str] = None) -> int:
        with self._session() as session:
            return count_messages(session, conversation_id, role)
