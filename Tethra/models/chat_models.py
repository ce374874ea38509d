from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, String, Text, func
from sqlalchemy.orm import relationship

from Tethra.database import Base


# Stores conversation-level metadata (title, archive flag, last-used model)
class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(String(64), primary_key=True)
    title = Column(String(255), nullable=False, default="New Chat")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    archived = Column(Boolean, nullable=False, default=False)
    model = Column(String(255), nullable=True)

    messages = relationship(
        "ChatMessage",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ChatMessage.created_at",
    )


# Stores individual chat turns; content is the JSON-encoded MessageContent
class ChatMessage(Base):
    __tablename__ = "messages"

    __table_args__ = (
        Index("idx_messages_conversation_id_created_at", "conversation_id", "created_at"),
    )

    id = Column(String(64), primary_key=True)
    conversation_id = Column(String(64), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    role = Column(String(16), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    conversation = relationship("Conversation", back_populates="messages")
