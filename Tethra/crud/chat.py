import uuid
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from Tethra.config import DEFAULT_TITLE
from Tethra.models.chat_models import ChatMessage, Conversation


# Create a new conversation
def create_conversation(session, conversation_id=None, title=None, model=None):
    conv = Conversation(
        id = conversation_id or str(uuid.uuid4()),
        title = title or DEFAULT_TITLE,
        created_at = datetime.now(timezone.utc),
        archived = False,
        model = model,
    )
    session.add(conv)
    session.flush()
    return conv


def get_conversation(session, conversation_id):
    return session.get(Conversation, conversation_id)


# Get existing conversation or create a new one
def get_or_create_conversation(session, conversation_id):
    conv = get_conversation(session, conversation_id)
    if conv:
        return conv
    # Use a nested transaction so an IntegrityError here doesn't blow away the caller's transaction.
    try:
        with session.begin_nested():
            conv = create_conversation(session, conversation_id)
    except IntegrityError:
        # Another request created it concurrently.
        return get_conversation(session, conversation_id)
    return conv


# List conversations, newest first
def list_conversations(session, include_archived=True):
    query = session.query(Conversation)
    if not include_archived:
        query = query.filter(Conversation.archived.is_(False))
    return query.order_by(Conversation.created_at.desc()).all()


# Create a new chat message
def create_chat_message(session, conversation_id, role, content, created_at=None, message_id=None):
    msg = ChatMessage(
        id = message_id or str(uuid.uuid4()),
        conversation_id = conversation_id,
        role = role,
        content = content,
        created_at = created_at or datetime.now(timezone.utc),
    )
    session.add(msg)
    session.flush()
    return msg


# Get chat history for a conversation, oldest first
def get_chat_history(session, conversation_id):
    return (
        session.query(ChatMessage)
        .filter_by(conversation_id=conversation_id)
        .order_by(ChatMessage.created_at, ChatMessage.id)
        .all()
    )


def count_messages(session, conversation_id, role=None):
    query = session.query(ChatMessage).filter_by(conversation_id=conversation_id)
    if role:
        query = query.filter_by(role=role)
    return query.count()


# Update the title of a conversation
def update_conversation_title(session, conversation_id, title):
    conv = get_conversation(session, conversation_id)
    if not conv:
        return None
    conv.title = title
    session.flush()
    return conv


def update_conversation_model(session, conversation_id, model):
    conv = get_conversation(session, conversation_id)
    if not conv:
        return None
    conv.model = model
    session.flush()
    return conv


def set_conversation_archived(session, conversation_id, archived):
    conv = get_conversation(session, conversation_id)
    if not conv:
        return None
    conv.archived = bool(archived)
    session.flush()
    return conv


# Delete a conversation; its messages go with it
def delete_conversation(session, conversation_id):
    conv = get_conversation(session, conversation_id)
    if not conv:
        return False
    session.delete(conv)
    session.flush()
    return True
