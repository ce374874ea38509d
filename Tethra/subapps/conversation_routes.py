from typing import List

from fastapi import APIRouter, HTTPException, Request

from Tethra.crud.chat import (
    create_conversation,
    delete_conversation,
    get_chat_history,
    get_conversation,
    list_conversations,
    set_conversation_archived,
    update_conversation_title,
)
from Tethra.schemas.chat import (
    ConversationArchiveUpdate,
    ConversationCreate,
    ConversationOut,
    ConversationTitleUpdate,
    MessageOut,
    TitleGenerateRequest,
    decode_content,
)
from Tethra.services.titles import retitle_conversation

router = APIRouter()


def _conversation_out(conv) -> ConversationOut:
    return ConversationOut(
        id=conv.id,
        title=conv.title,
        created_at=conv.created_at.isoformat() if conv.created_at else None,
        archived=bool(conv.archived),
        model=conv.model,
    )


def _require(db_session, conversation_id: str):
    conv = get_conversation(db_session, conversation_id)
    if not conv:
        raise HTTPException(status_code=404, detail="conversation not found")
    return conv


@router.get("/conversations", response_model=List[ConversationOut])
def get_conversations(request: Request, include_archived: bool = True):
    db_session = request.app.state.session_factory()
    try:
        return [_conversation_out(c) for c in list_conversations(db_session, include_archived=include_archived)]
    finally:
        db_session.close()


@router.post("/conversations", status_code=201, response_model=ConversationOut)
def new_conversation(payload: ConversationCreate, request: Request):
    db_session = request.app.state.session_factory()
    try:
        conv = create_conversation(db_session, title=payload.title, model=payload.model)
        db_session.commit()
        return _conversation_out(conv)
    finally:
        db_session.close()


@router.get("/conversations/{conversation_id}", response_model=ConversationOut)
def get_one_conversation(conversation_id: str, request: Request):
    db_session = request.app.state.session_factory()
    try:
        return _conversation_out(_require(db_session, conversation_id))
    finally:
        db_session.close()


# Retrieve the full chat history for a conversation, oldest first
@router.get("/conversations/{conversation_id}/messages", response_model=List[MessageOut])
def get_conversation_messages(conversation_id: str, request: Request):
    db_session = request.app.state.session_factory()
    try:
        _require(db_session, conversation_id)
        return [
            MessageOut(
                id=m.id,
                conversation_id=m.conversation_id,
                role=m.role,
                content=decode_content(m.content),
                created_at=m.created_at.isoformat() if m.created_at else None,
            )
            for m in get_chat_history(db_session, conversation_id)
        ]
    finally:
        db_session.close()


@router.patch("/conversations/{conversation_id}/title", response_model=ConversationOut)
def rename_conversation(conversation_id: str, payload: ConversationTitleUpdate, request: Request):
    title = payload.title.strip()
    if not title:
        raise HTTPException(status_code=400, detail="title cannot be empty")
    db_session = request.app.state.session_factory()
    try:
        _require(db_session, conversation_id)
        conv = update_conversation_title(db_session, conversation_id, title)
        db_session.commit()
        return _conversation_out(conv)
    finally:
        db_session.close()


@router.patch("/conversations/{conversation_id}/archive", response_model=ConversationOut)
def archive_conversation(conversation_id: str, payload: ConversationArchiveUpdate, request: Request):
    db_session = request.app.state.session_factory()
    try:
        _require(db_session, conversation_id)
        conv = set_conversation_archived(db_session, conversation_id, payload.archived)
        db_session.commit()
        return _conversation_out(conv)
    finally:
        db_session.close()


# Deletes a conversation and all of its messages
@router.delete("/conversations/{conversation_id}", status_code=204)
def remove_conversation(conversation_id: str, request: Request):
    if request.app.state.orchestrator.is_streaming(conversation_id):
        raise HTTPException(status_code=409, detail="a reply is still streaming for this conversation")
    db_session = request.app.state.session_factory()
    try:
        if not delete_conversation(db_session, conversation_id):
            raise HTTPException(status_code=404, detail="conversation not found")
        db_session.commit()
    finally:
        db_session.close()


# Regenerates the title from the first user message
@router.post("/conversations/{conversation_id}/title/generate", response_model=ConversationOut)
async def generate_conversation_title(conversation_id: str, payload: TitleGenerateRequest, request: Request):
    state = request.app.state
    db_session = state.session_factory()
    try:
        conv = _require(db_session, conversation_id)
        model = payload.model or conv.model
    finally:
        db_session.close()

    route = state.router.resolve(model)
    if route.error is not None:
        raise HTTPException(status_code=400, detail=route.error.user_message())
    await retitle_conversation(state.storage, conversation_id, route, state.orchestrator.http_client)

    db_session = state.session_factory()
    try:
        return _conversation_out(_require(db_session, conversation_id))
    finally:
        db_session.close()
