from datetime import datetime, timedelta, timezone

from Tethra.crud.chat import create_conversation, delete_conversation, get_chat_history, list_conversations
from Tethra.schemas.chat import (
    ImagePart,
    StepStartPart,
    TextPart,
    assistant_parts,
    content_text,
    decode_content,
    encode_content,
    user_parts,
)

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def test_messages_come_back_oldest_first(storage):
    storage.ensure_conversation("c1")
    storage.append_message("c1", "assistant", assistant_parts("second"), T0 + timedelta(seconds=1))
    storage.append_message("c1", "user", user_parts("first"), T0)

    messages = storage.get_messages("c1")
    assert [m.role for m in messages] == ["user", "assistant"]
    assert content_text(messages[1].content) == "second"


def test_ensure_conversation_is_idempotent(storage):
    storage.ensure_conversation("c1")
    storage.ensure_conversation("c1")
    assert storage.get_title("c1") == "New Chat"


def test_special_characters_survive_storage(storage):
    text = 'line one\nline "two" with {braces} and \\backslash\\ and émoji 🚀'
    storage.ensure_conversation("c1")
    storage.append_message("c1", "assistant", assistant_parts(text), T0)
    [stored] = storage.get_messages("c1")
    assert stored.content[0] == StepStartPart()
    assert stored.content[1] == TextPart(text=text, state="done")


def test_explicit_message_id_is_kept(storage):
    storage.ensure_conversation("c1")
    assert storage.append_message("c1", "user", "hi", T0, message_id="m-1") == "m-1"
    assert storage.get_messages("c1")[0].id == "m-1"


def test_count_messages_by_role(storage):
    storage.ensure_conversation("c1")
    storage.append_message("c1", "user", user_parts("a"), T0)
    storage.append_message("c1", "assistant", assistant_parts("b"), T0 + timedelta(seconds=1))
    assert storage.count_messages("c1") == 2
    assert storage.count_messages("c1", role="user") == 1


def test_delete_conversation_cascades_messages(session_factory, storage):
    storage.ensure_conversation("c1")
    storage.append_message("c1", "user", user_parts("a"), T0)

    db_session = session_factory()
    try:
        assert delete_conversation(db_session, "c1") is True
        db_session.commit()
        assert get_chat_history(db_session, "c1") == []
        assert delete_conversation(db_session, "c1") is False
    finally:
        db_session.close()


def test_list_conversations_excludes_archived(session_factory):
    db_session = session_factory()
    try:
        create_conversation(db_session, "keep")
        archived = create_conversation(db_session, "old")
        archived.archived = True
        db_session.commit()
        assert {c.id for c in list_conversations(db_session)} == {"keep", "old"}
        assert [c.id for c in list_conversations(db_session, include_archived=False)] == ["keep"]
    finally:
        db_session.close()


def test_content_encoding_is_tagged_json():
    encoded = encode_content([TextPart(text="hi"), ImagePart(image="data:image/png;base64,AA==")])
    assert '"type":"text"' in encoded
    assert "state" not in encoded
    assert decode_content(encoded)[1] == ImagePart(image="data:image/png;base64,AA==")


def test_plain_string_content():
    assert decode_content(encode_content("just text")) == "just text"


def test_legacy_bare_text_rows_decode_as_text():
    assert decode_content("not json at all") == "not json at all"
