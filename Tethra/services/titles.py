import logging
import re
from typing import Optional

import httpx
from openai import OpenAIError

from Tethra.config import DEFAULT_TITLE
from Tethra.schemas.chat import content_text
from Tethra.services.model_router import Route
from Tethra.services.openai_compatible_client import get_async_openai_compatible_client
from Tethra.services.storage import ChatStorage

logger = logging.getLogger(__name__)

TITLE_PROMPT = "Return a short, descriptive chat title (max 6 words). No quotes or trailing punctuation."
MAX_TITLE_CHARS = 60


def clean_title(raw: Optional[str]) -> str:
    if not raw:
        return DEFAULT_TITLE
    title = raw.strip().strip("\"'.:")
    title = re.sub(r"^(Title:|title:)\s*", "", title, flags=re.IGNORECASE).strip()
    title = title.rstrip(".")
    if len(title) > MAX_TITLE_CHARS:
        title = title[: MAX_TITLE_CHARS - 3] + "..."
    return title or DEFAULT_TITLE


# Generate a short conversation title from the first user message
async def generate_chat_title(
    first_user_message: str,
    route: Route,
    http_client: Optional[httpx.AsyncClient] = None,
) -> str:
    if route.error is not None:
        logger.info("chat.title.skipped: provider=%s reason=%s", route.kind.value, route.error)
        return DEFAULT_TITLE
    client = get_async_openai_compatible_client(route.kind, route.credential, base_url=route.base_url, http_client=http_client)
    try:
        response = await client.chat.completions.create(
            model=route.upstream_model,
            messages=[
                {"role": "system", "content": TITLE_PROMPT},
                {"role": "user", "content": first_user_message[:500]},
            ],
        )
        content = response.choices[0].message.content if response.choices else None
        return clean_title(content)
    except (OpenAIError, httpx.HTTPError):
        logger.exception("chat.title.error: provider=%s", route.kind.value)
        return DEFAULT_TITLE
    finally:
        if http_client is None:
            await client.close()


# Title a conversation from its first user turn and persist the result
async def retitle_conversation(
    storage: ChatStorage,
    conversation_id: str,
    route: Route,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Optional[str]:
    first_user = next((m for m in storage.get_messages(conversation_id) if m.role == "user"), None)
    if first_user is None:
        return None
    title = await generate_chat_title(content_text(first_user.content), route, http_client)
    storage.update_conversation_title(conversation_id, title)
    logger.info("chat.title.updated: conv=%s title=%s", conversation_id, title)
    return title
