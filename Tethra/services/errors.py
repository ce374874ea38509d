from __future__ import annotations

from typing import Optional

ERROR_MARKER = "[error] "


class GatewayError(Exception):
    """Base class for every failure a chat stream can terminate with."""

    # False only for frame-level problems the decode loop skips over
    terminal = True

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def user_message(self) -> str:
        return self.message


# Raised before any network I/O when the selected provider has no usable credential
class CredentialMissing(GatewayError):
    def __init__(self, provider: str, reason: Optional[str] = None):
        self.provider = provider
        super().__init__(reason or f"credential missing for provider {provider}")


class UpstreamHttpError(GatewayError):
    def __init__(self, provider: str, status: int, body: str):
        self.provider = provider
        self.status = status
        self.body = body
        message = f"{provider} API error (HTTP {status})"
        super().__init__(f"{message}: {body}" if body else message)


# A frame that could not be decoded; logged and skipped, never ends the stream
class UpstreamProtocolError(GatewayError):
    terminal = False


# An explicit upstream error payload, a timeout, or an unrecoverable transport failure
class UpstreamFatalError(GatewayError):
    pass


# The local daemon could not be reached at all; the message is an actionable hint
class ServiceUnreachable(UpstreamFatalError):
    pass


# The connection closed before the provider signalled the end of its output
class TransportDropped(GatewayError):
    def __init__(self, message: str = "connection closed before the response completed"):
        super().__init__(message)


# Raised by submit_chat when a request is refused outright (nothing is persisted)
class ChatRejected(Exception):
    status_code = 400


class InvalidChatRequest(ChatRejected):
    pass


class ConversationBusy(ChatRejected):
    status_code = 409

    def __init__(self, conversation_id: str):
        super().__init__(f"a reply is already streaming for conversation {conversation_id}")
        self.conversation_id = conversation_id


class OrchestratorClosed(ChatRejected):
    status_code = 503


def error_text(err: GatewayError, partial: str = "") -> str:
    """Assistant-turn text for a failed stream: accumulated output plus a trailing error marker."""
    marker = f"{ERROR_MARKER}{err.user_message()}"
    if partial:
        return f"{partial}\n\n{marker}"
    return marker
