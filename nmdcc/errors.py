from __future__ import annotations


class NmdcError(Exception):
    """Base class for nmdcc errors."""


class TransportError(NmdcError):
    """A socket could not be opened, written to, or was already closed."""


class ChatSendError(NmdcError):
    """A main-chat or private message could not be sent."""


class ProtocolError(NmdcError, ValueError):
    """Input from the hub or a peer did not have the expected shape."""
