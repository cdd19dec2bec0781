# src/lsp_bridge/errors.py

"""Exception hierarchy shared by the protocol and bridge layers.

Every exception derives from `LspBridgeError` and carries a machine-readable
`kind` attribute. The HTTP layer uses `kind` to build error payloads, so a
caller can tell a configuration mistake from a dead analyzer without parsing
messages.
"""

from typing import Any, Dict, Optional


class LspBridgeError(Exception):
    """Base class for all errors raised by lsp_bridge."""

    kind = "internal"


# --- Configuration ---


class ConfigurationError(LspBridgeError):
    """Unknown backend kind, missing required backend field, or bad preset."""

    kind = "configuration"


# --- Transport ---


class TransportError(LspBridgeError, ConnectionError):
    """Spawn failure, socket connect failure, or stream I/O failure."""

    kind = "transport"


class TransportClosedError(TransportError):
    """Raised when writing to a transport handle that is already closed."""


class ConnectionClosedError(TransportError):
    """Raised to waiters whose request was pending when the connection closed."""


# --- Protocol ---


class ProtocolError(LspBridgeError):
    """The analyzer sent bytes that do not form a valid protocol message."""

    kind = "protocol"


class FramingError(ProtocolError):
    """Malformed frame header. Fatal for the connection that received it."""


class MalformedMessageError(ProtocolError):
    """A complete frame whose body is not a JSON object. The frame is dropped."""


# --- Preconditions ---


class PreconditionError(LspBridgeError):
    """An operation was attempted in a state that does not allow it."""

    kind = "precondition"


class SessionNotStartedError(PreconditionError):
    """Operation attempted before the connection or bridge session started."""


class SessionAlreadyRunningError(PreconditionError):
    """A bridge session is already running or being started."""


class DocumentNotOpenError(PreconditionError):
    """Change or close of a URI that has no open document record."""

    def __init__(self, uri: str):
        self.uri = uri
        super().__init__(f"Document {uri} is not open")


class DocumentAlreadyOpenError(PreconditionError):
    """Open of a URI that already has an open document record."""

    def __init__(self, uri: str):
        self.uri = uri
        super().__init__(f"Document {uri} is already open")


# --- Remote ---


class LspResponseError(LspBridgeError):
    """The analyzer answered a request with an error payload.

    Attributes:
        code (Any): The error code from the response. Defaults to "Unknown".
        message (str): The error message from the response. Defaults to
            "Unknown error".
        data (Any): Optional additional data provided with the error.
    """

    kind = "remote"

    def __init__(self, error_payload: Dict[str, Any], method: Optional[str] = None):
        self.code = error_payload.get("code", "Unknown")
        self.message = error_payload.get("message", "Unknown error")
        self.data = error_payload.get("data")
        self.method = method
        prefix = f"{method}: " if method else ""
        super().__init__(f"{prefix}LSP Error Code {self.code}: {self.message}")
