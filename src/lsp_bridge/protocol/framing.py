# src/lsp_bridge/protocol/framing.py

"""Content-Length framing for JSON-RPC messages.

Each frame is an ASCII header block terminated by `\\r\\n\\r\\n` followed by a
UTF-8 JSON payload whose byte length is given by the `Content-Length` header.
The codec is independent of any stream so that stdio and socket transports
can share it.
"""

import json
import logging
from typing import Any, Dict, Optional

from lsp_bridge.errors import FramingError, MalformedMessageError

logger = logging.getLogger(__name__)

# --- Constants ---
CONTENT_LENGTH_HEADER = b"Content-Length: "
HEADER_SEPARATOR = b"\r\n\r\n"
MAX_HEADER_SIZE = 4096


def encode_message(message: Dict[str, Any]) -> bytes:
    """Serializes a message into a single frame (header + UTF-8 JSON body)."""
    json_body = json.dumps(message, ensure_ascii=False).encode("utf-8")
    return (
        CONTENT_LENGTH_HEADER
        + str(len(json_body)).encode("ascii")
        + HEADER_SEPARATOR
        + json_body
    )


def _parse_content_length(header_bytes: bytes) -> int:
    try:
        header_str = header_bytes.decode("ascii")
    except UnicodeDecodeError as e:
        raise FramingError(f"Non-ASCII bytes in frame header: {header_bytes!r}") from e

    for h_line in header_str.split("\r\n"):
        name, sep, value = h_line.partition(":")
        if not sep:
            raise FramingError(f"Malformed header line: {h_line!r}")
        if name.strip().lower() != "content-length":
            continue
        try:
            content_length = int(value.strip())
        except ValueError as e:
            raise FramingError(f"Invalid Content-Length value: {h_line!r}") from e
        if content_length < 0:
            raise FramingError(f"Negative Content-Length value: {h_line!r}")
        return content_length

    raise FramingError(f"Content-Length header not found in received headers: {header_str!r}")


class FrameDecoder:
    """Incremental decoder that turns a byte stream into messages.

    Bytes are appended with `feed`. `next_message` returns one complete
    message at a time, or None when more bytes are needed. Bytes beyond the
    returned frame stay buffered for the next call.
    """

    def __init__(self):
        self._buffer = bytearray()
        self._content_length: Optional[int] = None

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> None:
        self._buffer.extend(data)

    def next_message(self) -> Optional[Dict[str, Any]]:
        """Returns the next complete message, or None if incomplete.

        Raises:
            FramingError: The header is malformed. The decoder cannot recover
                its position in the stream after this.
            MalformedMessageError: The frame was complete but its body is not a
                JSON object. The frame is consumed, so decoding can continue.
        """
        if self._content_length is None:
            separator_index = self._buffer.find(HEADER_SEPARATOR)
            if separator_index == -1:
                if len(self._buffer) > MAX_HEADER_SIZE:
                    raise FramingError("Excessively long frame header received.")
                return None
            header_bytes = bytes(self._buffer[:separator_index])
            self._content_length = _parse_content_length(header_bytes)
            del self._buffer[: separator_index + len(HEADER_SEPARATOR)]

        if len(self._buffer) < self._content_length:
            return None

        body = bytes(self._buffer[: self._content_length])
        del self._buffer[: self._content_length]
        self._content_length = None

        try:
            message = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedMessageError(f"Failed to decode frame body: {e}. Body: {body!r}") from e
        if not isinstance(message, dict):
            raise MalformedMessageError(f"Frame body is not a JSON object: {body!r}")
        return message
