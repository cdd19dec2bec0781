# src/lsp_bridge/protocol/documents.py

"""Tracks open text documents and keeps the analyzer's view in sync.

Each open URI has a `DocumentRecord` whose version starts at 1 and grows by
exactly one per accepted change. Changes always carry the full new text.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from lsp_bridge.errors import (
    ConnectionClosedError,
    DocumentAlreadyOpenError,
    DocumentNotOpenError,
    SessionNotStartedError,
)
from lsp_bridge.protocol.connection import ConnectionState, LspConnection

logger = logging.getLogger(__name__)


@dataclass
class DocumentRecord:
    uri: str
    language_id: str
    version: int
    text: str


class DocumentSession:
    """Open/change/close bookkeeping layered on an `LspConnection`.

    Records are only committed after the matching notification has been
    written, so a failed write leaves the previous record untouched.
    """

    def __init__(self, connection: LspConnection):
        self.connection = connection
        self._records: Dict[str, DocumentRecord] = {}

    def _require_ready(self) -> None:
        state = self.connection.state
        if state is ConnectionState.CLOSED:
            raise ConnectionClosedError("Connection is closed.")
        if state is not ConnectionState.READY:
            raise SessionNotStartedError("Client not started.")

    def _require_open(self, uri: str) -> DocumentRecord:
        record = self._records.get(uri)
        if record is None:
            raise DocumentNotOpenError(uri)
        return record

    async def open(self, uri: str, language_id: str, text: str) -> DocumentRecord:
        """Opens a document at version 1 and sends `textDocument/didOpen`.

        Raises:
            SessionNotStartedError: If the connection is not ready.
            DocumentAlreadyOpenError: If `uri` is already open.
        """
        self._require_ready()
        if uri in self._records:
            raise DocumentAlreadyOpenError(uri)
        record = DocumentRecord(uri=uri, language_id=language_id, version=1, text=text)
        await self.connection.send_notification(
            "textDocument/didOpen",
            {
                "textDocument": {
                    "uri": uri,
                    "languageId": language_id,
                    "version": record.version,
                    "text": text,
                }
            },
        )
        self._records[uri] = record
        logger.debug(f"Opened document {uri} (languageId={language_id}).")
        return record

    async def change(self, uri: str, text: str) -> DocumentRecord:
        """Replaces the full text of an open document and bumps its version.

        Raises:
            SessionNotStartedError: If the connection is not ready.
            DocumentNotOpenError: If `uri` is not open.
        """
        self._require_ready()
        current = self._require_open(uri)
        new_version = current.version + 1
        await self.connection.send_notification(
            "textDocument/didChange",
            {
                "textDocument": {"uri": uri, "version": new_version},
                "contentChanges": [{"text": text}],
            },
        )
        record = DocumentRecord(uri=uri, language_id=current.language_id, version=new_version, text=text)
        self._records[uri] = record
        logger.debug(f"Changed document {uri} to version {new_version}.")
        return record

    async def close(self, uri: str) -> None:
        """Sends `textDocument/didClose` and forgets the record.

        Raises:
            SessionNotStartedError: If the connection is not ready.
            DocumentNotOpenError: If `uri` is not open.
        """
        self._require_ready()
        self._require_open(uri)
        await self.connection.send_notification(
            "textDocument/didClose", {"textDocument": {"uri": uri}}
        )
        del self._records[uri]
        logger.debug(f"Closed document {uri}.")

    def get(self, uri: str) -> Optional[DocumentRecord]:
        return self._records.get(uri)

    def is_open(self, uri: str) -> bool:
        return uri in self._records

    def open_uris(self) -> List[str]:
        return list(self._records)

    def clear(self) -> None:
        """Drops every record without notifying the analyzer (session teardown)."""
        if self._records:
            logger.debug(f"Discarding {len(self._records)} open document record(s).")
        self._records.clear()
