# src/lsp_bridge/bridge/session.py

"""Single-session coordinator sitting between callers and one analyzer.

`SessionBridge` owns at most one running `SessionRecord` at a time. Starting
a session resolves a backend preset, builds the connection and document
session, routes diagnostics into a `DiagnosticsBuffer` and performs the
handshake. Lifecycle transitions are serialized with an `asyncio.Lock`; a
second `start` while one is running or in progress is rejected.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from lsp_bridge.bridge.diagnostics import DiagnosticsBuffer
from lsp_bridge.bridge.presets import DEFAULT_REGISTRY, BackendRegistry
from lsp_bridge.errors import SessionAlreadyRunningError, SessionNotStartedError
from lsp_bridge.protocol.connection import LspConnection
from lsp_bridge.protocol.documents import DocumentRecord, DocumentSession
from lsp_bridge.protocol.transport import TransportConfig

logger = logging.getLogger(__name__)

NOT_RUNNING_MESSAGE = "LSP server not running. Call /start first."
ALREADY_RUNNING_MESSAGE = "LSP server already running. Stop it first."

ConnectionFactory = Callable[[TransportConfig], LspConnection]


@dataclass
class SessionRecord:
    backend_kind: str
    connection: LspConnection
    documents: DocumentSession


class SessionBridge:
    """Flat call surface over one analyzer session.

    Attributes:
        registry (BackendRegistry): Presets used to resolve backend kinds.
        diagnostics (DiagnosticsBuffer): Latest diagnostics per URI for the
            running session. Cleared when the session stops.
    """

    def __init__(
        self,
        registry: BackendRegistry = DEFAULT_REGISTRY,
        connection_factory: ConnectionFactory = LspConnection,
    ):
        self.registry = registry
        self.diagnostics = DiagnosticsBuffer()
        self._connection_factory = connection_factory
        self._session: Optional[SessionRecord] = None
        self._lock: Optional[asyncio.Lock] = None

    def _lifecycle_lock(self) -> asyncio.Lock:
        # Created inside the running loop on first use.
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    @property
    def is_running(self) -> bool:
        return self._session is not None

    @property
    def backend_kind(self) -> Optional[str]:
        return self._session.backend_kind if self._session else None

    def _require_session(self) -> SessionRecord:
        if self._session is None:
            raise SessionNotStartedError(NOT_RUNNING_MESSAGE)
        return self._session

    # --- Lifecycle ---

    async def start(self, backend_kind: str, options: Dict[str, Any]) -> Dict[str, Any]:
        """Starts an analyzer for `backend_kind` and returns its InitializeResult.

        Args:
            backend_kind: A kind registered in `registry` (e.g. "typescript").
            options: Backend options. Must include `rootUri`; presets may
                require further fields (e.g. `serverPath`).

        Raises:
            SessionAlreadyRunningError: If a session is running or starting.
            ConfigurationError: If the backend cannot be resolved. Nothing is
                spawned in this case.
            TransportError: If the analyzer cannot be launched or reached.
            LspResponseError: If the analyzer rejects `initialize`.
        """
        if self._session is not None or self._lifecycle_lock().locked():
            raise SessionAlreadyRunningError(ALREADY_RUNNING_MESSAGE)

        async with self._lifecycle_lock():
            transport_config = self.registry.resolve(backend_kind, options)
            connection = self._connection_factory(transport_config)
            documents = DocumentSession(connection)
            connection.on_diagnostics(self.diagnostics.handle_notification)

            logger.info(f"Starting '{backend_kind}' session for {options['rootUri']}.")
            try:
                result = await connection.start(
                    options["rootUri"],
                    workspace_folders=options.get("workspaceFolders"),
                    initialization_options=options.get("initializationOptions"),
                )
            except BaseException:
                logger.error(f"Failed to start '{backend_kind}' session; discarding it.")
                connection.on_diagnostics(None)
                await connection.stop()
                self.diagnostics.clear()
                raise

            self._session = SessionRecord(backend_kind, connection, documents)
            logger.info(f"'{backend_kind}' session running.")
            return result

    async def stop(self) -> None:
        """Stops the running session, if any, and clears buffered diagnostics."""
        async with self._lifecycle_lock():
            session = self._session
            if session is None:
                return
            self._session = None
            logger.info(f"Stopping '{session.backend_kind}' session.")
            try:
                await session.connection.stop()
            finally:
                session.connection.on_diagnostics(None)
                session.documents.clear()
                self.diagnostics.clear()

    def status(self) -> Dict[str, Any]:
        session = self._session
        if session is None:
            return {
                "running": False,
                "backend": None,
                "capabilities": None,
                "connectionState": None,
                "openDocuments": [],
            }
        return {
            "running": True,
            "backend": session.backend_kind,
            "capabilities": session.connection.server_capabilities,
            "connectionState": session.connection.state.value,
            "openDocuments": session.documents.open_uris(),
        }

    # --- Documents ---

    async def open_document(self, uri: str, language_id: str, text: str) -> DocumentRecord:
        return await self._require_session().documents.open(uri, language_id, text)

    async def change_document(self, uri: str, text: str) -> DocumentRecord:
        return await self._require_session().documents.change(uri, text)

    async def close_document(self, uri: str) -> None:
        await self._require_session().documents.close(uri)

    # --- Features ---

    async def completion(self, uri: str, line: int, character: int) -> Any:
        return await self._require_session().connection.completion(uri, line, character)

    async def hover(self, uri: str, line: int, character: int) -> Any:
        return await self._require_session().connection.hover(uri, line, character)

    async def definition(self, uri: str, line: int, character: int) -> Any:
        return await self._require_session().connection.definition(uri, line, character)

    async def references(
        self, uri: str, line: int, character: int, include_declaration: bool = True
    ) -> Any:
        return await self._require_session().connection.references(
            uri, line, character, include_declaration=include_declaration
        )

    async def document_symbols(self, uri: str) -> Any:
        return await self._require_session().connection.document_symbols(uri)

    # --- Diagnostics ---

    def get_diagnostics(self, uri: Optional[str] = None) -> Any:
        """Returns all buffered diagnostics, or the list for one URI."""
        if uri is not None:
            return self.diagnostics.get(uri)
        return self.diagnostics.get_all()

    def clear_diagnostics(self) -> None:
        self.diagnostics.clear()
