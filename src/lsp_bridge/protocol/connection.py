# src/lsp_bridge/protocol/connection.py

"""Provides an asynchronous JSON-RPC connection to a language analyzer.

This module defines `LspConnection`, which owns one transport and one frame
decoder, correlates requests with responses, dispatches notifications, answers
the handful of server-initiated requests analyzers use during dynamic
negotiation, and drives the initialize / initialized / shutdown / exit
handshake. Feature requests (completion, hover, definition, references,
document symbols) are plain round trips whose results are passed through
untouched.
"""

import asyncio
import copy
import enum
import itertools
import logging
import os
from typing import Any, Awaitable, Callable, Dict, List, Optional

from lsp_bridge.config.loader import get_setting
from lsp_bridge.errors import (
    ConnectionClosedError,
    FramingError,
    LspResponseError,
    MalformedMessageError,
    PreconditionError,
    SessionNotStartedError,
    TransportError,
)
from lsp_bridge.protocol.framing import FrameDecoder, encode_message
from lsp_bridge.protocol.transport import STDIO_MODE, Transport, TransportConfig, open_transport

logger = logging.getLogger(__name__)

# --- Constants ---
DEFAULT_SHUTDOWN_TIMEOUT = 5.0
DEFAULT_EXIT_DELAY = 0.1
METHOD_NOT_FOUND = -32601

DiagnosticsHandler = Callable[[Dict[str, Any]], None]
NotificationHandler = Callable[[Dict[str, Any]], None]
TransportFactory = Callable[[TransportConfig], Awaitable[Transport]]

DEFAULT_CLIENT_CAPABILITIES: Dict[str, Any] = {
    "textDocument": {
        "synchronization": {
            "dynamicRegistration": True,
            "willSave": True,
            "willSaveWaitUntil": True,
            "didSave": True,
        },
        "completion": {
            "dynamicRegistration": True,
            "completionItem": {
                "snippetSupport": True,
                "commitCharactersSupport": True,
                "documentationFormat": ["markdown", "plaintext"],
                "deprecatedSupport": True,
                "preselectSupport": True,
            },
            "contextSupport": True,
        },
        "hover": {
            "dynamicRegistration": True,
            "contentFormat": ["markdown", "plaintext"],
        },
        "definition": {"dynamicRegistration": True, "linkSupport": True},
        "references": {"dynamicRegistration": True},
        "documentSymbol": {
            "dynamicRegistration": True,
            "hierarchicalDocumentSymbolSupport": True,
        },
        "publishDiagnostics": {
            "relatedInformation": True,
            "tagSupport": {"valueSet": [1, 2]},
            "versionSupport": True,
        },
    },
    "workspace": {
        "workspaceFolders": True,
        "configuration": True,
    },
}


class ConnectionState(enum.Enum):
    UNSTARTED = "unstarted"
    HANDSHAKING = "handshaking"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    CLOSED = "closed"


def _position_params(uri: str, line: int, character: int) -> Dict[str, Any]:
    return {
        "textDocument": {"uri": uri},
        "position": {"line": line, "character": character},
    }


class LspConnection:
    """Manages one protocol session with an analyzer.

    Handles transport startup, request/response correlation, notification
    dispatch, and the lifecycle handshake using asyncio. A single reader task
    pulls frames off the transport; public operations only suspend while
    awaiting their own response.

    Attributes:
        config (TransportConfig): How to launch and reach the analyzer.
        state (ConnectionState): Current lifecycle state.
        transport (Optional[Transport]): The open transport. Set by `start()`.
    """

    def __init__(
        self,
        config: TransportConfig,
        transport_factory: TransportFactory = open_transport,
        shutdown_timeout: Optional[float] = None,
        exit_delay: Optional[float] = None,
    ):
        """Initializes the connection without starting anything.

        Args:
            config (TransportConfig): Launch description for the analyzer.
            transport_factory (TransportFactory): Coroutine function that
                opens a transport for `config`. Defaults to `open_transport`.
            shutdown_timeout (Optional[float]): Upper bound in seconds for the
                best-effort shutdown request sent by `stop()`.
            exit_delay (Optional[float]): Pause in seconds between the shutdown
                response and the exit notification.
        """
        self.config = config
        self.state = ConnectionState.UNSTARTED
        self.transport: Optional[Transport] = None
        self._transport_factory = transport_factory
        self.shutdown_timeout = (
            shutdown_timeout
            if shutdown_timeout is not None
            else float(get_setting("connection", "shutdown_timeout", DEFAULT_SHUTDOWN_TIMEOUT))
        )
        self.exit_delay = (
            exit_delay
            if exit_delay is not None
            else float(get_setting("connection", "exit_delay", DEFAULT_EXIT_DELAY))
        )
        self._decoder = FrameDecoder()
        self._id_counter = itertools.count(1)
        self._pending_requests: Dict[Any, asyncio.Future] = {}
        self._pending_methods: Dict[Any, str] = {}
        self._notification_handlers: Dict[str, NotificationHandler] = {}
        self._diagnostics_handler: Optional[DiagnosticsHandler] = None
        self._server_request_handlers: Dict[str, Callable[[Any], Any]] = {
            "workspace/configuration": self._answer_configuration,
            "client/registerCapability": self._accept_request,
            "client/unregisterCapability": self._accept_request,
            "window/workDoneProgress/create": self._accept_request,
        }
        self._reader_task: Optional[asyncio.Task] = None
        self._server_capabilities: Optional[Dict[str, Any]] = None
        self._stopping = False

    # --- Properties ---

    @property
    def is_ready(self) -> bool:
        return self.state is ConnectionState.READY

    @property
    def server_capabilities(self) -> Optional[Dict[str, Any]]:
        """The InitializeResult captured by the handshake, or None before it."""
        if self._server_capabilities is None:
            return None
        return copy.deepcopy(self._server_capabilities)

    @property
    def pending_request_count(self) -> int:
        return len(self._pending_requests)

    # --- Lifecycle ---

    async def start(
        self,
        root_uri: str,
        capabilities: Optional[Dict[str, Any]] = None,
        workspace_folders: Optional[List[Dict[str, str]]] = None,
        initialization_options: Optional[Any] = None,
    ) -> Dict[str, Any]:
        """Opens the transport and performs the initialize handshake.

        Sends `initialize` advertising `capabilities`, waits for the response
        without any deadline, stores it as the server capabilities snapshot,
        then sends `initialized`.

        Args:
            root_uri (str): Workspace root URI.
            capabilities (Optional[Dict[str, Any]]): Client capabilities to
                advertise. Defaults to `DEFAULT_CLIENT_CAPABILITIES`.
            workspace_folders (Optional[List[Dict[str, str]]]): Workspace
                folders. Defaults to a single folder named "workspace" at
                `root_uri`.
            initialization_options (Optional[Any]): Analyzer-specific options.

        Returns:
            Dict[str, Any]: The InitializeResult returned by the analyzer.

        Raises:
            TransportError: If the transport cannot be opened or fails during
                the handshake.
            LspResponseError: If the analyzer rejects `initialize`.
            PreconditionError: If the connection was already started.
        """
        if self.state is not ConnectionState.UNSTARTED:
            raise PreconditionError(
                f"Connection cannot be started in state {self.state.value}."
            )
        self.state = ConnectionState.HANDSHAKING

        try:
            self.transport = await self._transport_factory(self.config)
        except BaseException:
            self.state = ConnectionState.CLOSED
            raise

        self._reader_task = asyncio.create_task(self._message_reader_loop(), name="lsp_message_reader")

        init_params: Dict[str, Any] = {
            "processId": os.getpid(),
            "rootUri": root_uri,
            "capabilities": capabilities if capabilities is not None else DEFAULT_CLIENT_CAPABILITIES,
            "workspaceFolders": workspace_folders or [{"uri": root_uri, "name": "workspace"}],
        }
        if initialization_options is not None:
            init_params["initializationOptions"] = initialization_options

        try:
            logger.info("Sending LSP initialize request.")
            result = await self.send_request("initialize", init_params)
            self._server_capabilities = copy.deepcopy(result) if result is not None else {}
            await self.send_notification("initialized", {})
        except BaseException as e:
            logger.error(f"LSP initialization failed: {e}")
            await self._teardown(f"initialization failed: {e}")
            raise

        self.state = ConnectionState.READY
        logger.info("LSP handshake complete.")
        return copy.deepcopy(self._server_capabilities)

    async def stop(self) -> None:
        """Shuts the session down. Idempotent.

        If the connection is ready, sends `shutdown` and waits for its
        response (bounded by `shutdown_timeout`, errors logged and ignored).
        Stdio analyzers then receive `exit`. Socket analyzers are expected to
        close the connection themselves after `shutdown`, so `exit` is
        skipped for them. Finally the transport is closed and any request
        still pending is rejected.
        """
        if self.state in (ConnectionState.UNSTARTED, ConnectionState.CLOSED) or self._stopping:
            if self.state is ConnectionState.UNSTARTED:
                self.state = ConnectionState.CLOSED
            return
        self._stopping = True

        if self.state is ConnectionState.READY:
            self.state = ConnectionState.SHUTTING_DOWN
            logger.info("Sending LSP shutdown request.")
            try:
                await self.send_request("shutdown", None, timeout=self.shutdown_timeout)
                logger.info("LSP shutdown request acknowledged by analyzer.")
            except (TransportError, LspResponseError, asyncio.TimeoutError) as e:
                logger.warning(f"Error during LSP shutdown request (proceeding to close): {e}")

            await asyncio.sleep(self.exit_delay)

            if self.config.mode == STDIO_MODE:
                logger.info("Sending LSP exit notification.")
                try:
                    await self.send_notification("exit")
                except TransportError as e:
                    logger.warning(
                        f"Connection error during LSP exit notification "
                        f"(may be expected if analyzer stopped quickly): {e}"
                    )
            else:
                logger.debug("Skipping exit notification for socket transport.")

        await self._teardown("connection stopped")
        logger.info("LSP connection closed.")

    async def _teardown(self, reason: str) -> None:
        self._stopping = True
        self._mark_closed(reason)
        if self.transport is not None:
            await self.transport.close()
        reader_task = self._reader_task
        if reader_task and not reader_task.done() and reader_task is not asyncio.current_task():
            reader_task.cancel()
            await asyncio.gather(reader_task, return_exceptions=True)

    def _mark_closed(self, reason: str) -> None:
        """Moves to CLOSED and rejects every pending request."""
        if self.state is not ConnectionState.CLOSED:
            logger.info(f"LSP connection closing: {reason}")
        self.state = ConnectionState.CLOSED
        for req_id, future in list(self._pending_requests.items()):
            if not future.done():
                method = self._pending_methods.get(req_id, "?")
                future.set_exception(
                    ConnectionClosedError(
                        f"Connection closed while request {req_id} ({method}) was pending: {reason}"
                    )
                )
        self._pending_requests.clear()
        self._pending_methods.clear()

    # --- Reading ---

    async def _message_reader_loop(self) -> None:
        """Continuously reads frames from the transport and dispatches them.

        The loop ends on end of stream, on a transport error, or on a fatal
        framing error. Frames with an undecodable body, and messages whose
        handling raises, are logged and skipped. When the loop ends the
        connection is marked closed and pending requests are rejected, even
        during `stop()`. Outside `stop()` the transport is closed as well.
        """
        logger.debug("Starting LSP message reader loop.")
        reason = "analyzer closed the stream"
        try:
            while True:
                chunk = await self.transport.read()
                if not chunk:
                    break
                self._decoder.feed(chunk)
                while True:
                    try:
                        message = self._decoder.next_message()
                    except MalformedMessageError as e:
                        logger.error(f"Dropping malformed message: {e}")
                        continue
                    if message is None:
                        break
                    try:
                        await self._dispatch(message)
                    except Exception:
                        logger.exception(f"Error dispatching message from analyzer: {message!r}")
        except asyncio.CancelledError:
            logger.debug("LSP message reader loop cancelled.")
            raise
        except FramingError as e:
            reason = f"framing error: {e}"
            logger.error(f"Fatal framing error from analyzer: {e}")
        except TransportError as e:
            reason = f"transport error: {e}"
            logger.error(f"Transport error in reader loop: {e}")
        finally:
            logger.debug("LSP message reader loop finished.")

        self._mark_closed(reason)
        if not self._stopping:
            await self.transport.close()

    async def _dispatch(self, message: Dict[str, Any]) -> None:
        msg_id = message.get("id")
        msg_method = message.get("method")

        if msg_method is None and ("result" in message or "error" in message):
            if isinstance(msg_id, bool) or not isinstance(msg_id, (int, str)):
                logger.warning(f"Received response with invalid ID {msg_id!r}. Dropping.")
                return
            self._handle_response(msg_id, message)
        elif msg_method is not None and msg_id is None:
            self._handle_notification(msg_method, message.get("params"))
        elif msg_method is not None:
            await self._handle_server_request(msg_id, msg_method, message.get("params"))
        else:
            logger.warning(f"Received message with unknown structure: {message}")

    def _handle_response(self, msg_id: Any, message: Dict[str, Any]) -> None:
        future = self._pending_requests.pop(msg_id, None)
        method = self._pending_methods.pop(msg_id, None)
        if future is None:
            logger.warning(f"Received response for ID {msg_id!r}, but it was not pending. Dropping.")
            return
        if future.done():
            logger.debug(f"Response for ID {msg_id} arrived after its waiter gave up.")
            return
        if "error" in message:
            error_payload = message["error"] if isinstance(message["error"], dict) else {}
            logger.debug(f"Received error response for ID {msg_id}")
            future.set_exception(LspResponseError(error_payload, method))
        else:
            logger.debug(f"Received result response for ID {msg_id}")
            future.set_result(message.get("result"))

    def _handle_notification(self, method: str, params: Any) -> None:
        logger.debug(f"Received notification: {method}")
        if method == "textDocument/publishDiagnostics":
            handler = self._diagnostics_handler
        else:
            handler = self._notification_handlers.get(method)
        if handler is None:
            logger.debug(f"Ignoring unhandled notification: {method}")
            return
        try:
            handler(params if params is not None else {})
        except Exception:
            logger.exception(f"Notification handler for {method} raised.")

    async def _handle_server_request(self, msg_id: Any, method: str, params: Any) -> None:
        handler = self._server_request_handlers.get(method)
        if handler is None:
            logger.warning(f"Received unsupported request from analyzer (Method: {method}, ID: {msg_id}).")
            response = {
                "jsonrpc": "2.0",
                "id": msg_id,
                "error": {"code": METHOD_NOT_FOUND, "message": f"Unhandled method {method}"},
            }
        else:
            logger.debug(f"Answering analyzer request {method} (ID: {msg_id}).")
            response = {"jsonrpc": "2.0", "id": msg_id, "result": handler(params)}
        try:
            await self._write_message(response)
        except TransportError as e:
            logger.warning(f"Could not answer analyzer request {method}: {e}")

    @staticmethod
    def _answer_configuration(params: Any) -> List[Dict[str, Any]]:
        items = params.get("items") if isinstance(params, dict) else None
        if not isinstance(items, list):
            return []
        return [{} for _ in items]

    @staticmethod
    def _accept_request(params: Any) -> None:
        return None

    # --- Writing ---

    async def _write_message(self, message: Dict[str, Any]) -> None:
        if self.transport is None:
            raise ConnectionClosedError("Connection has no transport.")
        try:
            await self.transport.write(encode_message(message))
        except TransportError as e:
            if not self._stopping:
                self._mark_closed(f"write failed: {e}")
            raise

    def _ensure_writable(self) -> None:
        if self.state is ConnectionState.UNSTARTED:
            raise SessionNotStartedError("Connection not started.")
        if self.state is ConnectionState.CLOSED:
            raise ConnectionClosedError("Connection is closed.")

    async def send_request(
        self, method: str, params: Optional[Any] = None, timeout: Optional[float] = None
    ) -> Any:
        """Sends a request and waits for its correlated response.

        Args:
            method (str): The method name (e.g. "textDocument/hover").
            params (Optional[Any]): Request parameters. Omitted when None.
            timeout (Optional[float]): Caller-supplied deadline in seconds.
                None waits until the response arrives or the connection
                closes. When the deadline passes, the correlation entry is
                dropped and a late response is discarded.

        Returns:
            Any: The `result` member of the response (None for a null result).

        Raises:
            SessionNotStartedError: If `start()` has not been called.
            ConnectionClosedError: If the connection is or becomes closed
                before the response arrives.
            TransportError: If writing the request fails.
            LspResponseError: If the analyzer answers with an error payload.
            asyncio.TimeoutError: If `timeout` elapses first.
        """
        self._ensure_writable()
        request_id = next(self._id_counter)
        request: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            request["params"] = params

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending_requests[request_id] = future
        self._pending_methods[request_id] = method

        try:
            logger.debug(f"Sending request {request_id}: {method}")
            await self._write_message(request)
            if timeout is None:
                return await future
            return await asyncio.wait_for(future, timeout=timeout)
        except TransportError:
            # A failed write also rejects this request's own future; the write
            # error is what the caller sees.
            if future.done() and not future.cancelled():
                future.exception()
            raise
        except asyncio.TimeoutError:
            logger.warning(f"Gave up waiting for response to request {request_id} ({method}).")
            raise
        finally:
            self._pending_requests.pop(request_id, None)
            self._pending_methods.pop(request_id, None)

    async def send_notification(self, method: str, params: Optional[Any] = None) -> None:
        """Sends a notification. No response is expected.

        Raises:
            SessionNotStartedError: If `start()` has not been called.
            ConnectionClosedError: If the connection is closed.
            TransportError: If writing fails.
        """
        self._ensure_writable()
        notification: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            notification["params"] = params
        logger.debug(f"Sending notification: {method}")
        await self._write_message(notification)

    # --- Handlers ---

    def on_diagnostics(self, handler: Optional[DiagnosticsHandler]) -> None:
        """Registers the single diagnostics handler, replacing any previous one.

        The handler is called synchronously with the `publishDiagnostics`
        params (`{"uri": ..., "diagnostics": [...]}`). Pass None to remove it.
        """
        self._diagnostics_handler = handler

    def on_notification(self, method: str, handler: Optional[NotificationHandler]) -> None:
        """Registers a handler for any other notification method."""
        if handler is None:
            self._notification_handlers.pop(method, None)
        else:
            self._notification_handlers[method] = handler

    # --- Feature requests ---

    def _require_ready(self) -> None:
        if self.state is ConnectionState.CLOSED:
            raise ConnectionClosedError("Connection is closed.")
        if self.state is not ConnectionState.READY:
            raise SessionNotStartedError("Client not started.")

    async def completion(self, uri: str, line: int, character: int, timeout: Optional[float] = None) -> Any:
        """Returns a CompletionList, a list of CompletionItems, or None."""
        self._require_ready()
        return await self.send_request(
            "textDocument/completion", _position_params(uri, line, character), timeout=timeout
        )

    async def hover(self, uri: str, line: int, character: int, timeout: Optional[float] = None) -> Any:
        """Returns a Hover or None."""
        self._require_ready()
        return await self.send_request(
            "textDocument/hover", _position_params(uri, line, character), timeout=timeout
        )

    async def definition(self, uri: str, line: int, character: int, timeout: Optional[float] = None) -> Any:
        """Returns a Location, a list of Locations or LocationLinks, or None."""
        self._require_ready()
        return await self.send_request(
            "textDocument/definition", _position_params(uri, line, character), timeout=timeout
        )

    async def references(
        self,
        uri: str,
        line: int,
        character: int,
        include_declaration: bool = True,
        timeout: Optional[float] = None,
    ) -> Any:
        """Returns a list of Locations or None."""
        self._require_ready()
        params = _position_params(uri, line, character)
        params["context"] = {"includeDeclaration": include_declaration}
        return await self.send_request("textDocument/references", params, timeout=timeout)

    async def document_symbols(self, uri: str, timeout: Optional[float] = None) -> Any:
        """Returns DocumentSymbols, SymbolInformations, or None."""
        self._require_ready()
        return await self.send_request(
            "textDocument/documentSymbol", {"textDocument": {"uri": uri}}, timeout=timeout
        )
