# tests/conftest.py

"""Shared fixtures: an in-memory transport that plays the analyzer side.

`FakeTransport` decodes every frame the connection writes into `sent` and,
for methods listed in `results` / `errors`, immediately queues the matching
response. Anything else is left unanswered so a test can script the reply
with `push`.
"""

import asyncio
import copy
import pathlib
import sys
from typing import Any, Dict, List, Optional

import pytest

# --- Make src importable without installing the package ---
project_root = pathlib.Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from lsp_bridge.errors import TransportClosedError, TransportError  # noqa: E402
from lsp_bridge.protocol.framing import FrameDecoder, encode_message  # noqa: E402
from lsp_bridge.protocol.transport import Transport, TransportConfig, TransportState  # noqa: E402

DEFAULT_RESULTS: Dict[str, Any] = {
    "initialize": {"capabilities": {"hoverProvider": True}},
    "shutdown": None,
}


class FakeTransport(Transport):
    def __init__(
        self,
        config: TransportConfig,
        results: Optional[Dict[str, Any]] = None,
        errors: Optional[Dict[str, Dict[str, Any]]] = None,
    ):
        super().__init__(config)
        self.mode = config.mode
        self.results = dict(DEFAULT_RESULTS if results is None else results)
        self.errors = dict(errors or {})
        self.sent: List[Dict[str, Any]] = []
        self.fail_writes = False
        self.close_calls = 0
        self._incoming: asyncio.Queue = asyncio.Queue()
        self._decoder = FrameDecoder()

    async def open(self) -> None:
        self.state = TransportState.OPEN

    async def write(self, data: bytes) -> None:
        if self.state is not TransportState.OPEN:
            raise TransportClosedError("Transport is not open.")
        if self.fail_writes:
            self.state = TransportState.CLOSED
            raise TransportError("Connection error writing to analyzer: broken pipe")
        self._decoder.feed(data)
        while True:
            message = self._decoder.next_message()
            if message is None:
                break
            self.sent.append(message)
            self._auto_respond(message)

    def _auto_respond(self, message: Dict[str, Any]) -> None:
        method = message.get("method")
        if method is None or "id" not in message:
            return
        if method in self.errors:
            self.push({"jsonrpc": "2.0", "id": message["id"], "error": self.errors[method]})
        elif method in self.results:
            result = self.results[method]
            if callable(result):
                result = result(message.get("params"))
            self.push({"jsonrpc": "2.0", "id": message["id"], "result": copy.deepcopy(result)})

    async def read(self) -> bytes:
        return await self._incoming.get()

    async def close(self) -> None:
        self.close_calls += 1
        if self.state is not TransportState.CLOSED:
            self.state = TransportState.CLOSED
            self._incoming.put_nowait(b"")

    # --- Scripting helpers ---

    def push(self, message: Dict[str, Any]) -> None:
        self._incoming.put_nowait(encode_message(message))

    def push_raw(self, data: bytes) -> None:
        self._incoming.put_nowait(data)

    def feed_eof(self) -> None:
        """Simulates the analyzer going away."""
        self.state = TransportState.CLOSED
        self._incoming.put_nowait(b"")

    def requests(self, method: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            m for m in self.sent
            if "id" in m and "method" in m and (method is None or m["method"] == method)
        ]

    def notifications(self, method: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            m for m in self.sent
            if "id" not in m and (method is None or m["method"] == method)
        ]

    def replies(self) -> List[Dict[str, Any]]:
        """Responses the client sent back for analyzer-initiated requests."""
        return [m for m in self.sent if "method" not in m]


class FakeTransportFactory:
    """Transport factory for `LspConnection` that records what it created."""

    def __init__(self):
        self.created: List[FakeTransport] = []
        self.configs: List[TransportConfig] = []
        self.results: Dict[str, Any] = dict(DEFAULT_RESULTS)
        self.errors: Dict[str, Dict[str, Any]] = {}
        self.open_error: Optional[BaseException] = None

    async def __call__(self, config: TransportConfig) -> FakeTransport:
        self.configs.append(config)
        if self.open_error is not None:
            raise self.open_error
        transport = FakeTransport(config, results=self.results, errors=self.errors)
        await transport.open()
        self.created.append(transport)
        return transport

    @property
    def transport(self) -> FakeTransport:
        return self.created[-1]


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Polls `predicate` on the event loop until it is true or `timeout` passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.005)


# --- Fixtures ---


@pytest.fixture
def stdio_config() -> TransportConfig:
    return TransportConfig(command="fake-analyzer", args=["--stdio"])


@pytest.fixture
def socket_config() -> TransportConfig:
    return TransportConfig(command="fake-analyzer", mode="socket", host="localhost", port=1044)


@pytest.fixture
def transport_factory() -> FakeTransportFactory:
    return FakeTransportFactory()
