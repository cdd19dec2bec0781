# src/lsp_bridge/protocol/transport.py

"""Duplex byte channels to an analyzer process.

Two transports are provided:

* `ProcessTransport` spawns the analyzer and talks to it over its standard
  input/output. Standard error is only ever logged.
* `SocketTransport` spawns the analyzer, waits for it to start listening and
  then talks to it over a TCP connection.

Both expose the same `open` / `write` / `read` / `close` interface and track a
`TransportState`. A handle closes irreversibly when the process exits, when
the stream fails, or when `close` is called.
"""

import asyncio
import enum
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type

from lsp_bridge.config.loader import get_setting
from lsp_bridge.errors import ConfigurationError, TransportClosedError, TransportError

logger = logging.getLogger(__name__)

STDIO_MODE = "stdio"
SOCKET_MODE = "socket"

DEFAULT_SOCKET_CONNECT_DELAY = 2.0
DEFAULT_TERMINATE_GRACE_PERIOD = 5.0
DEFAULT_READ_CHUNK_SIZE = 65536


@dataclass
class TransportConfig:
    """How to launch and reach one analyzer.

    Attributes:
        command (str): Executable to spawn.
        args (List[str]): Command-line arguments for the executable.
        cwd (Optional[str]): Working directory for the process. None inherits
            the bridge's working directory.
        mode (str): `"stdio"` or `"socket"`.
        host (str): Host to connect to in socket mode.
        port (Optional[int]): Port to connect to in socket mode.
        env (Optional[Dict[str, str]]): Extra environment variables layered
            over the bridge's own environment.
    """

    command: str
    args: List[str] = field(default_factory=list)
    cwd: Optional[str] = None
    mode: str = STDIO_MODE
    host: str = "localhost"
    port: Optional[int] = None
    env: Optional[Dict[str, str]] = None

    def __post_init__(self):
        if not self.command:
            raise ConfigurationError("Transport command must not be empty.")
        if self.mode not in (STDIO_MODE, SOCKET_MODE):
            raise ConfigurationError(f"Unknown transport mode: {self.mode!r}")
        if self.mode == SOCKET_MODE and not self.port:
            raise ConfigurationError("Socket transport requires a port.")

    def describe(self) -> Dict[str, Any]:
        info: Dict[str, Any] = {
            "command": self.command,
            "args": list(self.args),
            "cwd": self.cwd,
            "mode": self.mode,
        }
        if self.mode == SOCKET_MODE:
            info["host"] = self.host
            info["port"] = self.port
        return info


class TransportState(enum.Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class Transport:
    """Interface shared by all transports.

    Subclasses implement `open`, `write`, `read` and `close`. `read` returns
    an empty bytes object once the stream has ended.
    """

    mode: Optional[str] = None

    def __init__(self, config: TransportConfig):
        self.config = config
        self.state = TransportState.CONNECTING
        self.returncode: Optional[int] = None

    @property
    def is_closed(self) -> bool:
        return self.state is TransportState.CLOSED

    async def open(self) -> None:
        raise NotImplementedError

    async def write(self, data: bytes) -> None:
        raise NotImplementedError

    async def read(self) -> bytes:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class ProcessTransport(Transport):
    """Talks to an analyzer over the standard streams of a child process.

    Attributes:
        process (Optional[asyncio.subprocess.Process]): The analyzer process.
            Set by `open()`.
        reader (Optional[asyncio.StreamReader]): Stream carrying frames from
            the analyzer.
        writer (Optional[asyncio.StreamWriter]): Stream carrying frames to the
            analyzer.
        returncode (Optional[int]): Exit code once the process has exited.
    """

    mode = STDIO_MODE

    def __init__(
        self,
        config: TransportConfig,
        terminate_grace_period: Optional[float] = None,
        read_chunk_size: Optional[int] = None,
    ):
        super().__init__(config)
        self.terminate_grace_period = (
            terminate_grace_period
            if terminate_grace_period is not None
            else float(get_setting("transport", "terminate_grace_period", DEFAULT_TERMINATE_GRACE_PERIOD))
        )
        self.read_chunk_size = read_chunk_size or int(
            get_setting("transport", "read_chunk_size", DEFAULT_READ_CHUNK_SIZE)
        )
        self.process: Optional[asyncio.subprocess.Process] = None
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self._log_task: Optional[asyncio.Task] = None
        self._exit_task: Optional[asyncio.Task] = None
        self._close_started = False

    def _spawn_streams(self) -> Dict[str, Any]:
        return {
            "stdin": asyncio.subprocess.PIPE,
            "stdout": asyncio.subprocess.PIPE,
            "stderr": asyncio.subprocess.PIPE,
        }

    def _log_stream(self) -> Optional[asyncio.StreamReader]:
        return self.process.stderr if self.process else None

    async def _connect_streams(self) -> None:
        self.reader = self.process.stdout
        self.writer = self.process.stdin
        if not self.reader or not self.writer:
            raise TransportError("Failed to get stdout/stdin streams from analyzer process.")

    async def open(self) -> None:
        """Spawns the analyzer and connects the frame streams.

        Raises:
            TransportError: If the process cannot be spawned or its streams
                cannot be connected. Anything spawned is cleaned up first.
        """
        if self.state is not TransportState.CONNECTING:
            raise TransportError(f"Transport cannot be opened in state {self.state.value}.")

        cfg = self.config
        logger.info(
            f"Starting analyzer ({self.mode}): {cfg.command} {' '.join(cfg.args)}"
            + (f" in {cfg.cwd}" if cfg.cwd else "")
        )
        subprocess_env = None
        if cfg.env:
            subprocess_env = os.environ.copy()
            subprocess_env.update(cfg.env)

        try:
            self.process = await asyncio.create_subprocess_exec(
                cfg.command,
                *cfg.args,
                cwd=cfg.cwd,
                env=subprocess_env,
                **self._spawn_streams(),
            )
        except OSError as e:
            self.state = TransportState.CLOSED
            logger.error(f"Failed to spawn analyzer '{cfg.command}': {e}")
            raise TransportError(f"Failed to spawn analyzer '{cfg.command}': {e}") from e

        self._log_task = asyncio.create_task(self._read_log_stream(), name="analyzer_log_reader")
        self._exit_task = asyncio.create_task(self._watch_exit(), name="analyzer_exit_watcher")

        try:
            await self._connect_streams()
        except BaseException:
            await self.close()
            raise

        if self.returncode is not None:
            await self.close()
            raise TransportError(
                f"Analyzer '{cfg.command}' exited with code {self.returncode} during startup."
            )
        self.state = TransportState.OPEN
        logger.info(f"Analyzer started (pid {self.process.pid}).")

    async def _read_log_stream(self) -> None:
        """Logs every line the analyzer writes to its diagnostic stream."""
        stream = self._log_stream()
        if stream is None:
            return
        try:
            while True:
                line = await stream.readline()
                if not line:
                    logger.debug("Analyzer log stream EOF reached.")
                    break
                logger.warning(
                    f"Analyzer STDERR: {line.decode('utf-8', errors='replace').rstrip()}"
                )
        except asyncio.CancelledError:
            logger.debug("Analyzer log reader task cancelled.")
        except (ConnectionError, OSError) as e:
            if not self.is_closed:
                logger.error(f"Error reading analyzer log stream: {e}")

    async def _watch_exit(self) -> None:
        returncode = await self.process.wait()
        self.returncode = returncode
        if not self.is_closed:
            logger.info(f"Analyzer process exited with code {returncode}.")
        self.state = TransportState.CLOSED

    async def write(self, data: bytes) -> None:
        """Writes bytes to the analyzer.

        Raises:
            TransportClosedError: If the handle is not open.
            TransportError: If the stream fails while writing. The handle is
                closed afterwards.
        """
        if self.state is not TransportState.OPEN or not self.writer or self.writer.is_closing():
            raise TransportClosedError("Transport is not open.")
        try:
            self.writer.write(data)
            await self.writer.drain()
        except (ConnectionResetError, BrokenPipeError, OSError) as e:
            logger.error(f"Connection error writing to analyzer: {e}")
            self.state = TransportState.CLOSED
            raise TransportError(f"Connection error writing to analyzer: {e}") from e

    async def read(self) -> bytes:
        """Returns the next chunk from the analyzer, or b"" at end of stream.

        Data already buffered when the process exits is still returned before
        the end of stream is reported.
        """
        if self.reader is None:
            return b""
        try:
            return await self.reader.read(self.read_chunk_size)
        except (ConnectionResetError, OSError) as e:
            self.state = TransportState.CLOSED
            raise TransportError(f"Connection error reading from analyzer: {e}") from e

    async def _close_streams(self) -> None:
        writer = self.writer
        self.writer = None
        if writer and not writer.is_closing():
            try:
                writer.close()
            except (ConnectionError, OSError) as e:
                logger.warning(f"Error closing analyzer stream: {e}")

    async def _terminate_process(self) -> None:
        proc = self.process
        if not proc or proc.returncode is not None:
            return
        logger.info("Terminating analyzer process...")
        try:
            proc.terminate()
            return_code = await asyncio.wait_for(proc.wait(), timeout=self.terminate_grace_period)
            logger.info(f"Analyzer process terminated with code {return_code}.")
        except asyncio.TimeoutError:
            logger.warning(
                f"Analyzer process did not terminate after {self.terminate_grace_period}s, killing."
            )
            try:
                proc.kill()
                await proc.wait()
                logger.info("Analyzer process killed.")
            except ProcessLookupError:
                logger.warning("Process already killed or finished.")
        except ProcessLookupError:
            logger.debug("Process already finished before termination attempt.")

    async def close(self) -> None:
        """Closes the streams and stops the analyzer process. Idempotent."""
        if self._close_started:
            return
        self._close_started = True
        self.state = TransportState.CLOSED

        await self._close_streams()
        await self._terminate_process()

        if self._log_task and not self._log_task.done():
            self._log_task.cancel()
        tasks = [t for t in (self._log_task, self._exit_task) if t is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self.process and self.process.returncode is not None:
            self.returncode = self.process.returncode
        logger.debug("Transport closed.")


class SocketTransport(ProcessTransport):
    """Spawns the analyzer, then talks to it over TCP.

    The analyzer's stdout and stderr are merged and logged. The connection is
    attempted once after `connect_delay` seconds.
    """

    mode = SOCKET_MODE

    def __init__(
        self,
        config: TransportConfig,
        connect_delay: Optional[float] = None,
        terminate_grace_period: Optional[float] = None,
        read_chunk_size: Optional[int] = None,
    ):
        super().__init__(
            config,
            terminate_grace_period=terminate_grace_period,
            read_chunk_size=read_chunk_size,
        )
        self.connect_delay = (
            connect_delay
            if connect_delay is not None
            else float(get_setting("transport", "socket_connect_delay", DEFAULT_SOCKET_CONNECT_DELAY))
        )

    def _spawn_streams(self) -> Dict[str, Any]:
        return {
            "stdin": asyncio.subprocess.DEVNULL,
            "stdout": asyncio.subprocess.PIPE,
            "stderr": asyncio.subprocess.STDOUT,
        }

    def _log_stream(self) -> Optional[asyncio.StreamReader]:
        return self.process.stdout if self.process else None

    async def _connect_streams(self) -> None:
        host, port = self.config.host, self.config.port
        await asyncio.sleep(self.connect_delay)
        try:
            self.reader, self.writer = await asyncio.open_connection(host, port)
        except OSError as e:
            logger.error(f"Failed to connect to analyzer at {host}:{port}: {e}")
            raise TransportError(f"Failed to connect to analyzer at {host}:{port}: {e}") from e
        logger.info(f"Connected to analyzer at {host}:{port}")

    async def _close_streams(self) -> None:
        writer = self.writer
        await super()._close_streams()
        if writer:
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError) as e:
                logger.debug(f"Socket closed with error: {e}")


TRANSPORT_CLASSES: Dict[str, Type[ProcessTransport]] = {
    STDIO_MODE: ProcessTransport,
    SOCKET_MODE: SocketTransport,
}


async def open_transport(config: TransportConfig) -> Transport:
    """Creates the transport selected by `config.mode` and opens it."""
    transport = TRANSPORT_CLASSES[config.mode](config)
    await transport.open()
    return transport
