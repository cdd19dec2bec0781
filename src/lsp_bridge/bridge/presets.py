# src/lsp_bridge/bridge/presets.py

"""Backend presets: how to launch the analyzer for each supported language.

A preset is a plain function that turns the options sent by a caller into a
`TransportConfig`. Presets are kept in a `BackendRegistry`, so adding a
backend is a single `register` call. Every preset accepts an optional
`serverArgs` list that replaces its default arguments.
"""

import logging
import os
import pathlib
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from lsp_bridge.errors import ConfigurationError
from lsp_bridge.protocol.transport import SOCKET_MODE, TransportConfig

logger = logging.getLogger(__name__)

PresetFactory = Callable[[Dict[str, Any]], TransportConfig]

DEFAULT_COBOL_PORT = 1044
DEFAULT_CSHARP_LOG_LEVEL = "INFO"


class BackendRegistry:
    """Maps backend kinds to preset factories and the fields they require."""

    def __init__(self):
        self._presets: Dict[str, Tuple[PresetFactory, Tuple[str, ...]]] = {}

    def register(self, kind: str, factory: PresetFactory, required: Iterable[str] = ()) -> None:
        """Adds a preset.

        Args:
            kind: Backend kind used by callers (e.g. "typescript").
            factory: Callable taking the caller's options and returning a
                `TransportConfig`.
            required: Option names that must be present and non-empty.

        Raises:
            ConfigurationError: If `kind` is empty or already registered, or
                `factory` is not callable.
        """
        if not kind or not isinstance(kind, str):
            raise ConfigurationError("Backend kind must be a non-empty string.")
        if not callable(factory):
            raise ConfigurationError(f"Preset factory for '{kind}' is not callable.")
        if kind in self._presets:
            raise ConfigurationError(f"Backend kind '{kind}' is already registered.")
        self._presets[kind] = (factory, tuple(required))
        logger.debug(f"Registered backend preset '{kind}'.")

    def kinds(self) -> List[str]:
        return sorted(self._presets)

    def __contains__(self, kind: object) -> bool:
        return kind in self._presets

    def required_fields(self, kind: str) -> Tuple[str, ...]:
        return self._lookup(kind)[1]

    def _lookup(self, kind: str) -> Tuple[PresetFactory, Tuple[str, ...]]:
        try:
            return self._presets[kind]
        except KeyError:
            raise ConfigurationError(f"Unsupported language: {kind}") from None

    def resolve(self, kind: str, options: Dict[str, Any]) -> TransportConfig:
        """Builds the transport configuration for `kind` from `options`.

        Raises:
            ConfigurationError: For an unknown kind, a missing `rootUri`, a
                missing required field, or a preset that rejects the options.
        """
        factory, required = self._lookup(kind)
        if not options.get("rootUri"):
            raise ConfigurationError("Missing required field: rootUri")
        missing = [name for name in required if not options.get(name)]
        if missing:
            raise ConfigurationError(
                f"Missing required field(s) for '{kind}': {', '.join(missing)}"
            )
        server_args = options.get("serverArgs")
        if server_args is not None and (
            not isinstance(server_args, list) or not all(isinstance(a, str) for a in server_args)
        ):
            raise ConfigurationError("serverArgs must be a list of strings.")
        config = factory(options)
        logger.info(f"Resolved backend '{kind}': {config.describe()}")
        return config


# --- Helpers ---


def _server_args(options: Dict[str, Any], default: List[str]) -> List[str]:
    server_args = options.get("serverArgs")
    return list(server_args) if server_args is not None else list(default)


def _require_path(path: str, what: str) -> str:
    if not pathlib.Path(path).exists():
        raise ConfigurationError(f"{what} not found: {path}")
    return path


def uri_to_path(uri: str) -> str:
    """Strips the file:// scheme from a URI."""
    return uri[len("file://"):] if uri.startswith("file://") else uri


def _simple_preset(command: str, default_args: Optional[List[str]] = None) -> PresetFactory:
    """Preset for analyzers that only need a command and default arguments."""

    def factory(options: Dict[str, Any]) -> TransportConfig:
        return TransportConfig(command=command, args=_server_args(options, default_args or []))

    return factory


# --- Presets that need more than a command line ---


def python_preset(options: Dict[str, Any]) -> TransportConfig:
    server_dir = _require_path(options["serverDir"], "Server directory")
    return TransportConfig(
        command="poetry",
        args=["run", "pylsp"] + _server_args(options, ["-v"]),
        cwd=server_dir,
    )


def ruby_preset(options: Dict[str, Any]) -> TransportConfig:
    project_dir = options.get("cwd") or uri_to_path(options["rootUri"])
    return TransportConfig(command="solargraph", args=_server_args(options, ["stdio"]), cwd=project_dir)


def perl_preset(options: Dict[str, Any]) -> TransportConfig:
    server_path = _require_path(options["serverPath"], "PerlNavigator")
    return TransportConfig(command=server_path, args=_server_args(options, ["--stdio"]))


def csharp_preset(options: Dict[str, Any]) -> TransportConfig:
    log_level = options.get("logLevel") or DEFAULT_CSHARP_LOG_LEVEL
    # Extra arguments are appended after the solution, not substituted.
    return TransportConfig(
        command="csharp-ls",
        args=["--loglevel", log_level, "--solution", options["solutionPath"]]
        + _server_args(options, []),
    )


def sql_preset(options: Dict[str, Any]) -> TransportConfig:
    server_path = _require_path(options["serverPath"], "SQL language server")
    return TransportConfig(command=server_path, args=_server_args(options, ["up", "--method", "stdio"]))


def cobol_preset(options: Dict[str, Any]) -> TransportConfig:
    server_jar = _require_path(options["serverJar"], "Server JAR")
    try:
        port = int(options.get("port") or DEFAULT_COBOL_PORT)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid port: {options.get('port')!r}") from None
    return TransportConfig(
        command="java",
        args=["-jar", server_jar],
        mode=SOCKET_MODE,
        host=options.get("host") or "localhost",
        port=port,
    )


def go_preset(options: Dict[str, Any]) -> TransportConfig:
    server_path = options.get("serverPath") or os.path.join(
        os.path.expanduser("~"), "go", "bin", "gopls"
    )
    if not pathlib.Path(server_path).exists():
        raise ConfigurationError(
            f"gopls not found at: {server_path}. "
            "Install with: go install golang.org/x/tools/gopls@latest"
        )
    return TransportConfig(command=server_path, args=_server_args(options, []))


def build_default_registry() -> BackendRegistry:
    """Returns a registry holding every built-in backend preset."""
    registry = BackendRegistry()
    registry.register("typescript", _simple_preset("typescript-language-server", ["--stdio"]))
    registry.register("python", python_preset, required=("serverDir",))
    registry.register("java", _simple_preset("jdtls"))
    registry.register("rust", _simple_preset("rust-analyzer"))
    registry.register("ruby", ruby_preset)
    registry.register("perl", perl_preset, required=("serverPath",))
    registry.register("cpp", _simple_preset("clangd", ["--log=error"]))
    registry.register("csharp", csharp_preset, required=("solutionPath",))
    registry.register("sql", sql_preset, required=("serverPath",))
    registry.register("cobol", cobol_preset, required=("serverJar",))
    registry.register("bash", _simple_preset("bash-language-server", ["start"]))
    registry.register("terraform", _simple_preset("terraform-ls", ["serve"]))
    registry.register("clojure", _simple_preset("clojure-lsp"))
    registry.register("kotlin", _simple_preset("kotlin-lsp", ["--stdio"]))
    registry.register("go", go_preset)
    registry.register("php", _simple_preset("intelephense", ["--stdio"]))
    return registry


DEFAULT_REGISTRY = build_default_registry()
