# File: lsp_bridge/config/loader.py

"""Loads and manages bridge configuration from YAML defaults and the environment.

The path of the default configuration file (`config.yml`) is determined by:
1. Checking the `LSP_BRIDGE_CONFIG_FILE` environment variable.
2. Searching upwards from this file's location for a project root marker
   (`pyproject.toml`) and looking for the file in that root directory.
3. As a fallback, looking in the current working directory (with a warning).

After the YAML layer is read, a `.env` file is loaded into the process
environment and the entries of `ENV_OVERRIDES` are applied on top. The result is
exposed as the singleton dictionary `APP_CONFIG`.
"""

import logging
import os
import pathlib
from typing import Any, Dict, List, Optional, Tuple, Type

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)
if not logging.getLogger().hasHandlers():
    logging.basicConfig(
        level=logging.INFO, format="%(levelname)s: [%(name)s] %(message)s"
    )

DEFAULT_CONFIG_FILENAME = "config.yml"
PROJECT_ROOT_MARKER = "pyproject.toml"

ENV_CONFIG_PATH = "LSP_BRIDGE_CONFIG_FILE"

# Format: (ENV_VARIABLE_NAME, [list, of, config, keys], target_type_for_conversion)
ENV_OVERRIDES: List[Tuple[str, List[str], Type]] = [
    ("LSP_BRIDGE_HOST", ["bridge", "host"], str),
    ("LSP_BRIDGE_PORT", ["bridge", "port"], int),
    ("LSP_BRIDGE_CORS_ORIGIN", ["bridge", "cors_origin"], str),
    ("LSP_BRIDGE_SOCKET_CONNECT_DELAY", ["transport", "socket_connect_delay"], float),
    ("LSP_BRIDGE_TERMINATE_GRACE_PERIOD", ["transport", "terminate_grace_period"], float),
    ("LSP_BRIDGE_SHUTDOWN_TIMEOUT", ["connection", "shutdown_timeout"], float),
    ("LSP_BRIDGE_LOG_LEVEL", ["logging", "level"], str),
]


def _find_project_root(
    start_path: pathlib.Path, marker_filename: str = PROJECT_ROOT_MARKER
) -> Optional[pathlib.Path]:
    """Searches upward from start_path for a directory containing marker_filename.

    Args:
        start_path: The directory path to begin the search from.
        marker_filename: The filename to look for as the project root indicator.

    Returns:
        The Path of the directory containing the marker file, or None if not
        found before reaching the filesystem root.
    """
    current_path = start_path.resolve()
    while True:
        if (current_path / marker_filename).is_file():
            logger.debug(f"Found project root marker '{marker_filename}' at '{current_path}'")
            return current_path
        parent_path = current_path.parent
        if parent_path == current_path:
            logger.debug(f"Project root marker '{marker_filename}' not found searching from '{start_path}'.")
            return None
        current_path = parent_path


def _update_nested_dict(d: Dict[str, Any], keys: List[str], value: Any):
    """Sets a value in a nested dictionary, creating intermediate dicts.

    Logs an error and leaves `d` untouched if an intermediate key holds a
    non-dict value.
    """
    node = d
    for key in keys[:-1]:
        child = node.setdefault(key, {})
        if not isinstance(child, dict):
            logger.error(
                f"Config structure conflict: Expected dict at '{key}' "
                f"while setting path '{'.'.join(keys)}', but found type {type(child)}. "
                f"Cannot apply value '{value}'."
            )
            return
        node = child
    node[keys[-1]] = value


def _resolve_config_path() -> pathlib.Path:
    env_config_path_str = os.getenv(ENV_CONFIG_PATH)
    if env_config_path_str:
        logger.info(f"Using config path from environment variable {ENV_CONFIG_PATH}: '{env_config_path_str}'")
        return pathlib.Path(env_config_path_str).resolve()

    project_root = _find_project_root(start_path=pathlib.Path(__file__).parent)
    if project_root:
        logger.debug(f"Determined project root: '{project_root}'")
        return (project_root / DEFAULT_CONFIG_FILENAME).resolve()

    logger.warning(
        f"Could not find project root marker '{PROJECT_ROOT_MARKER}'. "
        "Falling back to current working directory for config path."
    )
    return (pathlib.Path.cwd() / DEFAULT_CONFIG_FILENAME).resolve()


def load_configuration(
    config_path: Optional[pathlib.Path] = None,
    dotenv_path: Optional[str] = None,
    env_override_map: List[Tuple[str, List[str], Type]] = ENV_OVERRIDES,
) -> Dict[str, Any]:
    """Loads configuration layers: YAML defaults, then environment overrides.

    Args:
        config_path: Explicit YAML file to read. When None the path is
            determined as described in the module docstring.
        dotenv_path: Explicit path to the .env file. If None, `python-dotenv`
            searches standard locations.
        env_override_map: Mapping of environment variables to configuration
            keys and the type their values are converted to.

    Returns:
        The merged configuration dictionary. A missing YAML file yields an
        empty base; a YAML file that cannot be parsed yields an empty dict
        without overrides.
    """
    config: Dict[str, Any] = {}
    effective_config_path = config_path or _resolve_config_path()

    try:
        with open(effective_config_path, encoding="utf-8") as f:
            loaded_yaml = yaml.safe_load(f)
            config = loaded_yaml if isinstance(loaded_yaml, dict) else {}
        logger.debug(f"Loaded base config from '{effective_config_path}'.")
    except FileNotFoundError:
        logger.warning(f"Base config file '{effective_config_path}' not found. Using built-in defaults.")
    except yaml.YAMLError as e:
        logger.error(f"Error parsing YAML '{effective_config_path}': {e}", exc_info=True)
        return {}

    try:
        loaded_env = load_dotenv(dotenv_path=dotenv_path, override=False)
        if loaded_env:
            logger.debug(".env file loaded into environment variables.")
    except OSError as e:
        logger.error(f"Error loading .env file: {e}", exc_info=True)

    override_count = 0
    for env_var, config_keys, target_type in env_override_map:
        env_value_str = os.getenv(env_var)
        if env_value_str is None:
            continue
        try:
            typed_value = target_type(env_value_str)
        except ValueError:
            logger.warning(
                f"Value override failed: Cannot convert env var '{env_var}' "
                f"value '{env_value_str}' to target type {target_type.__name__}."
            )
            continue
        _update_nested_dict(config, config_keys, typed_value)
        logger.info(
            f"Applied value override: '{'.'.join(config_keys)}' = '{typed_value}' "
            f"(from env '{env_var}')"
        )
        override_count += 1
    if override_count:
        logger.debug(f"Applied {override_count} environment variable value override(s).")

    return config


def get_setting(section: str, key: str, default: Any = None, config: Optional[Dict[str, Any]] = None) -> Any:
    """Reads `config[section][key]`, falling back to `default`.

    Args:
        section: Top-level section name (e.g. "transport").
        key: Key inside the section.
        default: Value returned when the section or key is missing.
        config: Configuration to read. Defaults to `APP_CONFIG`.
    """
    source = APP_CONFIG if config is None else config
    section_values = source.get(section)
    if not isinstance(section_values, dict):
        return default
    return section_values.get(key, default)


# Loaded once when this module is first imported.
APP_CONFIG: Dict[str, Any] = load_configuration()
