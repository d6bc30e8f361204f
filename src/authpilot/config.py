"""Configuration management with XDG paths, atomic writes, and credential resolution.

This module handles all persistent configuration for authpilot:

* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.authpilot/`` on macOS and Windows. See :func:`get_config_dir` and
  :func:`get_data_dir`.
* **Settings** -- A single :class:`~authpilot.models.Settings` JSON file
  storing provider endpoints, timing, mailbox and notification options.
  ``AUTHPILOT_CONFIG`` overrides its location.
* **Accounts** -- ``accounts.json``, a list of
  :class:`~authpilot.models.AccountEntry` records. ``AUTHPILOT_ACCOUNTS``
  overrides its location.
* **Credential resolution** -- :func:`resolve_credential` reads secrets
  from env vars, files, interactive prompts, or returns a literal value.

All file writes use an atomic temp-file-then-rename strategy
(:func:`_atomic_write`) to prevent data loss on crash or power failure.
"""

from __future__ import annotations

import getpass
import json
import os
import platform
import sys
import tempfile
from pathlib import Path
from typing import Optional

from authpilot.exceptions import ConfigError
from authpilot.models import AccountEntry, Settings

_APP_NAME = "authpilot"
_CONFIG_FILENAME = "config.json"
_ACCOUNTS_FILENAME = "accounts.json"

CONFIG_ENV = "AUTHPILOT_CONFIG"
ACCOUNTS_ENV = "AUTHPILOT_ACCOUNTS"


# --- XDG path resolution ---


def _is_xdg_platform() -> bool:
    """Return True if the platform supports XDG Base Directory spec (Linux/FreeBSD)."""
    return platform.system() == "Linux" or platform.system().endswith("BSD")


def _fallback_base_dir() -> Path:
    """Fallback base directory for non-XDG platforms (macOS, Windows)."""
    return Path.home() / f".{_APP_NAME}"


def _xdg_base(env_var: str, default_segments: tuple[str, ...]) -> Path:
    """Resolve an XDG base directory from an env var with fallback segments under $HOME."""
    env_value = os.environ.get(env_var, "")
    if env_value:
        return Path(env_value)
    base = Path.home()
    for seg in default_segments:
        base = base / seg
    return base


def get_config_dir() -> Path:
    """Return the configuration directory, creating it if necessary.

    On Linux/BSD: ``$XDG_CONFIG_HOME/authpilot/`` (default ``~/.config/authpilot/``).
    On macOS/Windows: ``~/.authpilot/``.

    Returns:
        Absolute path to the configuration directory (guaranteed to exist).
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_CONFIG_HOME", (".config",)) / _APP_NAME
    else:
        path = _fallback_base_dir()
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_dir() -> Path:
    """Return the data directory (crash logs, diagnostics, sessions), creating it if necessary.

    On Linux/BSD: ``$XDG_DATA_HOME/authpilot/`` (default ``~/.local/share/authpilot/``).
    On macOS/Windows: ``~/.authpilot/data/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_DATA_HOME", (".local", "share")) / _APP_NAME
    else:
        path = _fallback_base_dir() / "data"
    path.mkdir(parents=True, exist_ok=True)
    return path


# --- Atomic file writes ---


def _atomic_write(path: Path, data: str) -> None:
    """Write data to file atomically using temp file + rename.

    The temporary file is created in the same directory as *path* so that
    ``os.replace`` is guaranteed to be an atomic rename on POSIX systems.
    On success the temp file is renamed over *path*; on any failure the temp
    file is cleaned up.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = None
    tmp_path: Optional[str] = None
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        tmp_path = fd.name
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None
        os.replace(tmp_path, path)
    except BaseException:
        if fd is not None:
            fd.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise


# --- Settings ---


def settings_path() -> Path:
    """Path to the settings file, honouring ``AUTHPILOT_CONFIG``."""
    override = os.environ.get(CONFIG_ENV)
    if override:
        return Path(override).expanduser()
    return get_config_dir() / _CONFIG_FILENAME


def load_settings(path: Optional[Path] = None) -> Settings:
    """Load the settings file.

    Args:
        path: Explicit file path. Defaults to :func:`settings_path`.

    Returns:
        The deserialised :class:`~authpilot.models.Settings`. If the file
        does not exist, a default instance is returned.

    Raises:
        ConfigError: If the file exists but contains invalid JSON or fails
            Pydantic validation.
    """
    path = path or settings_path()
    if not path.is_file():
        return Settings()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return Settings.model_validate(data)
    except (json.JSONDecodeError, ValueError) as exc:
        raise ConfigError(f"Invalid settings at {path}: {exc}") from exc


def save_settings(settings: Settings, path: Optional[Path] = None) -> Path:
    """Persist settings atomically and return the path written."""
    path = path or settings_path()
    data = settings.model_dump(mode="json")
    _atomic_write(path, json.dumps(data, indent=2) + "\n")
    return path


# --- Accounts ---


def accounts_path() -> Path:
    """Path to ``accounts.json``, honouring ``AUTHPILOT_ACCOUNTS``."""
    override = os.environ.get(ACCOUNTS_ENV)
    if override:
        return Path(override).expanduser()
    return get_config_dir() / _ACCOUNTS_FILENAME


def load_accounts(path: Optional[Path] = None) -> list[AccountEntry]:
    """Load the account list.

    Accepts either a bare JSON array or an object with an ``accounts`` key.

    Raises:
        ConfigError: If the file is missing or malformed.
    """
    path = path or accounts_path()
    if not path.is_file():
        raise ConfigError(f"Accounts file not found at {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        if isinstance(data, dict):
            data = data.get("accounts", [])
        if not isinstance(data, list):
            raise ValueError("expected a list of accounts")
        return [AccountEntry.model_validate(item) for item in data]
    except (json.JSONDecodeError, ValueError) as exc:
        raise ConfigError(f"Invalid accounts file at {path}: {exc}") from exc


def find_account(email: str, accounts: list[AccountEntry]) -> AccountEntry:
    """Return the account matching *email* (case-insensitive).

    Raises:
        ConfigError: If no such account is configured.
    """
    wanted = email.lower()
    for entry in accounts:
        if entry.email.lower() == wanted:
            return entry
    raise ConfigError(f"Account '{email}' is not listed in {accounts_path()}")


# --- Credential source resolution ---


def resolve_credential(source: str, label: str = "credential") -> str:
    """Resolve a credential from its source descriptor.

    Supported formats:
        - ``"env:VAR_NAME"`` -- reads ``os.environ["VAR_NAME"]``
        - ``"file:/path/to/file"`` -- reads file content, stripped of whitespace
        - ``"prompt"`` -- prompts user interactively (requires a TTY)
        - anything else -- returned unchanged as a literal value

    Args:
        source: The source descriptor string.
        label: Name shown in the interactive prompt.

    Returns:
        The resolved credential string.

    Raises:
        ConfigError: If the source can't be resolved.
    """
    if source.startswith("env:"):
        var_name = source[4:]
        value = os.environ.get(var_name)
        if value is None:
            raise ConfigError(
                f"Environment variable '{var_name}' is not set (source: {source})"
            )
        return value

    if source.startswith("file:"):
        path = Path(source[5:]).expanduser()
        if not path.is_file():
            raise ConfigError(f"Credential file not found: {path} (source: {source})")
        try:
            return path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ConfigError(f"Cannot read credential file {path}: {exc}") from exc

    if source == "prompt":
        if not sys.stdin.isatty():
            raise ConfigError(
                "Cannot prompt for credentials: stdin is not a TTY (source: prompt)"
            )
        return getpass.getpass(f"Enter {label}: ")

    return source
