"""Session persistence through the browser's storage-state export.

:class:`StorageStateSessionStore` writes ``<session_path>/<account>/<device>.json``.
The CLI passes that file back to :func:`~authpilot.surface.browser.launch_surface`
on the next run so an already authenticated account skips the credential
flow.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

from authpilot import output
from authpilot.collaborators import SessionStore
from authpilot.config import get_data_dir
from authpilot.exceptions import SurfaceError
from authpilot.surface.base import UISurface


def session_file(path: str, account: str, device_class: str) -> Path:
    """Return where the session of *account* is stored.

    Relative *path* values are resolved under the data directory.
    """
    base = Path(path).expanduser()
    if not base.is_absolute():
        base = get_data_dir() / base
    folder = re.sub(r"[^A-Za-z0-9@._-]+", "_", account)
    return base / folder / f"{device_class}.json"


class StorageStateSessionStore(SessionStore):
    async def save_session(
        self, path: str, surface: UISurface, account: str, device_class: str
    ) -> Optional[Path]:
        target = session_file(path, account, device_class)
        try:
            await surface.storage_state(target)
        except SurfaceError as exc:
            output.log("SESSION", f"Could not save session: {exc}", "warn")
            return None
        output.log("SESSION", f"Session saved to {target}", "debug")
        return target
