"""Best-effort screenshot and HTML capture for failures and incidents.

Captures go to ``<data_dir>/diagnostics/<scope>/`` with a timestamped,
label-derived file name. The number of captures per run is limited by
:attr:`~authpilot.models.DiagnosticsConfig.max_per_run`; security incidents
pass ``force=True`` so they are always recorded.
"""

from __future__ import annotations

import re
from datetime import datetime
from pathlib import Path
from typing import Optional

from authpilot import output
from authpilot.collaborators import DiagnosticsCapture
from authpilot.config import get_data_dir
from authpilot.exceptions import SurfaceError
from authpilot.models import DiagnosticsConfig
from authpilot.surface.base import UISurface


class FileDiagnosticsCapture(DiagnosticsCapture):
    """Writes ``.png`` and ``.html`` files for a surface.

    Args:
        config: Capture switches and the per-run limit.
        directory: Root directory. Defaults to ``config.directory`` or the
            data directory.
    """

    def __init__(self, config: Optional[DiagnosticsConfig] = None, directory: Optional[Path] = None) -> None:
        self._config = config or DiagnosticsConfig()
        if directory is not None:
            self._root = directory
        elif self._config.directory:
            self._root = Path(self._config.directory).expanduser()
        else:
            self._root = get_data_dir() / "diagnostics"
        self._count = 0

    @property
    def count(self) -> int:
        """Captures taken so far in this run."""
        return self._count

    async def capture(
        self, surface: UISurface, label: str, scope: str = "login", force: bool = False
    ) -> list[Path]:
        if not self._config.enabled:
            return []
        if not force and self._count >= self._config.max_per_run:
            output.log("DIAG", f"Capture limit reached; skipping '{label}'", "debug")
            return []
        self._count += 1

        folder = self._root / re.sub(r"[^A-Za-z0-9_-]+", "-", scope)
        folder.mkdir(parents=True, exist_ok=True)
        stem = f"{datetime.now():%Y%m%d-%H%M%S}-{re.sub(r'[^A-Za-z0-9_-]+', '-', label)[:60]}"
        written: list[Path] = []

        if self._config.screenshot:
            png = folder / f"{stem}.png"
            try:
                await surface.screenshot(png)
                written.append(png)
            except SurfaceError as exc:
                output.log("DIAG", f"Screenshot failed: {exc}", "warn")

        if self._config.html:
            html = folder / f"{stem}.html"
            try:
                html.write_text(await surface.page_html(), encoding="utf-8")
                written.append(html)
            except (SurfaceError, OSError) as exc:
                output.log("DIAG", f"HTML dump failed: {exc}", "warn")

        if written:
            output.log("DIAG", f"Captured diagnostics: {', '.join(p.name for p in written)}")
        return written
