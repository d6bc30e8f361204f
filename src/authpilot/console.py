"""Operator console input that can be raced against other coroutines.

:class:`ConsolePrompt` reads from the terminal in a daemon thread and hands
the answer back through an asyncio future. If the waiting coroutine is
cancelled, the thread keeps blocking on stdin but its eventual answer is
dropped, and because the thread is a daemon it never holds up interpreter
shutdown.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Callable, Optional

import typer

Reader = Callable[[str], str]


def _typer_reader(message: str) -> str:
    return str(typer.prompt(message, prompt_suffix=" ", err=True))


class ConsolePrompt:
    """Asks the operator for a value without blocking the event loop.

    Args:
        reader: Blocking function that shows *message* and returns the
            answer. Defaults to :func:`typer.prompt` on stderr.
    """

    def __init__(self, reader: Optional[Reader] = None) -> None:
        self._reader = reader or _typer_reader

    async def ask(self, message: str) -> str:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[str] = loop.create_future()

        def _deliver(value: Optional[str], exc: Optional[BaseException]) -> None:
            if future.done():
                return
            if exc is not None:
                future.set_exception(exc)
            else:
                future.set_result(value or "")

        def _read() -> None:
            try:
                value, exc = self._reader(message), None
            except Exception as error:  # forwarded to the awaiting coroutine
                value, exc = None, error
            try:
                loop.call_soon_threadsafe(_deliver, value, exc)
            except RuntimeError:
                # loop already closed; nobody is waiting any more
                pass

        threading.Thread(target=_read, name="authpilot-console", daemon=True).start()
        return await future
