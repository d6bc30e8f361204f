"""Typer application and CLI entry point for authpilot.

This module wires together the top-level Typer application and registers
the built-in sub-commands (``login``, ``token``, ``totp``,
``extract-code``, ``config``).

The :func:`main` function is the console-script entry point declared in
``pyproject.toml``. It installs signal handlers, registers commands and
invokes the Typer app. :class:`~authpilot.exceptions.AuthpilotError`
exits with its ``exit_code``; any other exception is written to a crash log
under the data directory.

See Also:
    :mod:`authpilot.config`: Settings and account file resolution.
    :mod:`authpilot.output`: Output formatting initialised in :func:`main_callback`.
"""

from __future__ import annotations

import logging
import signal
import sys
import traceback
from datetime import datetime
from typing import Any

import typer

from authpilot import __version__
from authpilot.exit_codes import EXIT_GENERIC_FAILURE


app = typer.Typer(
    name="authpilot",
    help="Drive a multi-factor provider sign-in to an authenticated session.",
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="rich",
)


def _version_callback(value: bool) -> None:
    """Print version and exit when --version is passed."""
    if value:
        typer.echo(f"authpilot {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    no_color: bool = typer.Option(
        False, "--no-color", help="Disable color output."
    ),
    quiet: bool = typer.Option(
        False, "--quiet", "-q", help="Suppress non-essential output."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug output."
    ),
) -> None:
    """Root callback executed before every sub-command.

    Initialises the global :class:`~authpilot.output.OutputManager` from
    CLI flags. With ``--verbose`` the standard :mod:`logging` records of
    the package internals are shown on stderr as well.

    Args:
        ctx: Typer invocation context.
        version: If ``True``, print the version string and exit.
        no_color: Disable all colour and Rich markup.
        quiet: Suppress non-essential diagnostic output.
        verbose: Enable debug-level diagnostic output.
    """
    from authpilot.output import OutputManager, set_output

    set_output(OutputManager(no_color=no_color, quiet=quiet, verbose=verbose))
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s", stream=sys.stderr)

    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


def _setup_signal_handlers() -> None:
    """Install a SIGINT handler so Ctrl-C exits cleanly."""

    def _handler(signum: int, frame: Any) -> None:  # noqa: ANN401
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)

    signal.signal(signal.SIGINT, _handler)


def _write_crash_log(exc: Exception) -> str:
    """Write a crash traceback to disk and return the log file path."""
    from authpilot.config import get_data_dir

    logs_dir = get_data_dir() / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_path = logs_dir / f"crash-{timestamp}.log"
    log_path.write_text(traceback.format_exc())
    return str(log_path)


_registered = False


def register_commands() -> None:
    """Attach the built-in commands to :data:`app`. Safe to call more than once."""
    global _registered
    if _registered:
        return
    from authpilot.commands.config import config_app
    from authpilot.commands.login import login_command, token_command
    from authpilot.commands.tools import extract_code_command, totp_command

    app.command("login")(login_command)
    app.command("token")(token_command)
    app.command("totp")(totp_command)
    app.command("extract-code")(extract_code_command)
    app.add_typer(config_app, name="config", help="Settings management.")
    _registered = True


def main() -> None:
    """CLI entry point invoked by the ``authpilot`` console script.

    Unhandled :class:`~authpilot.exceptions.AuthpilotError` instances
    cause a clean exit with the error's ``exit_code``. All other exceptions
    produce a crash log and a generic failure exit.

    Raises:
        SystemExit: Always raised (either by Typer or explicitly).
    """
    _setup_signal_handlers()
    try:
        register_commands()
        app()
    except SystemExit:
        raise
    except KeyboardInterrupt:
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)
    except Exception as exc:
        from authpilot.exceptions import AuthpilotError
        from authpilot.output import error

        if isinstance(exc, AuthpilotError):
            error(str(exc))
            sys.exit(exc.exit_code)
        else:
            log_path = _write_crash_log(exc)
            error(f"Unexpected error. Debug log: {log_path}")
            sys.exit(EXIT_GENERIC_FAILURE)
