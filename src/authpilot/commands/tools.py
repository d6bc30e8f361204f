"""Offline helpers: current TOTP code and code extraction from saved emails."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from authpilot.output import error, info, print_data, suggest, warning


def totp_command(
    source: str = typer.Argument(
        "prompt", help="Secret source: env:VAR, file:/path, prompt, or the base32 secret."
    ),
) -> None:
    """Print the current one-time code for a TOTP secret.

    The secret itself is never printed.

    Example::

        authpilot totp env:ACCOUNT_TOTP
    """
    from authpilot.config import resolve_credential
    from authpilot.exceptions import InvalidUsageError
    from authpilot.totp import generate_code, seconds_remaining

    secret = resolve_credential(source, label="TOTP secret")
    try:
        code = generate_code(secret)
    except ValueError as exc:
        raise InvalidUsageError(str(exc)) from exc
    print_data(code)
    remaining = seconds_remaining()
    if remaining < 5:
        warning(f"Code expires in {remaining}s; wait for the next one if typing it by hand")
    else:
        info(f"Valid for another {remaining}s")


def extract_code_command(
    file: Path = typer.Argument(..., help="Text file holding an email body.", exists=True, dir_okay=False),
    fallback: bool = typer.Option(
        True, "--fallback/--no-fallback", help="Accept the last bare 4-8 digit run when no phrase matches."
    ),
    brand: Optional[str] = typer.Option(None, "--brand", help="Provider name for the phrase patterns."),
) -> None:
    """Extract a sign-in code from an email saved as text.

    Useful for checking how a new email template is parsed.

    Raises:
        typer.Exit: With code 1 if no code is found.
    """
    from authpilot.codes import last_digit_run, match_code
    from authpilot.config import load_settings

    text = file.read_text(encoding="utf-8", errors="replace")
    brand = brand or load_settings().provider.brand
    found = match_code(text, brand)
    if found is not None:
        code, pattern = found
        info(f"Matched pattern: {pattern}")
        print_data(code)
        return
    if fallback:
        code = last_digit_run(text)
        if code is not None:
            info("No phrase matched; using the last digit run")
            print_data(code)
            return
    error("No code found")
    if not fallback:
        suggest("Retry with --fallback to accept bare digit runs")
    raise typer.Exit(code=1)
