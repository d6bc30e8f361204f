"""Config commands -- view and create the settings file.

Provides the ``authpilot config`` sub-command group. Settings live in
``config.json`` under the config directory unless ``AUTHPILOT_CONFIG``
points elsewhere.
"""

from __future__ import annotations

import typer

from authpilot.output import error, info, print_json, success, suggest


config_app = typer.Typer(no_args_is_help=True)


@config_app.command("show")
def config_show() -> None:
    """Show the effective settings.

    Missing files yield the defaults.

    Example::

        authpilot config show
    """
    from authpilot.config import accounts_path, load_settings, settings_path

    settings = load_settings()
    info(f"Settings file: {settings_path()}")
    info(f"Accounts file: {accounts_path()}")
    print_json(settings.model_dump(mode="json"))


@config_app.command("init")
def config_init(
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing settings file."),
) -> None:
    """Write a settings file populated with the defaults.

    Raises:
        typer.Exit: With code 2 if the file exists and ``--force`` was not given.
    """
    from authpilot.config import save_settings, settings_path
    from authpilot.models import Settings

    path = settings_path()
    if path.exists() and not force:
        error(f"Settings file already exists: {path}")
        suggest("Use --force to overwrite it")
        raise typer.Exit(code=2)
    written = save_settings(Settings(), path)
    success(f"Settings written to {written}")


@config_app.command("accounts")
def config_accounts() -> None:
    """List the configured accounts without revealing credentials.

    Example::

        authpilot config accounts
    """
    from authpilot.config import accounts_path, load_accounts
    from authpilot.output import print_table

    accounts = load_accounts()
    info(f"Accounts file: {accounts_path()}")
    rows = [
        [
            entry.email,
            "yes" if entry.totp else "no",
            entry.recovery_email or "-",
            "yes" if entry.enabled else "no",
            "yes" if entry.do_later else "no",
        ]
        for entry in accounts
    ]
    print_table(["EMAIL", "TOTP", "RECOVERY", "ENABLED", "DO LATER"], rows, title="Accounts")
