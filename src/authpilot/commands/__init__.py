"""Built-in CLI sub-commands for authpilot.

* :mod:`~authpilot.commands.login` -- ``login`` and ``token`` for one
  account from ``accounts.json``.
* :mod:`~authpilot.commands.tools` -- ``totp`` and ``extract-code``,
  offline helpers for checking secrets and code emails.
* :mod:`~authpilot.commands.config` -- view and create the settings file,
  list the configured accounts.

Each module either exports a :class:`typer.Typer` sub-application (for
multi-command groups like ``config``) or plain callback functions
registered directly on the root app.
"""
