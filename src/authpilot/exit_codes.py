"""Numeric process exit codes used by the ``authpilot`` command line.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~authpilot.exceptions.AuthpilotError` subclass.
Schedulers and shell wrappers can inspect the exit code to decide whether
an account should be retried later without parsing stderr.

Example::

    $ authpilot login user@example.com
    $ echo $?
    4   # EXIT_ACCOUNT_LOCKED -- remove the account from accounts.json
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments or missing required parameters."""

EXIT_LOGIN_FAILED = 3
"""The sign-in flow was exhausted without reaching an authenticated state."""

EXIT_ACCOUNT_LOCKED = 4
"""The identity provider reports the account as locked."""

EXIT_SECURITY_STANDBY = 5
"""A security incident latched the process into standby."""

EXIT_TOKEN_EXCHANGE = 6
"""The authorization-code exchange against the token endpoint failed."""

EXIT_ABORTED = 7
"""The run was stopped by the caller at an account boundary."""
