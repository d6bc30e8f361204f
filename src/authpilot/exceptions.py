"""Exception hierarchy for authpilot.

All exceptions inherit from :class:`AuthpilotError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`authpilot.exit_codes`.
The top-level error handler in :func:`authpilot.app.main` catches
``AuthpilotError`` and exits with the appropriate code, while unexpected
exceptions produce a crash log and exit with :data:`EXIT_GENERIC_FAILURE`.

Only a few of these ever cross the :meth:`~authpilot.orchestrator.LoginOrchestrator.login`
boundary: :class:`AccountLockedError`, :class:`LoginAbortedError` and whatever
unexpected error broke the attempt loop. UI trouble inside a stage is
expressed as :class:`SurfaceError` and converted into "try the next
heuristic" long before it reaches the caller.

Subclass hierarchy::

    AuthpilotError (exit 1)
    +-- InvalidUsageError      (exit 2)
    +-- ConfigError            (exit 1)
    +-- SurfaceError           (exit 1)
    +-- LoginFailedError       (exit 3)
    +-- AccountLockedError     (exit 4)
    +-- SecurityStandbyError   (exit 5)
    +-- TokenExchangeError     (exit 6)
    +-- LoginAbortedError      (exit 7)
"""

from authpilot.exit_codes import (
    EXIT_ABORTED,
    EXIT_ACCOUNT_LOCKED,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
    EXIT_LOGIN_FAILED,
    EXIT_SECURITY_STANDBY,
    EXIT_TOKEN_EXCHANGE,
)


class AuthpilotError(Exception):
    """Base exception for all authpilot errors.

    Every subclass sets a class-level ``exit_code`` corresponding to one of
    the constants in :mod:`authpilot.exit_codes`. The entry point catches
    this exception type and calls ``sys.exit(exc.exit_code)``.

    Args:
        message: Human-readable error description printed to stderr.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class InvalidUsageError(AuthpilotError):
    """Raised for invalid CLI arguments or an API used out of order."""

    exit_code = EXIT_INVALID_USAGE


class ConfigError(AuthpilotError):
    """Raised for configuration problems (missing files, invalid JSON, bad credential sources)."""

    exit_code = EXIT_GENERIC_FAILURE


class SurfaceError(AuthpilotError):
    """Raised by a UI surface when an interaction fails (detached element, closed tab, navigation error).

    Stages treat this the same as a timed-out wait: the element is
    considered absent and the next heuristic in the chain is tried.
    """

    exit_code = EXIT_GENERIC_FAILURE


class LoginFailedError(AuthpilotError):
    """Raised by the CLI when an account could not be signed in after all attempts."""

    exit_code = EXIT_LOGIN_FAILED


class AccountLockedError(AuthpilotError):
    """Raised when the provider shows its account-locked landing page.

    Args:
        email: The account that is locked.
    """

    exit_code = EXIT_ACCOUNT_LOCKED

    def __init__(self, email: str):
        super().__init__(
            f"Account {email} has been locked. Remove it from accounts.json and restart."
        )
        self.email = email


class SecurityStandbyError(AuthpilotError):
    """Raised by the CLI when a run ended in security standby."""

    exit_code = EXIT_SECURITY_STANDBY


class TokenExchangeError(AuthpilotError):
    """Raised when the authorization code cannot be obtained or exchanged for a token."""

    exit_code = EXIT_TOKEN_EXCHANGE


class LoginAbortedError(AuthpilotError):
    """Raised when the caller requested a stop while the flow was waiting."""

    exit_code = EXIT_ABORTED
