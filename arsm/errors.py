"""
ARSM - Error Types
====================
Domain errors raised by the credential store, token issuer, process
supervisor and installer.

Every error derives from PanelError and carries a human-readable message.
The HTTP layer (main.py) renders PanelError instances as a response
envelope with a non-zero ``code``; only authorization problems are turned
into 401/403 status codes.
"""


class PanelError(Exception):
    """Base class for all errors surfaced to API clients."""

    code: int = 1
    default_message: str = "Operation failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


# -- Credential store ----------------------------------------------------------

class InvalidCredentials(PanelError):
    # Unknown user and wrong password share this message on purpose.
    default_message = "Invalid username or password"


class AlreadyExists(PanelError):
    default_message = "User already exists"


class NotFound(PanelError):
    default_message = "User not found"


class Protected(PanelError):
    default_message = "The default admin account cannot be deleted"


class InvalidInput(PanelError):
    default_message = "Username and password must not be empty"


class InvalidRole(InvalidInput):
    default_message = "Invalid role"


# -- Tokens --------------------------------------------------------------------

class InvalidToken(PanelError):
    code = 401
    default_message = "Invalid authentication token"


class TokenExpired(InvalidToken):
    default_message = "Authentication token has expired"


# -- Process supervisor / installer -------------------------------------------

class AlreadyRunning(PanelError):
    default_message = "Server is already running"


class NotRunning(PanelError):
    default_message = "Server is not running"


class IOFailure(PanelError):
    default_message = "I/O operation failed"


class PermissionDenied(PanelError):
    # Action-level refusal reported in the envelope, unlike route-level 403s
    default_message = "Permission denied"
