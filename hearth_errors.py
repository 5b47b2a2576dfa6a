"""Error taxonomy for the authorization core.

Each error carries the OAuth error code and the HTTP status the boundary
should answer with. Redemption failures all collapse into InvalidGrant so a
caller cannot tell which check failed.
"""


class AuthError(Exception):
    error = "invalid_request"
    status = 400

    def __init__(self, message: str | None = None):
        super().__init__(message or self.error)
        self.message = message


class MissingParameter(AuthError):
    def __init__(self, name: str):
        super().__init__(f"missing parameter {name}")
        self.name = name


class NoPendingAuthorization(AuthError):
    def __init__(self):
        super().__init__("no authorization in progress for this session")


class CsrfMismatch(AuthError):
    error = "invalid_csrf_token"
    status = 403

    def __init__(self):
        super().__init__("Invalid CSRF token.")


class InvalidUser(AuthError):
    error = "invalid_user"


class InvalidPassword(AuthError):
    error = "invalid_password"


class InvalidGrant(AuthError):
    error = "invalid_grant"


class TokenNotFound(AuthError):
    def __init__(self):
        super().__init__("unknown access token")


class TokenExpired(AuthError):
    error = "invalid_token"
    status = 401

    def __init__(self):
        super().__init__("The access token has expired")


class SessionReplayDetected(AuthError):
    """A session was presented outside the context it was issued for."""

    error = "session_replay"
    status = 403

    def __init__(self, identity: str, reason: str = "identity_mismatch"):
        super().__init__("Session replay attack detected. This has been logged.")
        self.identity = identity
        self.reason = reason
