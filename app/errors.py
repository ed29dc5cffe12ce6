"""Exception hierarchy shared by the MAL integration services."""

from __future__ import annotations


class MALError(Exception):
    """Base for every failure raised by the MAL integration."""

    status_code = 500
    code = "mal_error"

    def to_payload(self) -> dict[str, str]:
        return {"error": self.code, "description": str(self) or self.code}


class NotConfigured(MALError):
    """No MAL client id is available."""

    status_code = 503
    code = "not_configured"


class OAuthFlowError(MALError):
    """The authorization callback could not be accepted."""

    status_code = 400
    code = "oauth_error"


class MissingState(OAuthFlowError):
    code = "missing_state"


class StateMismatch(OAuthFlowError):
    code = "state_mismatch"


class MissingCode(OAuthFlowError):
    code = "missing_code"


class FlowNotStarted(OAuthFlowError):
    code = "flow_not_started"


class AuthorizationDenied(OAuthFlowError):
    """MAL redirected back with an ``error`` parameter."""

    code = "authorization_denied"


class TokenEndpointError(MALError):
    """The token endpoint rejected a request or could not be reached."""

    status_code = 502
    code = "token_endpoint_error"

    def __init__(self, message: str, *, status: int | None = None):
        super().__init__(message)
        self.status = status


class TokenExchangeFailed(TokenEndpointError):
    code = "token_exchange_failed"


class RefreshFailed(TokenEndpointError):
    code = "refresh_failed"


class NotAuthenticated(MALError):
    status_code = 401
    code = "not_authenticated"


class AuthenticationExpired(MALError):
    status_code = 401
    code = "authentication_expired"


class RateLimited(MALError):
    """MAL kept answering 429 after the retry budget was spent."""

    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str, *, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class MALRequestError(MALError):
    """Any other non-successful MAL API response or transport failure."""

    status_code = 502
    code = "mal_request_failed"

    def __init__(self, message: str, *, status: int | None = None):
        super().__init__(message)
        self.status = status
