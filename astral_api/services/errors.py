from __future__ import annotations


class OAuthError(Exception):
    """Rendered as ``{"error": ..., "error_description": ...}``."""

    error = "server_error"
    status_code = 400

    def __init__(self, description: str, *, status_code: int | None = None):
        super().__init__(description)
        self.description = description
        if status_code is not None:
            self.status_code = status_code

    def as_dict(self) -> dict:
        return {"error": self.error, "error_description": self.description}


class InvalidRequest(OAuthError):
    error = "invalid_request"


class UnsupportedGrantType(OAuthError):
    error = "unsupported_grant_type"


class InvalidGrant(OAuthError):
    error = "invalid_grant"


class UnknownClient(OAuthError):
    error = "unknown_client"


class InvalidRedirectUri(OAuthError):
    error = "invalid_redirect_uri"


class ServerError(OAuthError):
    error = "server_error"
    status_code = 500
