"""
Custom exceptions for bb.

This module defines all custom exceptions used throughout the bb application,
providing structured error handling with appropriate exit codes and user-friendly messages.
"""

from typing import Any

LOGIN_SUGGESTION = "Run 'bb auth login' to authenticate"


class BBError(Exception):
    """Base exception for all bb errors."""

    def __init__(
        self,
        message: str,
        exit_code: int = 1,
        suggestion: str | None = None,
    ) -> None:
        """
        Initialize a bb error.

        Args:
            message: The error message to display to the user
            exit_code: The exit code to use when terminating the program
            suggestion: Optional suggestion for how to resolve the error
        """
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code
        self.suggestion = suggestion

    def __str__(self) -> str:
        return self.message


class AuthenticationError(BBError):
    """Raised when authentication fails or credentials are unusable."""

    def __init__(
        self,
        message: str = "Authentication failed",
        suggestion: str | None = None,
    ) -> None:
        if suggestion is None:
            suggestion = LOGIN_SUGGESTION
        super().__init__(message, exit_code=2, suggestion=suggestion)


class NotAuthenticatedError(AuthenticationError):
    """Raised when no usable credential exists for a host/user pair."""

    def __init__(self, hostname: str, user: str | None = None) -> None:
        self.hostname = hostname
        self.user = user
        if user:
            message = f"Not logged in to {hostname} as {user}"
        else:
            message = f"Not logged in to {hostname}"
        super().__init__(message)


class TokenInvalidError(AuthenticationError):
    """Raised when a token is rejected by Bitbucket."""

    def __init__(self, message: str = "Token is invalid or expired", suggestion: str | None = None) -> None:
        super().__init__(message, suggestion=suggestion or "Run 'bb auth login' to re-authenticate")


class InvalidCredentialError(AuthenticationError):
    """Raised when a stored credential blob cannot be used."""

    def __init__(self, message: str = "Invalid stored credentials format") -> None:
        super().__init__(message, suggestion="Run 'bb auth login' to replace the stored credentials")


class OAuthFlowError(AuthenticationError):
    """Base class for failures of the interactive OAuth flow."""


class CSRFViolationError(OAuthFlowError):
    """Raised when the callback state does not match the issued state."""

    def __init__(self) -> None:
        super().__init__(
            "OAuth state mismatch, possible CSRF attack",
            suggestion="Start a fresh login with 'bb auth login'",
        )


class AuthorizationDeniedError(OAuthFlowError):
    """Raised when the authorization server redirects back with an error."""

    def __init__(self, error: str, description: str | None = None) -> None:
        self.error = error
        self.description = description
        message = f"Authorization failed: {error}"
        if description:
            message = f"{message} - {description}"
        super().__init__(message)


class AuthorizationTimeoutError(OAuthFlowError):
    """Raised when no callback arrives before the deadline."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(
            "Authentication timed out",
            suggestion=f"Complete the browser step within {int(timeout)} seconds and try again",
        )


class TokenExchangeError(OAuthFlowError):
    """Raised when the token endpoint does not return 200."""

    def __init__(self, status_code: int, grant: str = "authorization_code") -> None:
        self.status_code = status_code
        self.grant = grant
        action = "refresh" if grant == "refresh_token" else "exchange"
        super().__init__(f"Token {action} failed with status {status_code}")


class APIError(BBError):
    """Raised when the Bitbucket API returns an error."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        detail: str = "",
        fields: dict[str, list[str]] | None = None,
        response_data: Any = None,
        suggestion: str | None = None,
        exit_code: int = 3,
    ) -> None:
        """
        Initialize an API error.

        Args:
            message: The error message from the envelope, or the HTTP reason phrase
            status_code: HTTP status code from the API response
            detail: Optional detail string from the error envelope
            fields: Per-field validation messages from the error envelope
            response_data: Raw decoded response body, if any
            suggestion: Optional suggestion for resolution
        """
        self.status_code = status_code
        self.detail = detail
        self.fields = fields
        self.response_data = response_data
        super().__init__(message, exit_code=exit_code, suggestion=suggestion)

    def __str__(self) -> str:
        text = f"API error {self.status_code}: {self.message}" if self.status_code else self.message
        if self.detail:
            text = f"{text} - {self.detail}"
        return text


class UnauthorizedError(APIError):
    """Raised when the API answers 401."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("suggestion", "Run 'bb auth login' to re-authenticate")
        super().__init__(message, status_code=401, exit_code=2, **kwargs)


class TransportError(BBError):
    """Raised when a request cannot be sent or its response cannot be read."""

    def __init__(self, message: str, suggestion: str | None = None) -> None:
        if suggestion is None:
            suggestion = "Check your internet connection and try again"
        super().__init__(message, exit_code=9, suggestion=suggestion)


class ValidationError(BBError):
    """Raised when input validation fails."""

    def __init__(
        self,
        message: str,
        suggestion: str | None = None,
    ) -> None:
        super().__init__(message, exit_code=4, suggestion=suggestion)


class ConfigurationError(BBError):
    """Raised when there's an issue with configuration."""

    def __init__(
        self,
        message: str,
        suggestion: str | None = None,
    ) -> None:
        super().__init__(message, exit_code=6, suggestion=suggestion)


class SecretStoreError(BBError):
    """Raised when the OS secret store fails for a reason other than a missing key."""

    def __init__(self, message: str, suggestion: str | None = None) -> None:
        if suggestion is None:
            suggestion = "Check that your system keychain is unlocked and reachable"
        super().__init__(message, exit_code=8, suggestion=suggestion)
