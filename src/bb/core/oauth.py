"""
OAuth 2.0 support for Bitbucket Cloud authentication.

This module holds the pieces of the Authorization Code flow: the OAuth
consumer credentials, CSRF state generation, the loopback callback listener,
and the token endpoint calls (code exchange and refresh).
"""

import logging
import os
import queue
import secrets
import threading
import time
import urllib.parse
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

import requests

from bb.core.credentials import OAuthToken
from bb.core.exceptions import (
    AuthorizationDeniedError,
    AuthorizationTimeoutError,
    BBError,
    ConfigurationError,
    CSRFViolationError,
    OAuthFlowError,
    TokenExchangeError,
    TransportError,
)

logger = logging.getLogger(__name__)

# Bitbucket OAuth 2.0 endpoints
AUTHORIZE_URL = "https://bitbucket.org/site/oauth2/authorize"
ACCESS_TOKEN_URL = "https://bitbucket.org/site/oauth2/access_token"  # noqa: S105

CLIENT_ID_ENV = "BB_OAUTH_CLIENT_ID"
CLIENT_SECRET_ENV = "BB_OAUTH_CLIENT_SECRET"  # noqa: S105

CALLBACK_PATH = "/callback"
CALLBACK_TIMEOUT = 5 * 60
# Seconds a callback connection may stay silent before it is dropped.
READ_TIMEOUT = 5
TOKEN_TIMEOUT = 30

SETUP_INSTRUCTIONS = f"""OAuth client credentials not configured.

To use OAuth authentication, create an OAuth consumer in Bitbucket:
1. Go to your workspace settings > OAuth consumers > Add consumer
2. Set the callback URL to http://localhost:<port>/callback, using the port
   you pass to 'bb auth login --port' (or 'bb config set oauth_callback_port')
3. Grant Account (Read), Repositories, Pull requests and the other scopes you need
4. Export the consumer key and secret:
   export {CLIENT_ID_ENV}='your_client_id'
   export {CLIENT_SECRET_ENV}='your_client_secret'"""

SUCCESS_PAGE = b"""<!DOCTYPE html>
<html>
<head><title>Authentication Successful</title></head>
<body style="font-family: sans-serif; text-align: center; margin-top: 20vh;">
<h1>Authentication Successful</h1>
<p>You can close this window and return to the terminal.</p>
</body>
</html>
"""


@dataclass
class OAuthApp:
    """OAuth 2.0 consumer credentials."""

    client_id: str
    client_secret: str

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "OAuthApp":
        """
        Read the consumer credentials from the environment.

        Raises:
            ConfigurationError: If either variable is missing or empty
        """
        app = cls.from_env_or_none(environ)
        if app is None:
            raise ConfigurationError(
                SETUP_INSTRUCTIONS,
                suggestion="Or authenticate with an access token: bb auth login --with-token",
            )
        return app

    @classmethod
    def from_env_or_none(cls, environ: dict[str, str] | None = None) -> "OAuthApp | None":
        environ = os.environ if environ is None else environ
        client_id = environ.get(CLIENT_ID_ENV, "")
        client_secret = environ.get(CLIENT_SECRET_ENV, "")
        if not client_id or not client_secret:
            return None
        return cls(client_id=client_id, client_secret=client_secret)


def generate_state() -> str:
    """Return a random 128-bit value as lowercase hex."""
    return secrets.token_hex(16)


def build_authorization_url(client_id: str, redirect_uri: str, state: str) -> str:
    """Build the URL the user visits to authorize bb."""
    params = {
        "client_id": client_id,
        "response_type": "code",
        "redirect_uri": redirect_uri,
        "state": state,
    }
    return f"{AUTHORIZE_URL}?{urllib.parse.urlencode(params)}"


class CallbackServer(ThreadingHTTPServer):
    """
    Loopback HTTP server that receives the authorization redirect.

    Each connection is handled on its own thread, so a client that connects
    and stays silent cannot hold up the real redirect. ``server_close`` joins
    the handler threads; each lives at most ``read_timeout`` seconds once
    its client goes quiet.
    """

    daemon_threads = False

    def __init__(self, expected_state: str, port: int = 0, read_timeout: float = READ_TIMEOUT) -> None:
        super().__init__(("127.0.0.1", port), CallbackHandler)
        self.expected_state = expected_state
        self.read_timeout = read_timeout
        self.results: "queue.Queue[str | BBError]" = queue.Queue()

    @property
    def redirect_uri(self) -> str:
        return f"http://localhost:{self.server_port}{CALLBACK_PATH}"


class CallbackHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the OAuth callback."""

    server: CallbackServer

    def setup(self) -> None:
        self.timeout = self.server.read_timeout
        super().setup()

    def do_GET(self) -> None:
        """Validate the callback and hand the code (or the failure) to the flow."""
        parsed_url = urllib.parse.urlparse(self.path)
        if parsed_url.path != CALLBACK_PATH:
            self.send_error(404)
            return

        query = urllib.parse.parse_qs(parsed_url.query)

        def param(name: str) -> str:
            return query.get(name, [""])[0]

        if param("state") != self.server.expected_state:
            self._respond_error("State mismatch")
            self.server.results.put(CSRFViolationError())
            return

        error = param("error")
        if error:
            self._respond_error(error)
            self.server.results.put(AuthorizationDeniedError(error, param("error_description") or None))
            return

        code = param("code")
        if not code:
            self._respond_error("No code received")
            self.server.results.put(OAuthFlowError("No authorization code received"))
            return

        self.send_response(200)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(SUCCESS_PAGE)))
        self.end_headers()
        self.wfile.write(SUCCESS_PAGE)
        self.server.results.put(code)

    def _respond_error(self, message: str) -> None:
        body = message.encode("utf-8")
        self.send_response(400)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("callback server: " + format, *args)


class AuthorizationCodeFlow:
    """
    A single interactive authorization attempt.

    Entering the context generates the state, binds the listener and starts
    serving it on a background thread. Leaving it always shuts the listener
    down and joins the thread.
    """

    def __init__(
        self,
        app: OAuthApp,
        port: int = 0,
        timeout: float = CALLBACK_TIMEOUT,
        read_timeout: float = READ_TIMEOUT,
    ) -> None:
        self.app = app
        self.port = port
        self.timeout = timeout
        self.read_timeout = read_timeout
        self.state = ""
        self.server: CallbackServer | None = None
        self._thread: threading.Thread | None = None
        self._deadline = 0.0

    def __enter__(self) -> "AuthorizationCodeFlow":
        self.state = generate_state()
        self._deadline = time.monotonic() + self.timeout
        logger.debug("Generated OAuth state")

        try:
            self.server = CallbackServer(self.state, self.port, self.read_timeout)
        except OSError as e:
            raise OAuthFlowError(
                f"Failed to start local server: {e}",
                suggestion="Choose another port with --port",
            ) from e
        logger.debug("Callback listener bound on port %s", self.server.server_port)

        self._thread = threading.Thread(
            target=self.server.serve_forever,
            kwargs={"poll_interval": 0.1},
            name="bb-oauth-callback",
            daemon=True,
        )
        self._thread.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def redirect_uri(self) -> str:
        if self.server is None:
            raise OAuthFlowError("Callback listener is not running")
        return self.server.redirect_uri

    @property
    def authorization_url(self) -> str:
        return build_authorization_url(self.app.client_id, self.redirect_uri, self.state)

    def wait_for_code(self) -> str:
        """
        Block until the callback delivers a code or the deadline passes.

        Raises:
            CSRFViolationError: If the callback carries another state
            AuthorizationDeniedError: If the callback carries an error
            AuthorizationTimeoutError: If no callback arrives in time
            OAuthFlowError: If the callback carries no code
        """
        if self.server is None:
            raise OAuthFlowError("Callback listener is not running")

        remaining = self._deadline - time.monotonic()
        try:
            result = self.server.results.get(timeout=max(remaining, 0))
        except queue.Empty as e:
            raise AuthorizationTimeoutError(self.timeout) from e

        if isinstance(result, BBError):
            raise result
        logger.debug("Authorization code received")
        return result

    def close(self) -> None:
        """Stop the listener and release its socket."""
        if self.server is None:
            return
        if self._thread is not None and self._thread.is_alive():
            self.server.shutdown()
            self._thread.join()
        self.server.server_close()
        logger.debug("Callback listener closed")
        self.server = None
        self._thread = None


class OAuthManager:
    """Talks to Bitbucket's OAuth 2.0 token endpoint."""

    def __init__(self, session: requests.Session | None = None, timeout: float = TOKEN_TIMEOUT) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout

    def _token_request(self, oauth_app: OAuthApp, data: dict[str, str]) -> dict[str, Any]:
        try:
            response = self.session.post(
                ACCESS_TOKEN_URL,
                data=data,
                auth=(oauth_app.client_id, oauth_app.client_secret),
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise TransportError(f"Network error contacting the token endpoint: {e}") from e

        if response.status_code != 200:
            raise TokenExchangeError(response.status_code, grant=data["grant_type"])

        try:
            token_data = response.json()
        except ValueError as e:
            raise OAuthFlowError(f"Could not parse token response: {e}") from e

        if not isinstance(token_data, dict) or not token_data.get("access_token"):
            raise OAuthFlowError("Token response did not include an access token")
        return token_data

    def exchange_code_for_token(self, oauth_app: OAuthApp, authorization_code: str, redirect_uri: str) -> OAuthToken:
        """
        Exchange an authorization code for an access token.

        ``redirect_uri`` must equal the one sent in the authorization request.

        Raises:
            TokenExchangeError: If the token endpoint does not answer 200
            OAuthFlowError: If the response carries no access token
            TransportError: If the endpoint cannot be reached
        """
        token_data = self._token_request(
            oauth_app,
            {
                "grant_type": "authorization_code",
                "code": authorization_code,
                "redirect_uri": redirect_uri,
            },
        )
        return OAuthToken.from_dict(token_data, created_at=time.time())

    def refresh_access_token(self, oauth_app: OAuthApp, refresh_token: str) -> OAuthToken:
        """
        Exchange a refresh token for a new access token.

        The old refresh token is kept when the response does not include one.
        """
        token_data = self._token_request(
            oauth_app,
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
        )
        token = OAuthToken.from_dict(token_data, created_at=time.time())
        if not token.refresh_token:
            token.refresh_token = refresh_token
        return token
