"""
Authentication orchestration for bb.

This module ties the secret store, the host registry, the OAuth flow and the
API client together: interactive and piped login, logout, switching the
active user, status diagnostics, and building an authenticated client that
refreshes expired OAuth tokens.
"""

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TextIO

from filelock import FileLock, Timeout

from bb.core.api_client import BitbucketAPIClient, User
from bb.core.config import ensure_config_dir, get_config
from bb.core.credentials import (
    SOURCE_KEYRING,
    BearerCredential,
    Credential,
    CredentialResolver,
    credential_from_blob,
)
from bb.core.exceptions import (
    APIError,
    BBError,
    ConfigurationError,
    TokenExchangeError,
    TokenInvalidError,
    ValidationError,
)
from bb.core.hosts import HostsConfig
from bb.core.keyring_store import SecretNotFoundError, SecretStore
from bb.core.oauth import CALLBACK_TIMEOUT, AuthorizationCodeFlow, OAuthApp, OAuthManager
from bb.utils.browser import open_browser
from bb.utils.helpers import mask_token, read_line

logger = logging.getLogger(__name__)

# Timeout for the identity check made after login and by status.
VERIFY_TIMEOUT = 10
REFRESH_LOCK_TIMEOUT = 30
CREATED_AT_SETTING = "token_created_at"


class AuthState(str, Enum):
    """Outcome of an authentication status check."""

    LOGGED_IN = "logged_in"
    TOKEN_INVALID = "token_invalid"
    NOT_LOGGED_IN = "not_logged_in"


@dataclass
class AuthStatus:
    """Authentication status for a single host."""

    hostname: str
    state: AuthState
    user: str | None = None
    source: str | None = None
    git_protocol: str | None = None
    token: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {
            "hostname": self.hostname,
            "state": self.state.value,
            "user": self.user,
            "source": self.source,
            "git_protocol": self.git_protocol,
            "token": mask_token(self.token) if self.token else None,
            "error": self.error,
        }


class AuthManager:
    """Manages login state and credentials for Bitbucket hosts."""

    def __init__(
        self,
        store: SecretStore | None = None,
        oauth_manager: OAuthManager | None = None,
        hosts_path: Path | None = None,
        environ: Mapping[str, str] | None = None,
        browser: Callable[[str], bool] | None = None,
        callback_timeout: float = CALLBACK_TIMEOUT,
    ) -> None:
        self.store = store or SecretStore()
        self.oauth_manager = oauth_manager or OAuthManager()
        self.hosts_path = hosts_path
        self.environ = environ
        self.browser = browser or open_browser
        self.callback_timeout = callback_timeout
        self.resolver = CredentialResolver(self.store, environ)

    def _load_hosts(self) -> HostsConfig:
        return HostsConfig.load(self.hosts_path)

    def _verify(self, token: str) -> User:
        """Return the user owning ``token``; any API failure invalidates the login."""
        client = BitbucketAPIClient(token=token, timeout=VERIFY_TIMEOUT)
        try:
            user = client.get_current_user()
        except APIError as e:
            raise TokenInvalidError(f"Failed to verify token: {e}") from e

        if not user.username:
            raise TokenInvalidError("Failed to verify token: Bitbucket returned no username")
        logger.debug("Token belongs to %s", user.username)
        return user

    def _persist(
        self,
        hostname: str,
        user: str,
        blob: str,
        created_at: float | None = None,
        git_protocol: str | None = None,
    ) -> None:
        """Store the secret first, then record the user as active in the registry."""
        self.store.set(hostname, user, blob)
        with HostsConfig.edit(self.hosts_path) as registry:
            registry.set_active_user(hostname, user)
            registry.set_user_setting(
                hostname, user, CREATED_AT_SETTING, int(created_at) if created_at is not None else None
            )
            if git_protocol:
                registry.set_git_protocol(hostname, git_protocol)
        logger.info("Logged in to %s as %s", hostname, user)

    def login_oauth(
        self,
        hostname: str,
        port: int | None = None,
        launch_browser: bool = True,
        git_protocol: str | None = None,
        notify: Callable[[str], None] | None = None,
    ) -> User:
        """
        Log in through the OAuth 2.0 Authorization Code flow.

        Nothing is stored unless the code exchange and the identity check
        both succeed.

        Raises:
            ConfigurationError: If the OAuth consumer is not configured
            OAuthFlowError: If the browser step fails, times out or is forged
            TokenInvalidError: If the issued token cannot be verified
        """
        notify = notify or logger.info
        app = OAuthApp.from_env(self.environ)
        if port is None:
            port = int(get_config().get("oauth_callback_port", 0) or 0)

        with AuthorizationCodeFlow(app, port=port, timeout=self.callback_timeout) as flow:
            url = flow.authorization_url
            redirect_uri = flow.redirect_uri
            notify(f"Open this URL to authenticate: {url}")
            if launch_browser and not self.browser(url):
                notify("Could not open a browser; open the URL above manually")
            notify(f"Waiting for authentication on {redirect_uri}...")
            code = flow.wait_for_code()

        token = self.oauth_manager.exchange_code_for_token(app, code, redirect_uri)
        user = self._verify(token.access_token)
        self._persist(hostname, user.username, token.to_json(), token.created_at, git_protocol)
        return user

    def login_with_token(self, hostname: str, stream: TextIO, git_protocol: str | None = None) -> User:
        """
        Log in with a token read from the first line of ``stream``.

        Raises:
            ValidationError: If no token was provided
            TokenInvalidError: If Bitbucket rejects the token
        """
        token = read_line(stream)
        if not token:
            raise ValidationError(
                "No token provided on standard input",
                suggestion="Pipe a token into the command: echo $TOKEN | bb auth login --with-token",
            )

        user = self._verify(token)
        self._persist(hostname, user.username, token, git_protocol=git_protocol)
        return user

    def logout(self, hostname: str, user: str | None = None) -> str | None:
        """
        Remove ``user`` (default: the active user) from ``hostname``.

        Logging out a user that is not logged in succeeds.

        Returns:
            The user that was logged out, or None if nobody was logged in
        """
        with HostsConfig.edit(self.hosts_path) as registry:
            user = user or registry.get_active_user(hostname)
            if not user:
                logger.debug("Nobody is logged in to %s", hostname)
                return None

            self.store.delete(hostname, user)
            registry.remove_user(hostname, user)
            logger.info("Logged out %s from %s", user, hostname)
        return user

    def switch(self, hostname: str, user: str) -> None:
        """
        Make ``user`` the active account for ``hostname``.

        Raises:
            ValidationError: If ``user`` is not logged in to ``hostname``
        """
        with HostsConfig.edit(self.hosts_path) as registry:
            if not registry.has_user(hostname, user):
                known = registry.users(hostname)
                raise ValidationError(
                    f"{user} is not logged in to {hostname}",
                    suggestion=f"Known accounts: {', '.join(known)}" if known else "Run 'bb auth login' first",
                )
            registry.set_active_user(hostname, user)

    def active_user(self, hostname: str) -> str | None:
        return self._load_hosts().get_active_user(hostname)

    def resolve(self, hostname: str) -> Credential:
        """Resolve the credential for the active user of ``hostname``."""
        return self.resolver.resolve(hostname, self.active_user(hostname))

    def get_token(self, hostname: str) -> str:
        """Return the secret presented for ``hostname`` (the access token for OAuth logins)."""
        return self.resolve(hostname).secret

    def status(self, hostname: str) -> AuthStatus:
        """
        Diagnose the login for ``hostname``.

        Never raises: every failure is folded into the returned state.
        """
        try:
            registry = self._load_hosts()
            user = registry.get_active_user(hostname)
            credential = self.resolver.resolve(hostname, user)
        except BBError as e:
            logger.debug("No credential for %s: %s", hostname, e)
            return AuthStatus(hostname, AuthState.NOT_LOGGED_IN, error=str(e))

        status = AuthStatus(
            hostname,
            AuthState.TOKEN_INVALID,
            user=user,
            source=credential.source,
            git_protocol=registry.get_git_protocol(hostname),
            token=credential.secret,
        )
        try:
            client = BitbucketAPIClient(credential=credential, timeout=VERIFY_TIMEOUT)
            status.user = client.get_current_user().username or user
        except BBError as e:
            logger.debug("Credential check for %s failed: %s", hostname, e)
            status.error = str(e)
            return status

        status.state = AuthState.LOGGED_IN
        return status

    def get_api_client(self, hostname: str) -> BitbucketAPIClient:
        """
        Build an API client for the active user of ``hostname``.

        A stored OAuth token is refreshed before use when it is about to
        expire, and once more when the API answers 401.

        Raises:
            NotAuthenticatedError: If no credential is available
            InvalidCredentialError: If the stored credential is malformed
        """
        registry = self._load_hosts()
        user = registry.get_active_user(hostname)
        credential = self.resolver.resolve(hostname, user)

        if (
            user is None
            or not isinstance(credential, BearerCredential)
            or credential.oauth_token is None
            or credential.source != SOURCE_KEYRING
        ):
            return BitbucketAPIClient(credential=credential)

        oauth_token = credential.oauth_token
        oauth_token.created_at = registry.get_user_setting(hostname, user, CREATED_AT_SETTING)
        if oauth_token.is_expired:
            logger.debug("Access token for %s@%s has expired", user, hostname)
            credential = self.refresh(hostname, user, credential) or credential

        current = credential

        def on_unauthorized() -> Credential | None:
            return self.refresh(hostname, user, current)

        return BitbucketAPIClient(credential=credential, on_unauthorized=on_unauthorized)

    def refresh(self, hostname: str, user: str, stale: BearerCredential) -> BearerCredential | None:
        """
        Replace the stored OAuth token of ``user`` with a refreshed one.

        Concurrent refreshes of the same account are serialised with a lock
        file; a token already rotated by another process is reused.

        Returns:
            The new credential, or None if the token cannot be refreshed here

        Raises:
            TokenInvalidError: If the token endpoint rejects the refresh token
        """
        oauth_token = stale.oauth_token
        if oauth_token is None or not oauth_token.refresh_token:
            return None

        app = OAuthApp.from_env_or_none(self.environ)
        if app is None:
            logger.debug("OAuth consumer not configured; not refreshing %s@%s", user, hostname)
            return None

        lock_path = ensure_config_dir() / f"{hostname}_{user}.refresh.lock"
        try:
            with FileLock(str(lock_path), timeout=REFRESH_LOCK_TIMEOUT):
                try:
                    current = credential_from_blob(self.store.get(hostname, user))
                except SecretNotFoundError:
                    return None
                if isinstance(current, BearerCredential) and current.token != stale.token:
                    logger.debug("Token for %s@%s was already refreshed", user, hostname)
                    return current

                try:
                    token = self.oauth_manager.refresh_access_token(app, oauth_token.refresh_token)
                except TokenExchangeError as e:
                    raise TokenInvalidError(
                        "Access token expired and could not be refreshed",
                        suggestion=f"Run 'bb auth login --hostname {hostname}' to re-authenticate",
                    ) from e

                self.store.set(hostname, user, token.to_json())
                with HostsConfig.edit(self.hosts_path) as registry:
                    if registry.has_user(hostname, user):
                        registry.set_user_setting(
                            hostname, user, CREATED_AT_SETTING, int(token.created_at or time.time())
                        )
        except Timeout as e:
            raise ConfigurationError(
                f"Timed out waiting for lock on {lock_path.name}",
                suggestion=f"Another bb process may be refreshing; remove {lock_path} if it is stale",
            ) from e
        except OSError as e:
            raise ConfigurationError(f"Could not create refresh lock: {e}") from e

        logger.info("Refreshed access token for %s@%s", user, hostname)
        return BearerCredential(token=token.access_token, source=SOURCE_KEYRING, oauth_token=token)
