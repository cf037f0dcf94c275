"""
Credential classification and resolution for bb.

A credential blob stored in the keyring takes one of three forms:

* ``basic:<email>:<api token>`` - HTTP Basic credentials (Atlassian API token)
* a JSON OAuth token envelope with a non-empty ``access_token``
* any other non-empty string - a plain bearer token

The forms are told apart by inspection, in that order. The resolver turns a
blob (or an environment variable) into an in-memory credential that the API
client knows how to present.
"""

import base64
import json
import logging
import os
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from bb.core.exceptions import NotAuthenticatedError
from bb.core.keyring_store import SecretNotFoundError, SecretStore

logger = logging.getLogger(__name__)

BASIC_PREFIX = "basic:"
ENV_TOKEN_VARS = ("BB_TOKEN", "BITBUCKET_TOKEN")

SOURCE_ENVIRONMENT = "environment"
SOURCE_KEYRING = "keyring"

# Seconds before the nominal expiry at which a token is treated as expired.
EXPIRY_BUFFER = 60


class BlobKind(str, Enum):
    """The storage encoding of a credential blob."""

    BASIC = "basic"
    OAUTH = "oauth"
    PLAIN = "plain"


@dataclass
class OAuthToken:
    """OAuth 2.0 token envelope as returned by Bitbucket's token endpoint."""

    access_token: str
    refresh_token: str | None = None
    token_type: str | None = None
    expires_in: int | None = None
    scopes: str | None = None
    created_at: float | None = field(default=None, compare=False)
    raw: dict[str, Any] | None = field(default=None, compare=False, repr=False)

    @property
    def expires_at(self) -> float | None:
        """Get the expiration timestamp, when it is known."""
        if self.expires_in is None or self.created_at is None:
            return None
        return self.created_at + self.expires_in

    @property
    def is_expired(self) -> bool:
        """Check if the token is expired or about to expire."""
        expires_at = self.expires_at
        if expires_at is None:
            return False
        return time.time() >= expires_at - EXPIRY_BUFFER

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to the envelope mapping.

        An envelope read from the token endpoint or the keyring is returned as
        it was received, with only a carried-over ``refresh_token`` added.
        Otherwise absent fields are omitted.
        """
        if self.raw is not None:
            envelope = dict(self.raw)
            if self.refresh_token and not envelope.get("refresh_token"):
                envelope["refresh_token"] = self.refresh_token
            return envelope

        data: dict[str, Any] = {"access_token": self.access_token}
        for key in ("refresh_token", "token_type", "expires_in", "scopes"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    def to_json(self) -> str:
        """Serialise the envelope for the keyring."""
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], created_at: float | None = None) -> "OAuthToken":
        """Create from a token endpoint response or a stored envelope."""
        expires_in = data.get("expires_in")
        try:
            expires_in = int(expires_in) if expires_in not in (None, "") else None
        except (TypeError, ValueError):
            expires_in = None

        return cls(
            access_token=str(data.get("access_token") or ""),
            refresh_token=data.get("refresh_token") or None,
            token_type=data.get("token_type") or None,
            expires_in=expires_in,
            scopes=data.get("scopes") or None,
            created_at=created_at,
            raw=dict(data),
        )


def parse_oauth_envelope(blob: str) -> OAuthToken | None:
    """Return the envelope encoded in ``blob``, or ``None`` if it is not one."""
    try:
        data = json.loads(blob)
    except ValueError:
        return None

    if not isinstance(data, dict) or not data.get("access_token") or not isinstance(data["access_token"], str):
        return None
    return OAuthToken.from_dict(data)


def classify_blob(blob: str) -> BlobKind:
    """
    Classify a non-empty credential blob.

    The order is fixed: Basic prefix, then OAuth JSON envelope, then plain token.
    """
    if blob.startswith(BASIC_PREFIX):
        return BlobKind.BASIC
    if parse_oauth_envelope(blob) is not None:
        return BlobKind.OAUTH
    return BlobKind.PLAIN


def encode_basic_blob(username: str, password: str) -> str:
    """Encode HTTP Basic credentials for storage."""
    return f"{BASIC_PREFIX}{username}:{password}"


@dataclass(frozen=True)
class BasicCredential:
    """HTTP Basic credentials (email and Atlassian API token)."""

    username: str
    password: str
    source: str = SOURCE_KEYRING

    @property
    def is_valid(self) -> bool:
        return bool(self.username and self.password)

    def authorization_header(self) -> str:
        """Return the RFC 7617 ``Authorization`` header value."""
        credentials = f"{self.username}:{self.password}"
        encoded = base64.b64encode(credentials.encode("utf-8")).decode("ascii")
        return f"Basic {encoded}"

    @property
    def secret(self) -> str:
        return self.password


@dataclass(frozen=True)
class BearerCredential:
    """A bearer token, optionally backed by a stored OAuth envelope."""

    token: str
    source: str = SOURCE_KEYRING
    oauth_token: OAuthToken | None = None

    def authorization_header(self) -> str:
        return f"Bearer {self.token}"

    @property
    def secret(self) -> str:
        return self.token


Credential = BasicCredential | BearerCredential


def credential_from_blob(blob: str, source: str = SOURCE_KEYRING) -> Credential:
    """
    Build a credential from a stored blob.

    A ``basic:`` blob without a password still yields a ``BasicCredential``;
    its ``is_valid`` is False and the API client refuses to use it.
    """
    if blob.startswith(BASIC_PREFIX):
        username, _, password = blob[len(BASIC_PREFIX):].partition(":")
        return BasicCredential(username=username, password=password, source=source)

    envelope = parse_oauth_envelope(blob)
    if envelope is not None:
        return BearerCredential(token=envelope.access_token, source=source, oauth_token=envelope)

    return BearerCredential(token=blob, source=source)


def env_token(environ: Mapping[str, str] | None = None) -> str | None:
    """Return the highest-priority token set in the environment, if any."""
    environ = os.environ if environ is None else environ
    for name in ENV_TOKEN_VARS:
        value = environ.get(name, "")
        if value:
            logger.debug("Using token from %s", name)
            return value
    return None


class CredentialResolver:
    """Produces the credential to use for a host and user."""

    def __init__(self, store: SecretStore | None = None, environ: Mapping[str, str] | None = None) -> None:
        self.store = store or SecretStore()
        self._environ = environ

    def resolve(self, hostname: str, user: str | None) -> Credential:
        """
        Resolve the credential for ``user`` on ``hostname``.

        Environment tokens (``BB_TOKEN``, then ``BITBUCKET_TOKEN``) win and
        suppress any keyring access. Otherwise the keyring blob is classified.

        Raises:
            NotAuthenticatedError: If no credential is available
            SecretStoreError: If the keyring backend fails
        """
        token = env_token(self._environ)
        if token:
            return BearerCredential(token=token, source=SOURCE_ENVIRONMENT)

        if not user:
            raise NotAuthenticatedError(hostname)

        try:
            blob = self.store.get(hostname, user)
        except SecretNotFoundError as e:
            raise NotAuthenticatedError(hostname, user) from e

        return credential_from_blob(blob, source=SOURCE_KEYRING)
