"""
Secret storage for bb credentials.

Credential blobs are kept in the operating system's secret facility through
the ``keyring`` library (Keychain on macOS, Secret Service on Linux,
Credential Manager on Windows). Entries live under a fixed service name and
are keyed by ``"<host>:<user>"``. This module never looks inside a blob.
"""

import logging

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from bb.core.exceptions import BBError, SecretStoreError

logger = logging.getLogger(__name__)

SERVICE_NAME = "bb:bitbucket-cli"


class SecretNotFoundError(BBError):
    """Raised when no secret is stored for a host/user pair."""

    def __init__(self, hostname: str, user: str) -> None:
        self.hostname = hostname
        self.user = user
        super().__init__(f"No token found for {user}@{hostname}", exit_code=2)


def keyring_key(hostname: str, user: str) -> str:
    """Return the key under which the blob for ``user`` on ``hostname`` is stored."""
    return f"{hostname}:{user}"


class SecretStore:
    """Opaque key/value persistence of credential blobs in the OS keyring."""

    def __init__(self, service_name: str = SERVICE_NAME) -> None:
        self.service_name = service_name

    def set(self, hostname: str, user: str, blob: str) -> None:
        """
        Store ``blob`` for ``user`` on ``hostname``, replacing any previous value.

        Raises:
            SecretStoreError: If the keyring backend fails
        """
        key = keyring_key(hostname, user)
        try:
            keyring.set_password(self.service_name, key, blob)
        except KeyringError as e:
            raise SecretStoreError(f"Could not store token: {e}") from e
        logger.debug("Stored secret %s in keyring service %s", key, self.service_name)

    def get(self, hostname: str, user: str) -> str:
        """
        Return the blob stored for ``user`` on ``hostname``.

        Raises:
            SecretNotFoundError: If nothing (or an empty value) is stored
            SecretStoreError: If the keyring backend fails
        """
        key = keyring_key(hostname, user)
        try:
            blob = keyring.get_password(self.service_name, key)
        except KeyringError as e:
            raise SecretStoreError(f"Could not retrieve token: {e}") from e

        if not blob:
            raise SecretNotFoundError(hostname, user)
        return blob

    def delete(self, hostname: str, user: str) -> None:
        """
        Delete the blob for ``user`` on ``hostname``.

        Deleting a missing entry succeeds silently.
        """
        key = keyring_key(hostname, user)
        try:
            keyring.delete_password(self.service_name, key)
        except PasswordDeleteError:
            logger.debug("No secret %s to delete", key)
            return
        except KeyringError as e:
            raise SecretStoreError(f"Could not delete token: {e}") from e
        logger.debug("Deleted secret %s", key)

    def exists(self, hostname: str, user: str) -> bool:
        """Check whether a blob is stored for ``user`` on ``hostname``."""
        try:
            self.get(hostname, user)
        except SecretNotFoundError:
            return False
        return True
