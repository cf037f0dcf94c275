"""
Host registry for bb.

``hosts.yml`` records, for every Bitbucket host bb has logged in to, the set
of known users, the active user, and the preferred git transport::

    bitbucket.org:
      users:
        alice: {}
        bob:
          token_created_at: 1760000000
      user: alice
      git_protocol: ssh

Tokens are never written here; they live in the OS keyring.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from filelock import FileLock, Timeout

from bb.core.config import GIT_PROTOCOLS, HOSTS_FILE_NAME, config_dir, read_yaml_file, write_yaml_file
from bb.core.exceptions import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_GIT_PROTOCOL = "ssh"
LOCK_TIMEOUT = 10


def hosts_file() -> Path:
    """Return the path of ``hosts.yml`` inside the config directory."""
    return config_dir() / HOSTS_FILE_NAME


@dataclass
class HostEntry:
    """Registry record for a single host."""

    users: dict[str, dict[str, Any]] = field(default_factory=dict)
    user: str = ""
    git_protocol: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to the mapping written to ``hosts.yml``."""
        data: dict[str, Any] = {"users": {name: dict(settings) for name, settings in self.users.items()}}
        if self.user:
            data["user"] = self.user
        if self.git_protocol:
            data["git_protocol"] = self.git_protocol
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "HostEntry":
        """Create from a ``hosts.yml`` mapping, tolerating missing keys."""
        data = data or {}
        users = {str(name): dict(settings or {}) for name, settings in (data.get("users") or {}).items()}
        return cls(
            users=users,
            user=str(data.get("user") or ""),
            git_protocol=str(data.get("git_protocol") or ""),
        )


class HostsConfig:
    """The whole host registry, loaded and saved as one document."""

    def __init__(self, hosts: dict[str, HostEntry] | None = None, path: Path | None = None) -> None:
        self.hosts: dict[str, HostEntry] = hosts if hosts is not None else {}
        self.path = path or hosts_file()

    @classmethod
    def load(cls, path: Path | None = None) -> "HostsConfig":
        """
        Load the registry from disk.

        Returns an empty registry when the file does not exist.

        Raises:
            ConfigurationError: If the file cannot be read or parsed
        """
        path = path or hosts_file()
        data = read_yaml_file(path)
        if data is None:
            logger.debug("No hosts file at %s", path)
            return cls(path=path)

        hosts = {str(host): HostEntry.from_dict(entry) for host, entry in data.items()}
        logger.debug("Loaded %d host(s) from %s", len(hosts), path)
        return cls(hosts, path=path)

    def save(self) -> None:
        """Write the registry to disk atomically with mode 0600."""
        write_yaml_file(self.path, self.to_dict())

    @classmethod
    @contextmanager
    def edit(cls, path: Path | None = None) -> Iterator["HostsConfig"]:
        """
        Load, yield, and save the registry while holding an advisory lock.

        The registry is saved only when the ``with`` block exits normally
        and something changed.
        """
        path = path or hosts_file()
        lock_path = path.with_name(path.name + ".lock")
        try:
            lock_path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Could not create config directory: {e}") from e

        try:
            with FileLock(str(lock_path), timeout=LOCK_TIMEOUT):
                registry = cls.load(path)
                before = registry.to_dict()
                yield registry
                if registry.to_dict() != before:
                    registry.save()
        except Timeout as e:
            raise ConfigurationError(
                f"Timed out waiting for lock on {path.name}",
                suggestion=f"Another bb process may be running; remove {lock_path} if it is stale",
            ) from e

    def to_dict(self) -> dict[str, Any]:
        return {host: entry.to_dict() for host, entry in self.hosts.items()}

    def get_active_user(self, hostname: str) -> str | None:
        """Return the active user for ``hostname``, or ``None``."""
        entry = self.hosts.get(hostname)
        if entry and entry.user:
            return entry.user
        return None

    def set_active_user(self, hostname: str, user: str) -> None:
        """Make ``user`` the active user of ``hostname``, registering it if needed."""
        entry = self.hosts.setdefault(hostname, HostEntry())
        entry.users.setdefault(user, {})
        entry.user = user

    def remove_user(self, hostname: str, user: str) -> bool:
        """
        Forget ``user`` on ``hostname``.

        When the active user is removed, the first remaining user becomes
        active. A host without users is dropped from the registry.

        Returns:
            True if the user was registered, False otherwise
        """
        entry = self.hosts.get(hostname)
        if entry is None:
            return False

        removed = entry.users.pop(user, None) is not None

        if entry.user == user or entry.user not in entry.users:
            entry.user = next(iter(entry.users), "")

        if not entry.users:
            del self.hosts[hostname]

        return removed

    def users(self, hostname: str) -> list[str]:
        """Return the users known for ``hostname`` in registration order."""
        entry = self.hosts.get(hostname)
        return list(entry.users) if entry else []

    def has_user(self, hostname: str, user: str) -> bool:
        return user in self.users(hostname)

    def get_user_setting(self, hostname: str, user: str, key: str, default: Any = None) -> Any:
        entry = self.hosts.get(hostname)
        if entry is None or user not in entry.users:
            return default
        return entry.users[user].get(key, default)

    def set_user_setting(self, hostname: str, user: str, key: str, value: Any) -> None:
        """Store a non-secret per-user value; ``None`` removes it. The user must be registered."""
        entry = self.hosts.get(hostname)
        if entry is None or user not in entry.users:
            raise ValidationError(f"User {user} is not logged in to {hostname}")
        if value is None:
            entry.users[user].pop(key, None)
        else:
            entry.users[user][key] = value

    def get_git_protocol(self, hostname: str) -> str:
        """Return the git protocol for ``hostname``; ``ssh`` when unset."""
        entry = self.hosts.get(hostname)
        if entry and entry.git_protocol:
            return entry.git_protocol
        return DEFAULT_GIT_PROTOCOL

    def set_git_protocol(self, hostname: str, protocol: str) -> None:
        if protocol not in GIT_PROTOCOLS:
            raise ValidationError(f"Invalid git_protocol: {protocol} (must be 'ssh' or 'https')")
        entry = self.hosts.get(hostname)
        if entry is None:
            raise ValidationError(
                f"Not logged in to {hostname}",
                suggestion="Run 'bb auth login' before setting per-host configuration",
            )
        entry.git_protocol = protocol

    def authenticated_hosts(self) -> list[str]:
        """Return the hosts that have an active user."""
        return [host for host, entry in self.hosts.items() if entry.user]
