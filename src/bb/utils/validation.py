"""
Input validation utilities for bb.

This module provides functions for validating command-line input before it
reaches the registry, the keyring, or the API.
"""

import re

from bb.core.exceptions import ValidationError

HOSTNAME_PATTERN = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9.-]*[A-Za-z0-9])?(:\d+)?$")


def validate_hostname(hostname: str) -> str:
    """
    Validate a Bitbucket hostname.

    Args:
        hostname: The hostname to validate, e.g. 'bitbucket.org'

    Returns:
        The validated hostname (lowercase)

    Raises:
        ValidationError: If the hostname is invalid
    """
    if not hostname:
        raise ValidationError("Hostname cannot be empty")

    hostname = hostname.strip().lower()
    if "://" in hostname or "/" in hostname:
        raise ValidationError(
            f"Invalid hostname '{hostname}'",
            suggestion="Pass only the host name, e.g. 'bitbucket.org'",
        )
    if not HOSTNAME_PATTERN.match(hostname):
        raise ValidationError(f"Invalid hostname '{hostname}'")
    return hostname


def parse_field(field: str) -> tuple[str, str]:
    """
    Split a ``key=value`` request field.

    Raises:
        ValidationError: If there is no '=' or the key is empty
    """
    key, sep, value = field.partition("=")
    if not sep or not key:
        raise ValidationError(f"Invalid field format: {field} (expected key=value)")
    return key, value


def parse_header(header: str) -> tuple[str, str]:
    """
    Split a ``Name: value`` request header.

    Raises:
        ValidationError: If there is no ':' or the name is empty
    """
    name, sep, value = header.partition(":")
    name = name.strip()
    if not sep or not name:
        raise ValidationError(f"Invalid header format: {header} (expected Name: value)")
    return name, value.strip()


def normalize_endpoint(endpoint: str) -> str:
    """Return ``endpoint`` with a leading '/', leaving absolute URLs untouched."""
    endpoint = endpoint.strip()
    if not endpoint:
        raise ValidationError("Endpoint cannot be empty", suggestion="For example: bb api user")
    if endpoint.startswith(("http://", "https://")) or endpoint.startswith("/"):
        return endpoint
    return "/" + endpoint
