"""
General utility functions for bb.

This module contains helper functions that are used across different parts
of the application.
"""

from typing import TextIO


def mask_token(token: str) -> str:
    """
    Mask a token for display, keeping the first and last four characters.

    Tokens of eight characters or fewer are masked completely.
    """
    if len(token) <= 8:
        return "*" * len(token)
    return token[:4] + "*" * (len(token) - 8) + token[-4:]


def read_line(stream: TextIO) -> str:
    """Read one line from ``stream`` and strip surrounding whitespace."""
    return stream.readline().strip()
