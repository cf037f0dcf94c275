"""
bb - A command-line interface for Bitbucket Cloud.

This package provides authentication and credential management for the
Bitbucket Cloud API, plus the raw ``bb api`` escape hatch and the local
configuration commands.
"""

__version__ = "0.1.0"
__description__ = "A command-line interface for Bitbucket Cloud"

# Package-level imports for convenience
from bb.core.exceptions import APIError, AuthenticationError, BBError

__all__ = [
    "__version__",
    "__description__",
    "BBError",
    "AuthenticationError",
    "APIError",
]
