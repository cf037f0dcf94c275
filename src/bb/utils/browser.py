"""
Launching the user's web browser.

The command is taken from ``BB_BROWSER``, then ``BROWSER``, then the
``browser`` configuration key. When none is set the platform default from
:mod:`webbrowser` is used.
"""

import logging
import os
import shlex
import subprocess
import webbrowser

from bb.core.config import get_config

logger = logging.getLogger(__name__)


def browser_command() -> str | None:
    """Return the configured browser command, if any."""
    for name in ("BB_BROWSER", "BROWSER"):
        value = os.getenv(name)
        if value:
            return value
    return get_config().get("browser") or None


def open_browser(url: str) -> bool:
    """
    Open ``url`` in a browser without waiting for it.

    Returns:
        True if a browser was launched, False otherwise
    """
    command = browser_command()
    try:
        if command:
            logger.debug("Launching browser command %r", command)
            subprocess.Popen(  # noqa: S603
                [*shlex.split(command), url],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
            return True
        return webbrowser.open(url)
    except (OSError, ValueError, webbrowser.Error) as e:
        logger.warning("Could not open browser: %s", e)
        return False
