"""
Shared fixtures for the bb test suite.
"""

import json
import threading
import urllib.error
import urllib.parse
import urllib.request
from typing import Any

import keyring
import pytest
import requests
from click.testing import CliRunner
from keyring.backend import KeyringBackend
from keyring.errors import PasswordDeleteError

from bb.core.config import Config

ENV_VARS = (
    "BB_TOKEN",
    "BITBUCKET_TOKEN",
    "BB_OAUTH_CLIENT_ID",
    "BB_OAUTH_CLIENT_SECRET",
    "BB_BROWSER",
    "BROWSER",
    "BB_DEBUG",
    "DEBUG",
    "XDG_CONFIG_HOME",
)


class MemoryKeyring(KeyringBackend):
    """Keyring backend that keeps passwords in a dict."""

    priority = 1

    def __init__(self) -> None:
        super().__init__()
        self.passwords: dict[tuple[str, str], str] = {}

    def get_password(self, service: str, username: str) -> str | None:
        return self.passwords.get((service, username))

    def set_password(self, service: str, username: str, password: str) -> None:
        self.passwords[(service, username)] = password

    def delete_password(self, service: str, username: str) -> None:
        try:
            del self.passwords[(service, username)]
        except KeyError as e:
            raise PasswordDeleteError("Password not found") from e


@pytest.fixture(autouse=True)
def config_dir(tmp_path, monkeypatch):
    """Point bb at an empty config directory and clear credential env vars."""
    directory = tmp_path / "config"
    monkeypatch.setenv("BB_CONFIG_DIR", str(directory))
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    Config.reset_singleton()
    yield directory
    Config.reset_singleton()


@pytest.fixture(autouse=True)
def memory_keyring():
    """Install an in-memory keyring for the duration of a test."""
    previous = keyring.get_keyring()
    backend = MemoryKeyring()
    keyring.set_keyring(backend)
    yield backend
    keyring.set_keyring(previous)


@pytest.fixture
def oauth_env(monkeypatch):
    """Configure an OAuth consumer through the environment."""
    monkeypatch.setenv("BB_OAUTH_CLIENT_ID", "test_client_id")
    monkeypatch.setenv("BB_OAUTH_CLIENT_SECRET", "test_client_secret")


@pytest.fixture
def runner():
    """Create CLI runner."""
    return CliRunner()


def make_response(
    status_code: int = 200,
    body: Any = None,
    headers: dict[str, str] | None = None,
    reason: str | None = None,
    url: str = "https://api.bitbucket.org/2.0/user",
) -> requests.Response:
    """Build a real ``requests.Response`` with a JSON (or raw) body."""
    response = requests.Response()
    response.status_code = status_code
    response.reason = reason
    response.url = url
    if isinstance(body, (bytes, str)):
        response._content = body.encode() if isinstance(body, str) else body
    elif body is not None:
        response._content = json.dumps(body).encode()
        response.headers["Content-Type"] = "application/json"
    else:
        response._content = b""
    if headers:
        response.headers.update(headers)
    return response


@pytest.fixture
def response_factory():
    """Return the ``make_response`` helper."""
    return make_response


def _redirect(url: str, params: dict[str, str]) -> None:
    opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))
    try:
        opener.open(f"{url}?{urllib.parse.urlencode(params)}", timeout=5).close()
    except urllib.error.HTTPError:
        pass


@pytest.fixture
def simulated_browser():
    """
    Return a factory for browser openers that complete the OAuth redirect.

    The opener parses the authorize URL and, from another thread, calls the
    loopback redirect URI with a code and the issued state. Keyword arguments
    override the query parameters sent back.
    """

    def factory(**overrides: str):
        calls = []

        def browser(url: str) -> bool:
            calls.append(url)
            query = urllib.parse.parse_qs(urllib.parse.urlparse(url).query)
            params = {"code": "C", "state": query["state"][0]}
            params.update(overrides)
            threading.Thread(target=_redirect, args=(query["redirect_uri"][0], params), daemon=True).start()
            return True

        browser.calls = calls
        return browser

    return factory
