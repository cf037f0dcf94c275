"""
Bitbucket API client for bb.

This module provides the HTTP requester used by every command: it attaches
the resolved credential, applies the standard headers, decodes JSON and error
envelopes, follows pagination links, and sends multipart bodies for snippets.
"""

import json
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any

import requests

from bb import __version__
from bb.core.config import get_config
from bb.core.credentials import BasicCredential, BearerCredential, Credential
from bb.core.exceptions import APIError, InvalidCredentialError, TransportError, UnauthorizedError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.bitbucket.org/2.0"
DEFAULT_TIMEOUT = 30
USER_AGENT = f"bb/{__version__}"


@dataclass
class Paginated:
    """A single page of a Bitbucket list endpoint."""

    values: list[Any] = field(default_factory=list)
    size: int | None = None
    page: int | None = None
    pagelen: int | None = None
    next: str | None = None
    previous: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Paginated":
        return cls(
            values=list(data.get("values") or []),
            size=data.get("size"),
            page=data.get("page"),
            pagelen=data.get("pagelen"),
            next=data.get("next") or None,
            previous=data.get("previous") or None,
        )


@dataclass
class User:
    """The authenticated Bitbucket user."""

    username: str
    uuid: str = ""
    display_name: str = ""
    account_id: str = ""
    nickname: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "User":
        return cls(
            username=data.get("username") or "",
            uuid=data.get("uuid") or "",
            display_name=data.get("display_name") or "",
            account_id=data.get("account_id") or "",
            nickname=data.get("nickname") or "",
        )


def _normalise_fields(raw: Any) -> dict[str, list[str]] | None:
    """Accept ``error.fields`` values given either as strings or lists of strings."""
    if not isinstance(raw, dict) or not raw:
        return None

    fields: dict[str, list[str]] = {}
    for name, value in raw.items():
        if isinstance(value, list):
            fields[str(name)] = [str(item) for item in value]
        elif value is not None:
            fields[str(name)] = [str(value)]
    return fields or None


def _reason_phrase(response: requests.Response) -> str:
    if response.reason:
        return response.reason
    try:
        return HTTPStatus(response.status_code).phrase
    except ValueError:
        return f"HTTP {response.status_code}"


def decode_api_error(response: requests.Response) -> APIError:
    """
    Build the error for a response with status >= 400.

    The message comes from ``{"error": {"message", "detail", "fields"}}`` when
    the body has one, otherwise from the HTTP reason phrase.
    """
    message = _reason_phrase(response)
    detail = ""
    fields = None

    try:
        data = response.json()
    except ValueError:
        data = None

    envelope = data.get("error") if isinstance(data, dict) else None
    if isinstance(envelope, dict) and envelope.get("message"):
        message = str(envelope["message"])
        detail = str(envelope.get("detail") or "")
        fields = _normalise_fields(envelope.get("fields"))

    if response.status_code == 401:
        return UnauthorizedError(message, detail=detail, fields=fields, response_data=data)

    suggestion = None
    if response.status_code == 403:
        suggestion = "Check that your token has the required permissions (scopes)"
    elif response.status_code == 404:
        suggestion = "Check that the resource exists and you have permission to access it"
    elif response.status_code == 429:
        retry_after = response.headers.get("Retry-After", "60")
        suggestion = f"Wait {retry_after} seconds before retrying"

    return APIError(
        message,
        status_code=response.status_code,
        detail=detail,
        fields=fields,
        response_data=data,
        suggestion=suggestion,
    )


class BitbucketAPIClient:
    """Client for interacting with the Bitbucket Cloud API."""

    def __init__(
        self,
        credential: Credential | None = None,
        base_url: str | None = None,
        token: str | None = None,
        basic_auth: tuple[str, str] | None = None,
        session: requests.Session | None = None,
        timeout: float | None = None,
        on_unauthorized: Callable[[], Credential | None] | None = None,
    ) -> None:
        """
        Initialize the API client.

        Args:
            credential: Resolved credential to present on every request.
            base_url: Base URL for the Bitbucket API; a trailing '/' is trimmed.
            token: Bearer token, used when no Basic credentials are configured.
            basic_auth: (username, password) pair for HTTP Basic auth.
            session: Custom ``requests.Session`` to send requests with.
            timeout: Per-request timeout in seconds. Defaults to config
                     ``http_timeout`` (30 seconds).
            on_unauthorized: Called once after a 401; may return a replacement
                     credential, in which case the request is replayed with it.

        Raises:
            InvalidCredentialError: If Basic credentials are incomplete
        """
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout or get_config().get("http_timeout", DEFAULT_TIMEOUT)
        self.session = session or requests.Session()
        self.on_unauthorized = on_unauthorized

        self._token: str | None = token
        self._basic: BasicCredential | None = BasicCredential(*basic_auth) if basic_auth else None
        self.credential: Credential | None = None
        if credential is not None:
            self.use_credential(credential)
        elif self._basic is not None:
            self._check_basic(self._basic)

    @staticmethod
    def _check_basic(credential: BasicCredential) -> None:
        if not credential.is_valid:
            raise InvalidCredentialError(
                "Invalid stored credentials format: expected 'basic:<email>:<api token>'"
            )

    def use_credential(self, credential: Credential) -> None:
        """Replace the credential presented on subsequent requests."""
        if isinstance(credential, BasicCredential):
            self._check_basic(credential)
            self._basic = credential
        elif isinstance(credential, BearerCredential):
            self._token = credential.token
        self.credential = credential

    def get_auth_header(self) -> str | None:
        """
        Get the Authorization header value.

        Basic credentials take precedence over a bearer token when both are set.
        """
        if self._basic is not None:
            return self._basic.authorization_header()
        if self._token:
            return f"Bearer {self._token}"
        return None

    def _build_url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _build_headers(self, content_type: str | None = None, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {
            "User-Agent": USER_AGENT,
            "Accept": "application/json",
        }
        if content_type:
            headers["Content-Type"] = content_type

        auth_header = self.get_auth_header()
        if auth_header:
            headers["Authorization"] = auth_header

        if extra:
            headers.update(extra)
        return headers

    def _send(self, method: str, url: str, headers: dict[str, str], **kwargs: Any) -> requests.Response:
        try:
            response = self.session.request(
                method=method,
                url=url,
                headers=headers,
                timeout=self.timeout,
                **kwargs,
            )
        except requests.exceptions.Timeout as e:
            raise TransportError(
                f"Request timed out after {self.timeout} seconds",
                suggestion="Try again or increase http_timeout with 'bb config set http_timeout <seconds>'",
            ) from e
        except requests.exceptions.ConnectionError as e:
            raise TransportError("Failed to connect to Bitbucket API") from e
        except requests.exceptions.RequestException as e:
            raise TransportError(f"Request failed: {e}") from e

        logger.debug("%s %s -> %s", method, url, response.status_code)
        return response

    def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: Any = None,
        data: Any = None,
        files: Any = None,
        headers: dict[str, str] | None = None,
    ) -> requests.Response:
        """
        Make an HTTP request to the Bitbucket API.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE, etc.)
            path: Path relative to the base URL, or an absolute URL
            params: Query parameters
            json_data: JSON body
            data: Raw or form body
            files: Multipart files, as accepted by ``requests``
            headers: Additional headers

        Returns:
            Response object

        Raises:
            APIError: If the API returns a status of 400 or above
            TransportError: If the request could not be completed
        """
        method = method.upper()
        url = self._build_url(path)
        content_type = "application/json" if json_data is not None else None

        kwargs: dict[str, Any] = {"params": params}
        if json_data is not None:
            kwargs["data"] = json.dumps(json_data)
        elif data is not None:
            kwargs["data"] = data
        if files is not None:
            kwargs["files"] = files

        response = self._send(method, url, self._build_headers(content_type, headers), **kwargs)

        if response.status_code == 401 and self.on_unauthorized is not None:
            hook, self.on_unauthorized = self.on_unauthorized, None
            replacement = hook()
            if replacement is not None:
                logger.debug("Replaying %s %s with refreshed credentials", method, url)
                self.use_credential(replacement)
                response = self._send(method, url, self._build_headers(content_type, headers), **kwargs)

        if response.status_code >= 400:
            raise decode_api_error(response)

        return response

    def request_multipart(
        self,
        method: str,
        path: str,
        fields: dict[str, str] | None = None,
        files: list[tuple[str, tuple[str, str | bytes]]] | None = None,
    ) -> dict[str, Any]:
        """
        Send a ``multipart/form-data`` request, as used by snippet create/update.

        Every field becomes a form part, so a request carrying only fields
        is still multipart. The boundary and Content-Type are set by
        ``requests``.
        """
        parts: list[tuple[str, tuple[str | None, str | bytes]]] = [
            (name, (None, value)) for name, value in (fields or {}).items()
        ]
        parts.extend(files or [])
        response = self.request(method, path, files=parts)
        return self._decode(response)

    @staticmethod
    def _decode(response: requests.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise TransportError(
                f"Could not parse response: {e}",
                suggestion="The API returned a body that is not JSON",
            ) from e

    def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """Make a GET request."""
        return self._decode(self.request("GET", path, params=params))

    def post(self, path: str, json_data: Any = None, data: Any = None) -> Any:
        """Make a POST request."""
        return self._decode(self.request("POST", path, json_data=json_data, data=data))

    def put(self, path: str, json_data: Any = None, data: Any = None) -> Any:
        """Make a PUT request."""
        return self._decode(self.request("PUT", path, json_data=json_data, data=data))

    def delete(self, path: str) -> Any:
        """Make a DELETE request."""
        return self._decode(self.request("DELETE", path))

    def get_page(self, path: str, params: dict[str, Any] | None = None) -> Paginated:
        """Fetch a single page of a list endpoint."""
        return Paginated.from_dict(self.get(path, params=params) or {})

    def iter_pages(self, path: str, params: dict[str, Any] | None = None) -> Iterator[Paginated]:
        """Yield pages, following each page's absolute ``next`` link."""
        return self.follow_pages(self.get_page(path, params=params))

    def follow_pages(self, page: Paginated) -> Iterator[Paginated]:
        """Yield ``page`` and every page after it."""
        yield page
        while page.next:
            page = self.get_page(page.next)
            yield page

    def paginate(self, path: str, params: dict[str, Any] | None = None) -> list[Any]:
        """Collect ``values`` from every page of a list endpoint."""
        values: list[Any] = []
        for page in self.iter_pages(path, params=params):
            values.extend(page.values)
        return values

    def get_current_user(self) -> User:
        """Return the user the credential belongs to."""
        return User.from_dict(self.get("/user") or {})
