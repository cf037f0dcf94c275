"""
Tests for API client functionality.
"""

import base64
import json
from unittest.mock import Mock, patch

import pytest
import requests

from bb import __version__
from bb.core.api_client import BitbucketAPIClient, Paginated, User, decode_api_error
from bb.core.credentials import BasicCredential, BearerCredential
from bb.core.exceptions import APIError, InvalidCredentialError, TransportError, UnauthorizedError


class TestBitbucketAPIClient:
    """Test cases for BitbucketAPIClient class."""

    @pytest.fixture
    def api_client(self):
        """Create API client instance."""
        return BitbucketAPIClient(token="test-token")

    def test_initialization(self, api_client):
        assert api_client.base_url == "https://api.bitbucket.org/2.0"
        assert api_client.timeout == 30

    def test_timeout_from_config(self):
        from bb.core.config import get_config

        get_config().set("http_timeout", 45)

        assert BitbucketAPIClient().timeout == 45

    def test_base_url_trailing_slash_trimmed(self):
        client = BitbucketAPIClient(base_url="https://example.test/api/")

        assert client._build_url("/user") == "https://example.test/api/user"
        assert client._build_url("user") == "https://example.test/api/user"

    def test_absolute_url_passes_through(self, api_client):
        url = "https://api.bitbucket.org/2.0/repositories/ws?page=2"

        assert api_client._build_url(url) == url

    @patch("requests.Session.request")
    def test_bearer_headers(self, mock_request, api_client, response_factory):
        mock_request.return_value = response_factory(200, {"ok": True})

        api_client.get("/user")

        headers = mock_request.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer test-token"
        assert headers["Accept"] == "application/json"
        assert headers["User-Agent"] == f"bb/{__version__}"
        assert "Content-Type" not in headers
        assert mock_request.call_args.kwargs["timeout"] == 30

    @patch("requests.Session.request")
    def test_basic_auth_wins_over_token(self, mock_request, response_factory):
        mock_request.return_value = response_factory(200, {})
        client = BitbucketAPIClient(token="ignored", basic_auth=("a@b.c", "tok"))

        client.get("/user")

        expected = base64.b64encode(b"a@b.c:tok").decode()
        assert mock_request.call_args.kwargs["headers"]["Authorization"] == f"Basic {expected}"

    @patch("requests.Session.request")
    def test_no_credentials_sends_no_authorization(self, mock_request, response_factory):
        mock_request.return_value = response_factory(200, {})

        BitbucketAPIClient().get("/repositories")

        assert "Authorization" not in mock_request.call_args.kwargs["headers"]

    def test_incomplete_basic_credential_rejected(self):
        with pytest.raises(InvalidCredentialError):
            BitbucketAPIClient(credential=BasicCredential("foo", ""))

    @patch("requests.Session.request")
    def test_json_body(self, mock_request, api_client, response_factory):
        mock_request.return_value = response_factory(201, {"id": 1})

        result = api_client.post("/snippets", json_data={"title": "x"})

        kwargs = mock_request.call_args.kwargs
        assert result == {"id": 1}
        assert kwargs["method"] == "POST"
        assert kwargs["headers"]["Content-Type"] == "application/json"
        assert json.loads(kwargs["data"]) == {"title": "x"}

    @patch("requests.Session.request")
    def test_empty_body_decodes_to_none(self, mock_request, api_client, response_factory):
        mock_request.return_value = response_factory(204)

        assert api_client.delete("/repositories/ws/repo") is None

    @patch("requests.Session.request")
    def test_non_json_body_is_transport_error(self, mock_request, api_client, response_factory):
        mock_request.return_value = response_factory(200, "<html>")

        with pytest.raises(TransportError):
            api_client.get("/user")

    @patch("requests.Session.request")
    def test_multipart_request(self, mock_request, api_client, response_factory):
        mock_request.return_value = response_factory(201, {"id": "abc"})

        result = api_client.request_multipart(
            "POST",
            "/snippets/ws",
            fields={"title": "notes", "is_private": "true"},
            files=[("file", ("a.txt", "hello"))],
        )

        kwargs = mock_request.call_args.kwargs
        assert result == {"id": "abc"}
        assert "data" not in kwargs
        assert kwargs["files"] == [
            ("title", (None, "notes")),
            ("is_private", (None, "true")),
            ("file", ("a.txt", "hello")),
        ]
        assert "Content-Type" not in kwargs["headers"]

    @patch("requests.Session.request")
    def test_multipart_fields_only(self, mock_request, api_client, response_factory):
        mock_request.return_value = response_factory(200, {"id": "abc"})

        api_client.request_multipart("PUT", "/snippets/ws/abc", fields={"title": "renamed"})

        kwargs = mock_request.call_args.kwargs
        prepared = requests.Request("PUT", kwargs["url"], files=kwargs["files"]).prepare()
        assert prepared.headers["Content-Type"].startswith("multipart/form-data; boundary=")
        assert b'name="title"' in prepared.body
        assert b"renamed" in prepared.body

    @patch("requests.Session.request")
    def test_get_current_user(self, mock_request, api_client, response_factory):
        mock_request.return_value = response_factory(
            200, {"username": "alice", "display_name": "Alice", "uuid": "{u}", "account_id": "1"}
        )

        user = api_client.get_current_user()

        assert user == User(username="alice", uuid="{u}", display_name="Alice", account_id="1")
        assert mock_request.call_args.kwargs["url"] == "https://api.bitbucket.org/2.0/user"


class TestErrors:
    """Test cases for error decoding."""

    @pytest.fixture
    def api_client(self):
        return BitbucketAPIClient(token="test-token")

    @patch("requests.Session.request")
    def test_error_envelope(self, mock_request, api_client, response_factory):
        mock_request.return_value = response_factory(
            400,
            {"type": "error", "error": {"message": "Bad", "detail": "more", "fields": {"name": ["required"]}}},
            reason="Bad Request",
        )

        with pytest.raises(APIError) as exc_info:
            api_client.get("/repositories/ws")

        error = exc_info.value
        assert error.status_code == 400
        assert error.message == "Bad"
        assert error.detail == "more"
        assert error.fields == {"name": ["required"]}
        assert error.exit_code == 3
        assert str(error) == "API error 400: Bad - more"

    @patch("requests.Session.request")
    def test_empty_object_uses_reason_phrase(self, mock_request, api_client, response_factory):
        mock_request.return_value = response_factory(403, {}, reason="Forbidden")

        with pytest.raises(APIError) as exc_info:
            api_client.get("/x")

        assert exc_info.value.status_code == 403
        assert exc_info.value.message == "Forbidden"
        assert exc_info.value.suggestion

    def test_reason_phrase_from_status_when_missing(self, response_factory):
        error = decode_api_error(response_factory(404, b"not json"))

        assert error.message == "Not Found"

    def test_string_fields_are_normalised(self, response_factory):
        error = decode_api_error(
            response_factory(400, {"error": {"message": "Bad", "fields": {"name": "required", "x": None}}})
        )

        assert error.fields == {"name": ["required"]}

    def test_empty_fields_are_none(self, response_factory):
        error = decode_api_error(response_factory(400, {"error": {"message": "Bad", "fields": {}}}))

        assert error.fields is None

    def test_rate_limit_suggestion(self, response_factory):
        error = decode_api_error(response_factory(429, {}, headers={"Retry-After": "12"}, reason="Too Many Requests"))

        assert "12 seconds" in error.suggestion

    @patch("requests.Session.request")
    def test_unauthorized(self, mock_request, api_client, response_factory):
        mock_request.return_value = response_factory(401, {"error": {"message": "Token expired"}})

        with pytest.raises(UnauthorizedError) as exc_info:
            api_client.get("/user")

        assert isinstance(exc_info.value, APIError)
        assert exc_info.value.status_code == 401
        assert exc_info.value.exit_code == 2

    @patch("requests.Session.request")
    def test_timeout_is_transport_error(self, mock_request, api_client):
        mock_request.side_effect = requests.exceptions.Timeout("slow")

        with pytest.raises(TransportError) as exc_info:
            api_client.get("/user")

        assert exc_info.value.exit_code == 9

    @patch("requests.Session.request")
    def test_connection_error_is_transport_error(self, mock_request, api_client):
        mock_request.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(TransportError):
            api_client.get("/user")


class TestUnauthorizedReplay:
    """Test cases for the on-unauthorized hook."""

    @patch("requests.Session.request")
    def test_replays_once_with_new_credential(self, mock_request, response_factory):
        mock_request.side_effect = [
            response_factory(401, {"error": {"message": "expired"}}),
            response_factory(200, {"username": "alice"}),
        ]
        hook = Mock(return_value=BearerCredential("fresh"))
        client = BitbucketAPIClient(token="stale", on_unauthorized=hook)

        assert client.get("/user") == {"username": "alice"}

        hook.assert_called_once_with()
        first, second = mock_request.call_args_list
        assert first.kwargs["headers"]["Authorization"] == "Bearer stale"
        assert second.kwargs["headers"]["Authorization"] == "Bearer fresh"

    @patch("requests.Session.request")
    def test_hook_returning_none_raises(self, mock_request, response_factory):
        mock_request.return_value = response_factory(401, {})
        hook = Mock(return_value=None)
        client = BitbucketAPIClient(token="stale", on_unauthorized=hook)

        with pytest.raises(UnauthorizedError):
            client.get("/user")

        assert mock_request.call_count == 1

    @patch("requests.Session.request")
    def test_hook_used_at_most_once(self, mock_request, response_factory):
        mock_request.return_value = response_factory(401, {})
        hook = Mock(return_value=BearerCredential("fresh"))
        client = BitbucketAPIClient(token="stale", on_unauthorized=hook)

        with pytest.raises(UnauthorizedError):
            client.get("/user")
        with pytest.raises(UnauthorizedError):
            client.get("/user")

        hook.assert_called_once_with()
        assert mock_request.call_count == 3


class TestPagination:
    """Test cases for paginated endpoints."""

    def test_paginated_from_dict(self):
        page = Paginated.from_dict({"values": [1], "next": "", "size": 1, "page": 1, "pagelen": 10})

        assert page.values == [1]
        assert page.next is None
        assert page.size == 1

    @patch("requests.Session.request")
    def test_follows_next_links(self, mock_request, response_factory):
        next_url = "https://api.bitbucket.org/2.0/repositories/ws?page=2"
        mock_request.side_effect = [
            response_factory(200, {"values": [1, 2], "next": next_url}),
            response_factory(200, {"values": [3]}),
        ]
        client = BitbucketAPIClient(token="t")

        assert client.paginate("/repositories/ws", params={"pagelen": 2}) == [1, 2, 3]

        first, second = mock_request.call_args_list
        assert first.kwargs["url"] == "https://api.bitbucket.org/2.0/repositories/ws"
        assert first.kwargs["params"] == {"pagelen": 2}
        assert second.kwargs["url"] == next_url
        assert second.kwargs["params"] is None
        assert second.kwargs["headers"] == first.kwargs["headers"]
        assert second.kwargs["headers"]["Authorization"] == "Bearer t"
        assert "User-Agent" in second.kwargs["headers"]

    @patch("requests.Session.request")
    def test_single_page(self, mock_request, response_factory):
        mock_request.return_value = response_factory(200, {"values": []})

        pages = list(BitbucketAPIClient(token="t").iter_pages("/repositories/ws"))

        assert len(pages) == 1
        assert mock_request.call_count == 1
