"""
Raw API command for bb.

``bb api`` makes an authenticated request to any Bitbucket Cloud REST
endpoint and prints the response, for scripting and for endpoints that have
no dedicated command.
"""

import json
from typing import Any

import click
import requests

from bb.cli.auth import hostname_option
from bb.core.api_client import Paginated
from bb.core.auth_manager import AuthManager
from bb.core.exceptions import ValidationError
from bb.utils.validation import normalize_endpoint, parse_field, parse_header


def _read_input(path: str) -> bytes:
    if path == "-":
        return click.get_binary_stream("stdin").read()
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise ValidationError(f"Could not read input file: {e}") from e


def _print_head(response: requests.Response) -> None:
    click.echo(f"HTTP {response.status_code} {response.reason or ''}".rstrip())
    for name, value in response.headers.items():
        click.echo(f"{name}: {value}")
    click.echo()


def _print_body(response: requests.Response) -> None:
    if not response.content:
        return
    if "json" in response.headers.get("Content-Type", ""):
        try:
            click.echo(json.dumps(response.json(), indent=2, ensure_ascii=False))
            return
        except ValueError:
            pass
    click.echo(response.text)


@click.command()
@click.argument("endpoint")
@hostname_option
@click.option("--method", "-X", default="GET", show_default=True, help="HTTP method to use")
@click.option("--header", "-H", "headers", multiple=True, help="Add a request header 'Name: value' (repeatable)")
@click.option("--input", "input_file", help="Read the request body from a file ('-' for stdin)")
@click.option("--field", "-f", "raw_fields", multiple=True, help="Add a form-encoded key=value field (repeatable)")
@click.option("--json", "-j", "json_fields", multiple=True, help="Add a JSON key=value field (repeatable)")
@click.option("--silent", "-s", is_flag=True, help="Do not print the response body")
@click.option("--include", "-i", is_flag=True, help="Print the status line and response headers")
@click.option("--paginate", is_flag=True, help="Fetch every page and print the combined values")
def api(
    endpoint: str,
    hostname: str,
    method: str,
    headers: tuple[str, ...],
    input_file: str | None,
    raw_fields: tuple[str, ...],
    json_fields: tuple[str, ...],
    silent: bool,
    include: bool,
    paginate: bool,
) -> None:
    """
    Make an authenticated Bitbucket API request.

    ENDPOINT is a path relative to https://api.bitbucket.org/2.0, such as
    "user" or "repositories/myworkspace", or an absolute URL.

    \b
    Examples:
        bb api user
        bb api repositories/myworkspace --paginate
        bb api repositories/ws/repo/issues -X POST -j title="Bug report"
    """
    path = normalize_endpoint(endpoint)
    method = method.upper()
    extra_headers = dict(parse_header(h) for h in headers)

    kwargs: dict[str, Any] = {}
    if input_file:
        kwargs["data"] = _read_input(input_file)
        extra_headers.setdefault("Content-Type", "application/json")
    elif json_fields:
        kwargs["json_data"] = dict(parse_field(f) for f in json_fields)
    elif raw_fields:
        kwargs["data"] = [parse_field(f) for f in raw_fields]

    client = AuthManager().get_api_client(hostname)
    response = client.request(method, path, headers=extra_headers or None, **kwargs)

    if include:
        _print_head(response)

    if paginate and method == "GET":
        try:
            data = response.json() if response.content else None
        except ValueError:
            data = None
        if isinstance(data, dict) and "values" in data:
            values = [value for page in client.follow_pages(Paginated.from_dict(data)) for value in page.values]
            if not silent:
                click.echo(json.dumps(values, indent=2, ensure_ascii=False))
            return

    if not silent:
        _print_body(response)
