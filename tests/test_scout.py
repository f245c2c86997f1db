import base64
import json
from datetime import datetime, timezone

import httpx
import pytest

from scout import (
    GITHUB_API_BASE,
    ContentEntry,
    GitHubAPIError,
    RateLimitExceededError,
    ScoutAgent,
    ScoutResult,
)


def make_scout(handler, token="ghp_testtoken"):
    return ScoutAgent(
        token=token,
        transport=httpx.MockTransport(handler),
        request_delay=0,
    )


def encoded(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def test_default_base_url():
    assert GITHUB_API_BASE == "https://api.github.com"


def test_headers_with_token():
    headers = ScoutAgent(token="ghp_abc", request_delay=0)._get_headers()
    assert headers["Authorization"] == "Bearer ghp_abc"
    assert "github" in headers["Accept"]


def test_headers_without_token():
    headers = ScoutAgent(token="", request_delay=0)._get_headers()
    assert "Authorization" not in headers


async def test_get_pushed_at_parses_utc():
    def handler(request):
        assert request.url.path == "/repos/acme/widgets"
        return httpx.Response(200, json={"full_name": "acme/widgets", "pushed_at": "2024-06-05T12:00:00Z"})

    pushed_at = await make_scout(handler).get_pushed_at("acme/widgets")

    assert pushed_at == datetime(2024, 6, 5, 12, 0, tzinfo=timezone.utc)


async def test_get_pushed_at_not_found():
    scout = make_scout(lambda request: httpx.Response(404, json={"message": "Not Found"}))

    with pytest.raises(GitHubAPIError) as exc_info:
        await scout.get_pushed_at("acme/missing")

    assert exc_info.value.status_code == 404


async def test_get_pushed_at_rate_limited():
    def handler(request):
        return httpx.Response(
            403,
            json={"message": "API rate limit exceeded"},
            headers={"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": "1700000000"},
        )

    with pytest.raises(RateLimitExceededError):
        await make_scout(handler).get_pushed_at("acme/widgets")


async def test_network_error_becomes_failed_result():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    result = await make_scout(handler).get_repository("acme/widgets")

    assert isinstance(result, ScoutResult)
    assert result.success is False
    assert "Network error" in result.error


async def test_get_readme_decodes_base64():
    def handler(request):
        assert request.url.path == "/repos/acme/widgets/readme"
        return httpx.Response(200, json={"content": encoded("# Widgets\n"), "encoding": "base64"})

    result = await make_scout(handler).get_readme("acme/widgets")

    assert result.success
    assert result.data == "# Widgets\n"


async def test_list_contents_returns_entries():
    def handler(request):
        assert request.url.path == "/repos/acme/widgets/contents/src"
        return httpx.Response(200, json=[
            {"type": "file", "path": "src/app.py"},
            {"type": "dir", "path": "src/lib"},
            {"type": "symlink", "path": "src/link"},
        ])

    result = await make_scout(handler).list_contents("acme/widgets", "src/")

    assert result.success
    assert result.data == [
        ContentEntry(type="file", path="src/app.py"),
        ContentEntry(type="dir", path="src/lib"),
        ContentEntry(type="file", path="src/link"),
    ]


async def test_list_contents_on_file_fails():
    scout = make_scout(lambda request: httpx.Response(200, json={"type": "file", "content": ""}))

    result = await scout.list_contents("acme/widgets", "README.md")

    assert result.success is False
    assert "not a directory" in result.error


async def test_download_file_content():
    scout = make_scout(lambda request: httpx.Response(
        200, json={"content": encoded("print('hi')\n"), "encoding": "base64"}
    ))

    result = await scout.download_file_content("acme/widgets", "main.py")

    assert result.success
    assert result.data == "print('hi')\n"


async def test_download_directory_fails():
    scout = make_scout(lambda request: httpx.Response(200, json=[]))

    result = await scout.download_file_content("acme/widgets", "src")

    assert result.success is False


async def test_create_issue_posts_once():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(201, json={"html_url": "https://github.com/acme/widgets/issues/7"})

    scout = make_scout(handler)
    url = await scout.create_issue("acme/widgets", "Momentum: add docs", "body text")

    assert url == "https://github.com/acme/widgets/issues/7"
    assert len(requests) == 1
    assert requests[0].method == "POST"
    assert requests[0].url.path == "/repos/acme/widgets/issues"
    assert json.loads(requests[0].content) == {"title": "Momentum: add docs", "body": "body text"}
    assert scout.get_status()["stats"]["issues_created"] == 1


async def test_create_issue_server_error_not_retried():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(500, text="boom")

    with pytest.raises(GitHubAPIError) as exc_info:
        await make_scout(handler).create_issue("acme/widgets", "t", "b")

    assert exc_info.value.status_code == 500
    assert len(requests) == 1


async def test_rate_limit_headers_are_tracked():
    scout = make_scout(lambda request: httpx.Response(
        200, json={"pushed_at": "2024-01-01T00:00:00Z"}, headers={"X-RateLimit-Remaining": "42"}
    ))

    await scout.get_repository("acme/widgets")

    assert scout.get_status()["rate_limit_remaining"] == 42


async def test_html_success_body_becomes_failed_result():
    scout = make_scout(lambda request: httpx.Response(
        200, text="<html>Unicorn!</html>", headers={"Content-Type": "text/html"}
    ))

    result = await scout.list_contents("acme/widgets", "src")

    assert result.success is False
    assert result.error.startswith("Invalid JSON")
    assert result.status_code == 200
    assert scout.get_status()["stats"]["errors"] == 1


async def test_get_pushed_at_with_html_body_raises():
    scout = make_scout(lambda request: httpx.Response(200, text="<html>Unicorn!</html>"))

    with pytest.raises(GitHubAPIError, match="Invalid JSON"):
        await scout.get_pushed_at("acme/widgets")


async def test_create_issue_accepted_with_unreadable_body():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(201, text="<html>created</html>")

    scout = make_scout(handler)
    url = await scout.create_issue("acme/widgets", "t", "b")

    assert url == ""
    assert len(requests) == 1
    assert scout.get_status()["stats"]["issues_created"] == 1


async def test_create_issue_without_html_url():
    scout = make_scout(lambda request: httpx.Response(201, json={"number": 7}))

    assert await scout.create_issue("acme/widgets", "t", "b") == ""
