from collections import Counter

import httpx
import pytest


class FakeSite:
    """In-memory web server for httpx.MockTransport. Unknown URLs answer 404."""

    def __init__(self) -> None:
        self.responses: dict[str, tuple[int, dict[str, str], bytes]] = {}
        self.hits: Counter[str] = Counter()

    def add(self, url: str, body: str | bytes, content_type: str | None = "text/html; charset=utf-8", status: int = 200, **headers: str) -> "FakeSite":
        if isinstance(body, str):
            body = body.encode("utf-8")
        hdrs = {k.replace("_", "-"): v for k, v in headers.items()}
        if content_type is not None:
            hdrs["Content-Type"] = content_type
        self.responses[url] = (status, hdrs, body)
        return self

    def redirect(self, url: str, location: str, status: int = 301) -> "FakeSite":
        self.responses[url] = (status, {"Location": location}, b"")
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.hits[url] += 1
        if url not in self.responses:
            return httpx.Response(404, content=b"not found")
        status, headers, body = self.responses[url]
        return httpx.Response(status, headers=headers, content=body)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def site() -> FakeSite:
    return FakeSite()
