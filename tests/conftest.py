"""Shared fixtures: a scripted stand-in for ``requests.Session``.

Routes are keyed by URL without its query string and produce real
``requests.Response`` objects, so the code under test exercises the same
status, streaming and JSON decoding paths it uses against a live server.
"""

from __future__ import annotations

import io
import json
import sys
from collections.abc import Callable
from http import HTTPStatus
from pathlib import Path

import pytest
import requests
from requests.structures import CaseInsensitiveDict
from yarl import URL

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

BASE_URL = "https://example.org"


def make_response(url: str, status: int = 200, body: bytes = b"", raw=None) -> requests.Response:
    r = requests.Response()
    r.url = url
    r.status_code = status
    r.reason = HTTPStatus(status).phrase
    r.raw = raw if raw is not None else io.BytesIO(body)
    return r


class BrokenStream(io.RawIOBase):
    """Returns some bytes, then fails like a dropped connection."""

    def __init__(self, first: bytes):
        self.first = first
        self.sent = False

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        if not self.sent:
            self.sent = True
            return self.first
        raise requests.ConnectionError("connection reset by peer")


class FakeSession:
    def __init__(self):
        self.headers: CaseInsensitiveDict[str] = CaseInsensitiveDict()
        self.routes: dict[str, Callable[[str], requests.Response]] = {}
        self.calls: list[str] = []
        self.timeouts: list[float | None] = []
        self.closed = False

    @staticmethod
    def key(url: str) -> str:
        return str(URL(url).with_query(None))

    def add(self, url: str, status: int = 200, body: bytes = b"", json_body=None) -> None:
        if json_body is not None:
            body = json.dumps(json_body).encode()
        self.routes[self.key(url)] = lambda u: make_response(u, status, body)

    def add_broken(self, url: str, first: bytes) -> None:
        self.routes[self.key(url)] = lambda u: make_response(u, raw=BrokenStream(first))

    def add_issue(self, issue_id: int, *links: str, base: str = BASE_URL) -> None:
        self.add(f"{base}/issues/{issue_id}.json", json_body=issue_body(issue_id, *links))

    def get(self, url: str, timeout=None, stream: bool = False, **kwargs) -> requests.Response:
        self.calls.append(url)
        self.timeouts.append(timeout)
        if factory := self.routes.get(self.key(url)):
            return factory(url)
        return make_response(url, 404)

    def close(self) -> None:
        self.closed = True

    def downloads(self) -> list[str]:
        return [u for u in self.calls if "/attachments/download/" in u]


def issue_body(issue_id: int, *links: str) -> dict:
    return {
        "issue": {
            "id": issue_id,
            "subject": f"Issue {issue_id}",
            "project": {"id": 1, "name": "Demo"},
            "journals": [],
            "attachments": [
                {
                    "id": n,
                    "filename": link.rsplit("/", 1)[-1],
                    "filesize": 3,
                    "content_type": "application/octet-stream",
                    "description": "",
                    "content_url": link,
                    "author": {"id": 5, "name": "Jane Doe"},
                    "created_on": "2020-01-02T03:04:05Z",
                }
                for n, link in enumerate(links, 1)
            ],
        }
    }


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def client(session):
    from redminesync import Client

    return Client(BASE_URL, "secret", timeout=5.0, session=session)
