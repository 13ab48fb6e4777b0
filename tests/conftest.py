"""Shared fixtures: a throwaway database per test and a fake fetcher."""

from __future__ import annotations

from typing import Any

import pytest

from streamqueue import storage
from streamqueue.activitypub import ActivityPubResolver
from streamqueue.config import Settings
from streamqueue.service import StreamQueueService

LOCAL_ID = "https://local.example/users/alice/statuses/1"
REMOTE_URL = "https://remote.example/notes/42"


@pytest.fixture(autouse=True)
def db(tmp_path, monkeypatch):
    monkeypatch.setenv("STREAMQUEUE_HOME", str(tmp_path))
    yield tmp_path
    storage.close_conn()


class FakeFetcher:
    """Serves canned documents (or raises canned errors) per url."""

    def __init__(self, responses: dict[str, Any] | None = None) -> None:
        self.responses = responses or {}
        self.calls: list[str] = []
        self.closed = False

    def retrieve_object(self, url: str) -> dict:
        self.calls.append(url)
        result = self.responses[url]
        if isinstance(result, BaseException):
            raise result
        return result

    def close(self) -> None:
        self.closed = True


def note_doc(url: str = REMOTE_URL, **extra: Any) -> dict:
    doc = {
        "@context": "https://www.w3.org/ns/activitystreams",
        "id": url,
        "type": "Note",
        "attributedTo": "https://remote.example/users/bob",
        "content": "<p>hello from https://remote.example/</p>",
        "published": "2024-05-01T10:00:00Z",
    }
    doc.update(extra)
    return doc


@pytest.fixture
def settings() -> Settings:
    return Settings(
        backoff_max_tries=12,
        running_lease_seconds=600,
        fetch_timeout=5.0,
        max_response_bytes=1024,
        poll_interval=0.1,
        user_agent="streamqueue-tests",
    )


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def service(settings, fetcher) -> StreamQueueService:
    return StreamQueueService(settings, fetcher, ActivityPubResolver())
