from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

TYPE_CACHE = "Cache"


class QueueStatus(str, Enum):
    STANDBY = "standby"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"


class QueueEntry(BaseModel):
    id: int
    token: str
    type: str
    stream_id: str
    status: QueueStatus = QueueStatus.STANDBY
    tries: int = Field(default=0, ge=0)
    last: int = 0            # epoch seconds of the most recent attempt
    claimed_at: int = 0      # epoch seconds of the standby -> running claim
    created_at: str
    updated_at: str


class CacheItem(BaseModel):
    url: str
    content: Optional[str] = None
    error: Optional[str] = None
    last_attempt: int = 0

    def is_pending(self) -> bool:
        return self.content is None


class Cache(BaseModel):
    """Ordered collection of remote references owned by one stream."""

    items: List[CacheItem] = Field(default_factory=list)

    def pending_items(self) -> List[CacheItem]:
        return [i for i in self.items if i.is_pending()]

    def has_pending(self) -> bool:
        return any(i.is_pending() for i in self.items)

    def add_item(self, url: str) -> None:
        if all(i.url != url for i in self.items):
            self.items.append(CacheItem(url=url))

    def update_item(self, item: CacheItem) -> None:
        for idx, current in enumerate(self.items):
            if current.url == item.url:
                self.items[idx] = item
                return
        self.items.append(item)

    def remove_item(self, url: str) -> None:
        self.items = [i for i in self.items if i.url != url]


class Origin(BaseModel):
    source: str = ""
    type: int = 0
    ts: int = 0


class Stream(BaseModel):
    """A locally stored post (Note) and its cache of resolved references."""

    id: str
    type: str = "Note"
    attributed_to: str = ""
    content: str = ""
    published: str = ""
    origin: Origin = Field(default_factory=Origin)
    cache: Cache = Field(default_factory=Cache)

    def has_cache(self) -> bool:
        return self.cache.has_pending()

    def to_activity(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "attributedTo": self.attributed_to,
            "content": self.content,
            "published": self.published,
        }


DEFAULTS = {
    "backoff_max_tries": 12,
    "running_lease_seconds": 600,
    "fetch_timeout": 10.0,
    "max_response_bytes": 1048576,
    "poll_interval": 5.0,
    "user_agent": "streamqueue/0.1 (+federated cache worker)",
}
