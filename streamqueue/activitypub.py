"""Turn fetched ActivityPub payloads into objects and store them.

The resolver is handed to :class:`streamqueue.service.StreamQueueService` at
construction; it parses a decoded JSON document into an :class:`ActivityObject`
and picks the interface able to persist that kind of object.
"""

import logging
import uuid
from typing import Any, Dict, Optional, Protocol

from pydantic import BaseModel, Field, ValidationError

from . import notes, storage
from .errors import ItemUnknownError, MalformedStructureError, RedundancyLimitError
from .models import TYPE_CACHE, Cache, Origin, QueueEntry, Stream

logger = logging.getLogger(__name__)

ORIGIN_HEADER = 1
ORIGIN_SIGNATURE = 2
ORIGIN_REQUEST = 3

REDUNDANCY_LIMIT = 10

TYPE_NOTE = "Note"
KNOWN_TYPES = {"Note", "Create", "Announce", "Update", "Delete", "Tombstone", "Person"}

# keys used by the various servers to point at a quoted post
QUOTE_KEYS = ("quoteUrl", "quoteUri", "_misskey_quote")


class ActivityObject(BaseModel):
    id: str
    type: str
    attributed_to: str = ""
    content: str = ""
    published: str = ""
    quote: Optional[str] = None
    object: Optional["ActivityObject"] = None
    origin: Origin = Field(default_factory=Origin)

    def set_origin(self, source: str, origin_type: int, ts: int) -> None:
        self.origin = Origin(source=source, type=origin_type, ts=ts)


ActivityObject.model_rebuild()


class ItemInterface(Protocol):
    def save(self, item: ActivityObject, token: Optional[str] = None) -> Optional[QueueEntry]: ...


def _actor_id(value: Any) -> str:
    if isinstance(value, dict):
        value = value.get("id", "")
    elif isinstance(value, list):
        value = _actor_id(value[0]) if value else ""
    if not isinstance(value, str):
        raise MalformedStructureError("attributedTo is neither a string nor an object")
    return value


def _quote(data: Dict[str, Any]) -> Optional[str]:
    for key in QUOTE_KEYS:
        if isinstance(data.get(key), str):
            return data[key]
    return None


class NoteInterface:
    """Persists Notes as local streams; a quoted post becomes a pending cache item."""

    def to_stream(self, item: ActivityObject) -> Stream:
        cache = Cache()
        if item.quote:
            cache.add_item(item.quote)
        return Stream(
            id=item.id,
            type=item.type,
            attributed_to=item.attributed_to,
            content=item.content,
            published=item.published,
            origin=item.origin,
            cache=cache,
        )

    def save(self, item: ActivityObject, token: Optional[str] = None) -> Optional[QueueEntry]:
        """Store the note; new quoted references get a Cache entry so the queue resolves them."""
        added = notes.save_note(self.to_stream(item))
        logger.debug("saved note %s", item.id)
        if not added:
            return None
        entry = storage.create_entry(token or uuid.uuid4().hex, TYPE_CACHE, item.id)
        logger.info("queued %d new reference(s) of %s as entry %d", len(added), item.id, entry.id)
        return entry


class ActivityPubResolver:
    def __init__(self, interfaces: Optional[Dict[str, ItemInterface]] = None,
                 redundancy_limit: int = REDUNDANCY_LIMIT):
        self.interfaces = interfaces if interfaces is not None else {TYPE_NOTE: NoteInterface()}
        self.redundancy_limit = redundancy_limit

    def get_item_from_data(self, data: Any, level: int = 0) -> ActivityObject:
        """Build an object from a decoded document, following nested `object` entries."""
        if level > self.redundancy_limit:
            raise RedundancyLimitError(f"object nesting deeper than {self.redundancy_limit}")
        if not isinstance(data, dict):
            raise MalformedStructureError("document is not an object")

        kind = data.get("type")
        if not isinstance(kind, str) or not isinstance(data.get("id"), str):
            raise MalformedStructureError("missing id or type")
        if kind not in KNOWN_TYPES:
            raise ItemUnknownError(f"unknown object type {kind}")

        nested = data.get("object")
        try:
            return ActivityObject(
                id=data["id"],
                type=kind,
                attributed_to=_actor_id(data.get("attributedTo", "")),
                content=data.get("content") or "",
                published=data.get("published") or "",
                quote=_quote(data),
                object=self.get_item_from_data(nested, level + 1) if isinstance(nested, dict) else None,
            )
        except ValidationError as e:
            raise MalformedStructureError(str(e)) from e

    def get_interface_for_item(self, item: ActivityObject) -> ItemInterface:
        interface = self.interfaces.get(item.type)
        if interface is None:
            raise ItemUnknownError(f"no interface for {item.type}")
        return interface
