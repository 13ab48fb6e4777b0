"""Queue scheduler and fetch pipeline for cached remote references.

A queue entry of type ``Cache`` points at a local stream whose cache holds
references (urls) to remote posts. Processing an entry fetches every pending
reference, checks it really is the Note it claims to be, stores it, and writes
its serialized form back into the stream's cache.

Entries move standby -> running -> success | failure. A failed entry goes back
to standby and is retried once its backoff delay has passed.
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional
from urllib.parse import urlparse

from . import notes, storage
from .activitypub import ORIGIN_REQUEST, TYPE_NOTE, ActivityPubResolver
from .config import Settings
from .errors import (
    FAILURE_POLICIES,
    CacheError,
    FailureKind,
    InvalidOriginError,
    InvalidResourceError,
    NoteNotFoundError,
    Policy,
    QueueStatusError,
)
from .models import TYPE_CACHE, Cache, CacheItem, QueueEntry, Stream
from .transport import ObjectFetcher
from .utils import now_ts

logger = logging.getLogger(__name__)


def backoff_delay(tries: int, max_tries: Optional[int] = None) -> int:
    """delay = floor(tries^4 / 3) seconds, with tries optionally capped."""
    if max_tries is not None:
        tries = min(tries, max_tries)
    return math.floor(tries ** 4 / 3)


@dataclass
class CacheResult:
    item: CacheItem
    failure: Optional[FailureKind] = None

    @property
    def policy(self) -> Optional[Policy]:
        if self.failure is None:
            return None
        return FAILURE_POLICIES[self.failure].policy


class StreamQueueService:
    def __init__(self, settings: Settings, fetcher: ObjectFetcher, resolver: ActivityPubResolver):
        self.settings = settings
        self.fetcher = fetcher
        self.resolver = resolver

    def generate_stream_queue(self, token: str, type: str, stream_id: str) -> QueueEntry:
        return storage.create_entry(token, type, stream_id)

    def get_request_standby(self, now: Optional[int] = None) -> List[QueueEntry]:
        """Standby entries whose backoff delay has elapsed."""
        now = now_ts() if now is None else now
        result = []
        for entry in storage.get_standby():
            delay = backoff_delay(entry.tries, self.settings.backoff_max_tries)
            if entry.last < now - delay:
                result.append(entry)
        return result

    def cache_stream_by_token(self, token: str):
        logger.info("Cache: %s", token)
        for entry in storage.get_from_token(token):
            self.manage_stream_queue(entry)

    def manage_stream_queue(self, entry: QueueEntry):
        if entry.type == TYPE_CACHE:
            self._manage_stream_queue_cache(entry)
        else:
            logger.info("dropping queue entry %d of unknown type %s", entry.id, entry.type)
            self.delete_request(entry)

    def _manage_stream_queue_cache(self, entry: QueueEntry):
        try:
            stream = notes.get_note_by_id(entry.stream_id)
        except NoteNotFoundError:
            self.delete_request(entry)
            return

        if not stream.has_cache():
            self.delete_request(entry)
            return

        try:
            self.init_request(entry)
        except QueueStatusError:
            logger.debug("queue entry %d already claimed", entry.id)
            return

        try:
            cache = self.manage_stream_cache(stream, entry)
        except Exception:
            logger.exception("unexpected error processing queue entry %d", entry.id)
            self.end_request(entry, False)
            return

        self.end_request(entry, not cache.has_pending())

    def manage_stream_cache(self, stream: Stream, entry: Optional[QueueEntry] = None) -> Cache:
        """Resolve every pending item, then merge the outcome into the stored cache once.

        Returns the merged cache, which includes references added while the pass ran.
        """
        results: Dict[str, Optional[CacheItem]] = {}
        for item in stream.cache.pending_items():
            try:
                result = self.cache_item(item.model_copy())
            except Exception:
                logger.exception("unexpected error caching %s", item.url)
            else:
                results[item.url] = None if result.policy == Policy.DROP else result.item
            if entry is not None:
                storage.touch_running(entry)

        return notes.update_cache(stream, results)

    def cache_item(self, item: CacheItem) -> CacheResult:
        """Fetch, validate and store the object behind one cache item."""
        item.last_attempt = now_ts()
        try:
            data = self.fetcher.retrieve_object(item.url)
            obj = self.resolver.get_item_from_data(data)
            obj.set_origin(urlparse(item.url).hostname or "", ORIGIN_REQUEST, now_ts())

            if obj.id != item.url:
                raise InvalidOriginError(f"object id {obj.id} does not match {item.url}")
            if obj.type != TYPE_NOTE:
                raise InvalidResourceError(f"{item.url} is a {obj.type}, not a {TYPE_NOTE}")

            self.resolver.get_interface_for_item(obj).save(obj)

            note = notes.get_note_by_id(obj.id)
        except CacheError as e:
            if e.policy.log:
                logger.warning(
                    "Error caching stream: %s %s %s",
                    item.model_dump_json(), type(e).__name__, e,
                )
            item.error = e.kind.value
            return CacheResult(item, e.kind)

        item.content = notes.serialize(note)
        item.error = None
        return CacheResult(item)

    def init_request(self, entry: QueueEntry):
        storage.set_as_running(entry)

    def end_request(self, entry: QueueEntry, success: bool):
        try:
            if success:
                storage.set_as_success(entry)
            else:
                storage.set_as_failure(entry)
                storage.set_as_standby(entry)
        except QueueStatusError:
            pass

    def delete_request(self, entry: QueueEntry):
        storage.delete_entry(entry)

    def close(self):
        self.fetcher.close()
