"""Storage of local streams (notes) and their cache of remote references."""

import json
from contextlib import contextmanager
from typing import Dict, List, Optional

from .errors import NoteNotFoundError
from .models import Cache, CacheItem, Origin, Stream
from .storage import with_conn
from .utils import utcnow


def _stream(row) -> Stream:
    return Stream(
        id=row["id"],
        type=row["type"],
        attributed_to=row["attributed_to"],
        content=row["content"],
        published=row["published"],
        origin=Origin.model_validate_json(row["origin"]),
        cache=Cache.model_validate_json(row["cache"]),
    )


@contextmanager
def _immediate(conn):
    """Read-modify-write of a cache column; BEGIN IMMEDIATE keeps other writers out until commit."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield
    except BaseException:
        conn.rollback()
        raise
    conn.commit()


@with_conn
def save_note(conn, stream: Stream) -> List[str]:
    """Insert or update a note keyed by id. An existing cache is kept and merged with new references.

    Returns the urls of pending references the cache did not hold before.
    """
    with _immediate(conn):
        row = conn.execute("SELECT cache FROM streams WHERE id=?", (stream.id,)).fetchone()
        cache = stream.cache
        added = [i.url for i in cache.pending_items()]
        if row is not None:
            cache = Cache.model_validate_json(row["cache"])
            known = {i.url for i in cache.items}
            added = [i.url for i in stream.cache.items if i.url not in known]
            for item in stream.cache.items:
                cache.add_item(item.url)
        conn.execute(
            """INSERT INTO streams(id,type,attributed_to,content,published,origin,cache,updated_at)
               VALUES(?,?,?,?,?,?,?,?)
               ON CONFLICT(id) DO UPDATE SET
                 type=excluded.type,
                 attributed_to=excluded.attributed_to,
                 content=excluded.content,
                 published=excluded.published,
                 origin=excluded.origin,
                 cache=excluded.cache,
                 updated_at=excluded.updated_at
            """,
            (
                stream.id,
                stream.type,
                stream.attributed_to,
                stream.content,
                stream.published,
                stream.origin.model_dump_json(),
                cache.model_dump_json(),
                utcnow().isoformat(),
            ),
        )
    return added


@with_conn
def get_note_by_id(conn, stream_id: str) -> Stream:
    row = conn.execute("SELECT * FROM streams WHERE id=?", (stream_id,)).fetchone()
    if row is None:
        raise NoteNotFoundError(f"note {stream_id} not found")
    return _stream(row)


@with_conn
def list_notes(conn) -> List[Stream]:
    return [_stream(r) for r in conn.execute("SELECT * FROM streams ORDER BY id").fetchall()]


@with_conn
def update_cache(conn, stream: Stream, results: Dict[str, Optional[CacheItem]]) -> Cache:
    """Merge the outcome of a pass into the stored cache and return the merged cache.

    `results` maps each processed url to its new item, or to None when the item is
    dropped. Items stored under other urls (added while the pass ran) are kept.
    """
    with _immediate(conn):
        row = conn.execute("SELECT cache FROM streams WHERE id=?", (stream.id,)).fetchone()
        if row is None:
            raise NoteNotFoundError(f"note {stream.id} not found")
        cache = Cache.model_validate_json(row["cache"])
        for url, item in results.items():
            if item is None:
                cache.remove_item(url)
            elif any(i.url == url for i in cache.items):
                cache.update_item(item)
        conn.execute(
            "UPDATE streams SET cache=?, updated_at=? WHERE id=?",
            (cache.model_dump_json(), utcnow().isoformat(), stream.id),
        )
    return cache


def serialize(stream: Stream) -> str:
    return json.dumps(stream.to_activity(), separators=(",", ":"))
