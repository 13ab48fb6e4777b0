import sqlite3, os, threading
from functools import wraps
from pathlib import Path
from typing import Optional, List, Tuple
from .utils import utcnow, now_ts
from .models import DEFAULTS, QueueEntry, QueueStatus
from .errors import QueueStatusError

_local = threading.local()

def db_path() -> Path:
    home = Path(os.environ.get("STREAMQUEUE_HOME", Path.home() / ".streamqueue"))
    home.mkdir(parents=True, exist_ok=True)
    return home / "queue.db"

def get_conn() -> sqlite3.Connection:
    """One connection per thread and process, reopened when STREAMQUEUE_HOME changes."""
    path = db_path()
    conn = getattr(_local, "conn", None)
    if conn is not None and (_local.path != path or _local.pid != os.getpid()):
        if _local.pid == os.getpid():
            conn.close()
        conn = None
    if conn is None:
        conn = sqlite3.connect(path, timeout=30)
        conn.row_factory = sqlite3.Row
        _local.conn = conn
        _local.path = path
        _local.pid = os.getpid()
        init_db(conn)
    return conn

def close_conn():
    conn = getattr(_local, "conn", None)
    if conn is not None and _local.pid == os.getpid():
        conn.close()
    _local.conn = None

def with_conn(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        conn = get_conn()
        return fn(conn, *args, **kwargs)
    return wrapper

def init_db(conn: sqlite3.Connection):
    conn.executescript(
        """
        PRAGMA journal_mode=WAL;
        CREATE TABLE IF NOT EXISTS stream_queue(
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          token TEXT NOT NULL,
          type TEXT NOT NULL,
          stream_id TEXT NOT NULL,
          status TEXT NOT NULL,
          tries INTEGER NOT NULL DEFAULT 0,
          last INTEGER NOT NULL DEFAULT 0,
          claimed_at INTEGER NOT NULL DEFAULT 0,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_queue_status ON stream_queue(status);
        CREATE INDEX IF NOT EXISTS idx_queue_token ON stream_queue(token);
        CREATE TABLE IF NOT EXISTS streams(
          id TEXT PRIMARY KEY,
          type TEXT NOT NULL,
          attributed_to TEXT NOT NULL DEFAULT '',
          content TEXT NOT NULL DEFAULT '',
          published TEXT NOT NULL DEFAULT '',
          origin TEXT NOT NULL DEFAULT '{}',
          cache TEXT NOT NULL DEFAULT '{"items":[]}',
          updated_at TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS config(
          key TEXT PRIMARY KEY,
          value TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS workers(
          id TEXT PRIMARY KEY,
          pid INTEGER NOT NULL,
          started_at TEXT NOT NULL,
          stopped_at TEXT
        );
        """
    )
    # defaults
    for k,v in DEFAULTS.items():
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) ON CONFLICT(key) DO NOTHING",
            (k, str(v)),
        )
    conn.execute("INSERT INTO config(key,value) VALUES('shutdown','false') ON CONFLICT(key) DO NOTHING")
    conn.commit()

def _entry(row: sqlite3.Row) -> QueueEntry:
    return QueueEntry(**dict(row))

@with_conn
def create_entry(conn, token: str, type: str, stream_id: str) -> QueueEntry:
    now = utcnow().isoformat()
    cur = conn.execute(
        """INSERT INTO stream_queue(token,type,stream_id,status,tries,last,claimed_at,created_at,updated_at)
           VALUES(?,?,?,?,0,0,0,?,?)""",
        (token, type, stream_id, QueueStatus.STANDBY.value, now, now),
    )
    conn.commit()
    row = conn.execute("SELECT * FROM stream_queue WHERE id=?", (cur.lastrowid,)).fetchone()
    return _entry(row)

@with_conn
def get_entry(conn, entry_id: int) -> Optional[QueueEntry]:
    row = conn.execute("SELECT * FROM stream_queue WHERE id=?", (entry_id,)).fetchone()
    return _entry(row) if row else None

@with_conn
def get_standby(conn) -> List[QueueEntry]:
    cur = conn.execute("SELECT * FROM stream_queue WHERE status=? ORDER BY id", (QueueStatus.STANDBY.value,))
    return [_entry(r) for r in cur.fetchall()]

@with_conn
def get_from_token(conn, token: str) -> List[QueueEntry]:
    cur = conn.execute("SELECT * FROM stream_queue WHERE token=? ORDER BY id", (token,))
    return [_entry(r) for r in cur.fetchall()]

@with_conn
def list_entries(conn, status: Optional[str] = None) -> List[QueueEntry]:
    if status:
        cur = conn.execute("SELECT * FROM stream_queue WHERE status=? ORDER BY id", (status,))
    else:
        cur = conn.execute("SELECT * FROM stream_queue ORDER BY id")
    return [_entry(r) for r in cur.fetchall()]

@with_conn
def counts_by_status(conn) -> List[Tuple[str,int]]:
    cur = conn.execute("SELECT status, COUNT(*) FROM stream_queue GROUP BY status")
    return cur.fetchall()

def _transition(conn, entry: QueueEntry, expected: QueueStatus, sql: str, params: tuple):
    """Run a status UPDATE guarded by `status=expected`; nothing matched means someone else got there first."""
    cur = conn.execute(sql + " WHERE id=? AND status=?", params + (entry.id, expected.value))
    conn.commit()
    if cur.rowcount == 0:
        raise QueueStatusError(f"entry {entry.id} is not {expected.value}")

@with_conn
def set_as_running(conn, entry: QueueEntry):
    """Claim a standby entry. Only one caller can win; the others get QueueStatusError."""
    _transition(
        conn, entry, QueueStatus.STANDBY,
        "UPDATE stream_queue SET status=?, claimed_at=?, updated_at=?",
        (QueueStatus.RUNNING.value, now_ts(), utcnow().isoformat()),
    )

@with_conn
def touch_running(conn, entry: QueueEntry) -> bool:
    """Extend the lease of a running entry; False when the claim was already lost."""
    cur = conn.execute(
        "UPDATE stream_queue SET claimed_at=?, updated_at=? WHERE id=? AND status=?",
        (now_ts(), utcnow().isoformat(), entry.id, QueueStatus.RUNNING.value),
    )
    conn.commit()
    return cur.rowcount == 1

def _finish(conn, entry: QueueEntry, status: QueueStatus):
    _transition(
        conn, entry, QueueStatus.RUNNING,
        "UPDATE stream_queue SET status=?, tries=tries+1, last=?, claimed_at=0, updated_at=?",
        (status.value, now_ts(), utcnow().isoformat()),
    )

@with_conn
def set_as_success(conn, entry: QueueEntry):
    _finish(conn, entry, QueueStatus.SUCCESS)

@with_conn
def set_as_failure(conn, entry: QueueEntry):
    _finish(conn, entry, QueueStatus.FAILURE)

@with_conn
def set_as_standby(conn, entry: QueueEntry):
    """Re-arm a failed entry so the backoff schedule picks it up again."""
    _transition(
        conn, entry, QueueStatus.FAILURE,
        "UPDATE stream_queue SET status=?, updated_at=?",
        (QueueStatus.STANDBY.value, utcnow().isoformat()),
    )

@with_conn
def delete_entry(conn, entry: QueueEntry):
    conn.execute("DELETE FROM stream_queue WHERE id=?", (entry.id,))
    conn.commit()

@with_conn
def recover_running(conn, lease_seconds: int) -> int:
    """Return entries whose claim outlived the lease (crashed worker) to standby, counting the lost attempt."""
    now = now_ts()
    cur = conn.execute("""
      UPDATE stream_queue
         SET status=?, tries=tries+1, last=?, claimed_at=0, updated_at=?
       WHERE status=? AND claimed_at <= ?
    """, (QueueStatus.STANDBY.value, now, utcnow().isoformat(), QueueStatus.RUNNING.value, now - lease_seconds))
    conn.commit()
    return cur.rowcount

@with_conn
def purge_success(conn) -> int:
    cur = conn.execute("DELETE FROM stream_queue WHERE status=?", (QueueStatus.SUCCESS.value,))
    conn.commit()
    return cur.rowcount

@with_conn
def config_get(conn, key: str, default: Optional[str]=None) -> str:
    cur = conn.execute("SELECT value FROM config WHERE key=?", (key,))
    row = cur.fetchone()
    return row[0] if row else default

@with_conn
def config_set(conn, key: str, value: str):
    conn.execute("INSERT INTO config(key,value) VALUES(?,?) ON CONFLICT(key) DO UPDATE SET value=excluded.value", (key, value))
    conn.commit()

@with_conn
def register_worker(conn, wid: str, pid: int):
    conn.execute("INSERT INTO workers(id,pid,started_at) VALUES(?,?,?)", (wid, pid, utcnow().isoformat()))
    conn.commit()

@with_conn
def stop_worker_record(conn, wid: str):
    conn.execute("UPDATE workers SET stopped_at=? WHERE id=?", (utcnow().isoformat(), wid))
    conn.commit()

@with_conn
def list_workers(conn):
    return conn.execute("SELECT * FROM workers WHERE stopped_at IS NULL").fetchall()
