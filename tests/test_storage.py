import threading

import pytest

from streamqueue import storage
from streamqueue.errors import QueueStatusError
from streamqueue.models import QueueStatus
from streamqueue.utils import now_ts


def test_create_entry_defaults():
    entry = storage.create_entry("tok", "Cache", "stream-1")
    assert entry.status == QueueStatus.STANDBY
    assert entry.tries == 0
    assert entry.last == 0


def test_duplicates_are_allowed():
    a = storage.create_entry("tok", "Cache", "stream-1")
    b = storage.create_entry("tok", "Cache", "stream-1")
    assert a.id != b.id
    assert len(storage.get_from_token("tok")) == 2


def test_get_standby_and_token_filters():
    a = storage.create_entry("tok-a", "Cache", "s1")
    storage.create_entry("tok-b", "Cache", "s2")
    storage.set_as_running(a)

    assert [e.token for e in storage.get_standby()] == ["tok-b"]
    assert [e.id for e in storage.get_from_token("tok-a")] == [a.id]


def test_set_as_running_only_once():
    entry = storage.create_entry("tok", "Cache", "s1")
    storage.set_as_running(entry)
    with pytest.raises(QueueStatusError):
        storage.set_as_running(entry)
    assert storage.get_entry(entry.id).status == QueueStatus.RUNNING


def test_set_as_running_concurrent_single_winner():
    entry = storage.create_entry("tok", "Cache", "s1")
    barrier = threading.Barrier(8)
    results = []
    lock = threading.Lock()

    def claim():
        barrier.wait()
        try:
            storage.set_as_running(entry)
            outcome = "won"
        except QueueStatusError:
            outcome = "lost"
        finally:
            storage.close_conn()
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=claim) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count("won") == 1
    assert results.count("lost") == 7


def test_finish_requires_running():
    entry = storage.create_entry("tok", "Cache", "s1")
    with pytest.raises(QueueStatusError):
        storage.set_as_success(entry)
    with pytest.raises(QueueStatusError):
        storage.set_as_failure(entry)

    current = storage.get_entry(entry.id)
    assert current.status == QueueStatus.STANDBY
    assert current.tries == 0
    assert current.last == 0


def test_set_as_failure_counts_attempt_and_spares_others():
    entry = storage.create_entry("tok", "Cache", "s1")
    other = storage.create_entry("tok", "Cache", "s2")
    storage.set_as_running(entry)
    storage.set_as_failure(entry)

    current = storage.get_entry(entry.id)
    assert current.status == QueueStatus.FAILURE
    assert current.tries == 1
    assert current.last >= now_ts() - 5

    untouched = storage.get_entry(other.id)
    assert untouched.tries == 0
    assert untouched.last == 0


def test_success_then_rearm_is_refused():
    entry = storage.create_entry("tok", "Cache", "s1")
    storage.set_as_running(entry)
    storage.set_as_success(entry)
    assert storage.get_entry(entry.id).status == QueueStatus.SUCCESS
    with pytest.raises(QueueStatusError):
        storage.set_as_standby(entry)


def test_failure_rearm_to_standby():
    entry = storage.create_entry("tok", "Cache", "s1")
    storage.set_as_running(entry)
    storage.set_as_failure(entry)
    storage.set_as_standby(entry)
    current = storage.get_entry(entry.id)
    assert current.status == QueueStatus.STANDBY
    assert current.tries == 1


def test_delete_is_unconditional():
    entry = storage.create_entry("tok", "Cache", "s1")
    storage.set_as_running(entry)
    storage.delete_entry(entry)
    assert storage.get_entry(entry.id) is None


def test_recover_running_respects_lease():
    entry = storage.create_entry("tok", "Cache", "s1")
    storage.set_as_running(entry)

    assert storage.recover_running(600) == 0
    assert storage.get_entry(entry.id).status == QueueStatus.RUNNING

    assert storage.recover_running(0) == 1
    current = storage.get_entry(entry.id)
    assert current.status == QueueStatus.STANDBY
    assert current.tries == 1
    assert current.claimed_at == 0


def test_touch_running_extends_only_running_claims():
    entry = storage.create_entry("tok", "Cache", "s1")
    assert storage.touch_running(entry) is False

    storage.set_as_running(entry)
    conn = storage.get_conn()
    conn.execute("UPDATE stream_queue SET claimed_at=1 WHERE id=?", (entry.id,))
    conn.commit()
    assert storage.touch_running(entry) is True
    assert storage.recover_running(600) == 0
    assert storage.get_entry(entry.id).claimed_at > 1


def test_purge_success():
    done = storage.create_entry("tok", "Cache", "s1")
    pending = storage.create_entry("tok", "Cache", "s2")
    storage.set_as_running(done)
    storage.set_as_success(done)

    assert storage.purge_success() == 1
    assert storage.get_entry(done.id) is None
    assert storage.get_entry(pending.id) is not None


def test_config_defaults_seeded():
    assert storage.config_get("backoff_max_tries") == "12"
    assert storage.config_get("shutdown") == "false"
    storage.config_set("shutdown", "true")
    assert storage.config_get("shutdown") == "true"
