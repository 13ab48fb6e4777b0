# streamqueue/worker.py
import logging
import os
import time
import uuid
from dataclasses import dataclass
from multiprocessing import Process

from .activitypub import ActivityPubResolver
from .config import load_settings
from .service import StreamQueueService
from .storage import (
    register_worker,
    stop_worker_record,
    recover_running,
    config_get,
    config_set,
)
from .transport import ObjectFetcher

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    recovered: int = 0
    due: int = 0


def build_service() -> StreamQueueService:
    settings = load_settings()
    return StreamQueueService(settings, ObjectFetcher(settings), ActivityPubResolver())


def run_sweep(service: StreamQueueService) -> SweepReport:
    """
    One scheduler pass:
      - returns entries of crashed workers (lease expired) to standby
      - processes every standby entry whose backoff delay has elapsed
    Entries claimed by another worker in the meantime are skipped by the service.
    """
    report = SweepReport()
    report.recovered = recover_running(service.settings.running_lease_seconds)
    if report.recovered:
        logger.warning("recovered %d stale running entries", report.recovered)

    due = service.get_request_standby()
    report.due = len(due)
    for entry in due:
        service.manage_stream_queue(entry)
    return report


def worker_loop(worker_id: str):
    """
    Single worker process loop:
      - respects global 'shutdown' flag
      - sweeps the queue, sleeping poll_interval when nothing was due
      - always deregisters itself on exit
    """
    pid = os.getpid()
    register_worker(worker_id, pid)
    service = build_service()
    logger.info("worker %s started (pid %d)", worker_id, pid)

    try:
        while True:
            if config_get("shutdown", "false") == "true":
                break

            report = run_sweep(service)
            if not report.due:
                time.sleep(service.settings.poll_interval)
    except KeyboardInterrupt:
        # quiet exit on Ctrl+C
        pass
    finally:
        service.close()
        stop_worker_record(worker_id)
        logger.info("worker %s stopped", worker_id)


def start_workers(count: int):
    """
    Spawn N workers and join them. If Ctrl+C is pressed in the parent,
    set shutdown=true so children finish their current sweep and exit cleanly.
    """
    procs = []
    for _ in range(count):
        wid = f"w-{uuid.uuid4().hex[:8]}"
        p = Process(target=worker_loop, args=(wid,), daemon=False)
        p.start()
        procs.append(p)

    try:
        for p in procs:
            p.join()
    except KeyboardInterrupt:
        # parent interrupted -> request graceful stop for all workers
        config_set("shutdown", "true")
        for p in procs:
            p.join()
