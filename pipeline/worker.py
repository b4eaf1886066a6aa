from __future__ import annotations

import os
import threading

from core.logger import get_logger
from llm.gateway import LLMGateway

from .jobs import default_worker_id, execute_job
from .queue import claim_next, recover_stale_jobs

logger = get_logger(__name__)

MIN_POLL_INTERVAL_S = 0.5


def _poll_interval() -> float:
    return max(MIN_POLL_INTERVAL_S, float(os.getenv("WORKER_POLL_INTERVAL_S", "5")))


class Worker:
    """Claims and executes jobs one at a time until stopped."""

    def __init__(
        self,
        worker_id: str | None = None,
        *,
        poll_interval: float | None = None,
        gateway: LLMGateway | None = None,
    ) -> None:
        self.worker_id = worker_id or default_worker_id()
        self.poll_interval = max(MIN_POLL_INTERVAL_S, poll_interval) if poll_interval else _poll_interval()
        self.gateway = gateway
        self._stop = threading.Event()

    def stop(self) -> None:
        self._stop.set()

    def process_next(self) -> int | None:
        claimed = claim_next(self.worker_id)
        if claimed is None:
            return None
        execute_job(claimed, gateway=self.gateway)
        return claimed.id

    def run(self, *, burst: bool = False, max_jobs: int | None = None) -> int:
        processed = 0
        logger.info("worker_started", worker_id=self.worker_id, poll_interval=self.poll_interval)
        while not self._stop.is_set():
            try:
                job_id = self.process_next()
            except Exception as exc:
                logger.exception("worker_iteration_failed", worker_id=self.worker_id, error=str(exc))
                job_id = None
            if job_id is not None:
                processed += 1
                if max_jobs is not None and processed >= max_jobs:
                    break
                continue
            if burst:
                break
            self._stop.wait(self.poll_interval)
        logger.info("worker_stopped", worker_id=self.worker_id, processed=processed)
        return processed


def run_workers(concurrency: int | None = None, *, burst: bool = False) -> list[Worker]:
    concurrency = concurrency or int(os.getenv("MAX_CONCURRENT_JOBS", "1"))
    recover_stale_jobs()
    workers = [Worker(default_worker_id(index)) for index in range(concurrency)]
    threads = [
        threading.Thread(target=worker.run, kwargs={"burst": burst}, name=worker.worker_id, daemon=True)
        for worker in workers
    ]
    for thread in threads:
        thread.start()
    try:
        for thread in threads:
            while thread.is_alive():
                thread.join(timeout=1.0)
    except KeyboardInterrupt:
        logger.info("worker_shutdown_requested")
        for worker in workers:
            worker.stop()
        for thread in threads:
            thread.join()
    return workers
