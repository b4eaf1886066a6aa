#!/usr/bin/env python3
from __future__ import annotations

from argparse import ArgumentParser
import os

from rq import SimpleWorker, Worker

from core.logger import configure_logging
from db.session import engine
from pipeline.queue import get_queue, get_redis, recover_stale_jobs
from pipeline.worker import run_workers


def main() -> None:
    parser = ArgumentParser(description="Start job workers")
    parser.add_argument(
        "--backend",
        choices=("poll", "rq"),
        default=os.getenv("JOB_QUEUE_BACKEND", "rq"),
        help="poll: threads claim from the job table; rq: consume wake-up tasks from Redis",
    )
    parser.add_argument("--concurrency", type=int, default=int(os.getenv("MAX_CONCURRENT_JOBS", "1")))
    parser.add_argument("--queue", default="default")
    parser.add_argument("--burst", action="store_true", help="Process queued jobs and exit")
    args = parser.parse_args()

    configure_logging()
    if args.backend == "poll":
        print(f"[worker] polling job table with {args.concurrency} thread(s)")
        run_workers(args.concurrency, burst=args.burst)
        return

    if hasattr(os, "register_at_fork"):
        os.register_at_fork(after_in_child=lambda: engine.dispose())

    recovered = recover_stale_jobs()
    print(f"[worker] stale jobs requeued={recovered['requeued']} failed={recovered['failed']}")
    queue = get_queue(args.queue)
    worker_cls = SimpleWorker if os.getenv("RQ_SIMPLE_WORKER", "1") == "1" else Worker
    worker = worker_cls([queue], connection=get_redis())
    worker.work(with_scheduler=False, burst=args.burst)


if __name__ == "__main__":
    main()
