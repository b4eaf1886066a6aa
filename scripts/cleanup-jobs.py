#!/usr/bin/env python3
from __future__ import annotations

from argparse import ArgumentParser

from pipeline.queue import recover_stale_jobs


def main() -> None:
    parser = ArgumentParser(description="Requeue or fail processing jobs whose worker stopped heartbeating")
    parser.add_argument("--older-min", type=int, default=10)
    args = parser.parse_args()

    result = recover_stale_jobs(max(1, args.older_min) * 60)
    print(f"[cleanup] requeued {result['requeued']} job(s), marked {result['failed']} job(s) as failed")


if __name__ == "__main__":
    main()
