#!/usr/bin/env python3
from __future__ import annotations

from argparse import ArgumentParser
import json
from uuid import UUID

from pipeline.queue import list_jobs, queue_stats


def main() -> None:
    parser = ArgumentParser(description="Show recent job statuses")
    parser.add_argument("--account-id", type=UUID, required=True)
    parser.add_argument("--limit", type=int, default=10)
    parser.add_argument("--summary", action="store_true")
    parser.add_argument("--failed", action="store_true", help="Show failed jobs with their error")
    args = parser.parse_args()

    if args.summary:
        stats = queue_stats(args.account_id)
        for status, count in sorted(stats["by_status"].items()):
            print(f"[summary] {status}: {count}")
        print(f"[summary] queued_now: {stats['queued_now']}")
        return
    jobs = list_jobs(args.account_id, status="failed" if args.failed else None, limit=args.limit)
    for job in jobs:
        print(
            f"[job] id={job['id']} kind={job['type']} status={job['status']} "
            f"progress={job['progress_pct']}% text={job['progress_text']!r}"
        )
        if args.failed and job["error"]:
            print(f"[job] error={job['error']}")
        if job["results"] and not args.failed:
            print(f"[job] results={json.dumps(job['results'], default=str)[:400]}")


if __name__ == "__main__":
    main()
