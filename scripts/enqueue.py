#!/usr/bin/env python3
from __future__ import annotations

from argparse import ArgumentParser
import json
from uuid import UUID

from db.models import JOB_TYPES
from pipeline.queue import enqueue


def main() -> None:
    parser = ArgumentParser(description="Enqueue a pipeline job for a tenant")
    parser.add_argument("--account-id", type=UUID, required=True)
    parser.add_argument("--type", dest="job_type", choices=JOB_TYPES, default="full_cycle")
    parser.add_argument("--payload", default="{}", help="JSON object passed to the job handler")
    parser.add_argument("--story-id", type=int, help="Shortcut for payload.specificStoryId")
    parser.add_argument("--priority", type=int, default=0)
    args = parser.parse_args()

    payload = json.loads(args.payload)
    if not isinstance(payload, dict):
        parser.error("--payload must be a JSON object")
    if args.story_id is not None:
        payload["specificStoryId"] = args.story_id

    job_id = enqueue(args.job_type, payload, args.account_id, priority=args.priority, created_by="cli")
    print("[enqueue] job_id:", job_id)
    print("[enqueue] type:", args.job_type)


if __name__ == "__main__":
    main()
