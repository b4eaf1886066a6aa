from __future__ import annotations

from argparse import ArgumentParser
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete

from db.models import LLMResponseLog, WorkflowExecution
from db.session import SessionLocal


def parse_args() -> ArgumentParser:
    parser = ArgumentParser(description="Prune LLM response logs and workflow execution records")
    parser.add_argument("--log-days", type=int, default=90)
    parser.add_argument("--execution-days", type=int, default=180)
    return parser


def main() -> int:
    args = parse_args().parse_args()
    now = datetime.now(timezone.utc)
    log_cutoff = now - timedelta(days=max(0, args.log_days))
    execution_cutoff = now - timedelta(days=max(0, args.execution_days))
    with SessionLocal() as session:
        logs_deleted = session.execute(
            delete(LLMResponseLog).where(LLMResponseLog.created_at < log_cutoff)
        ).rowcount
        executions_deleted = session.execute(
            delete(WorkflowExecution).where(WorkflowExecution.created_at < execution_cutoff)
        ).rowcount
        session.commit()
    print(
        f"[llm-log-retention] logs_deleted={logs_deleted or 0} "
        f"executions_deleted={executions_deleted or 0} "
        f"log_cutoff={log_cutoff.date().isoformat()} execution_cutoff={execution_cutoff.date().isoformat()}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
