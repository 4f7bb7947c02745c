from __future__ import annotations

import argparse
import os
import socket
import time
import uuid

from app import create_app
from app.contexts.fiscal.application.handlers import build_job_registry
from app.contexts.fiscal.application.job_queue import process_jobs, release_stale_jobs
from app.contexts.fiscal.domain.jobs import JOB_TYPES
from app.db import close_db, get_db
from app.observability import bind_request_id


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Worker da fila fiscal (NF-e, cancelamento, CC-e).")
    parser.add_argument("--once", action="store_true", help="Processa um lote unico e encerra.")
    parser.add_argument(
        "--job-type",
        action="append",
        default=[],
        choices=JOB_TYPES,
        help="Processa apenas o tipo informado (pode repetir).",
    )
    parser.add_argument("--limit", type=int, default=0, help="Quantidade maxima por lote.")
    parser.add_argument("--interval", type=int, default=0, help="Intervalo em segundos quando a fila esta vazia.")
    return parser


def _worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def _run_once(app, registry, *, job_types, limit: int, worker_id: str) -> dict:
    with app.app_context():
        db = get_db()
        try:
            released = release_stale_jobs(
                db,
                int(app.config.get("JOB_STALE_LOCK_SECONDS", 900) or 900),
                registry=registry,
            )
            summary = process_jobs(db, registry, job_types=job_types, limit=limit, worker_id=worker_id)
            summary["released"] = released
            return summary
        finally:
            close_db()


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    os.environ.setdefault("DB_AUTO_INIT", "false")
    app = create_app()

    configured_limit = int(app.config.get("JOB_WORKER_BATCH_SIZE", 10) or 10)
    configured_interval = int(app.config.get("JOB_WORKER_POLL_INTERVAL_SECONDS", 5) or 5)
    limit = max(1, int(args.limit or configured_limit))
    interval_seconds = max(1, int(args.interval or configured_interval))
    job_types = list(args.job_type) or None
    registry = build_job_registry()
    worker_id = _worker_id()

    while True:
        run_request_id = f"worker-{uuid.uuid4().hex[:12]}"
        with bind_request_id(run_request_id):
            try:
                summary = _run_once(app, registry, job_types=job_types, limit=limit, worker_id=worker_id)
            except Exception:
                app.logger.exception(
                    "fiscal_worker_batch_failed",
                    extra={"request_id": run_request_id, "worker_id": worker_id},
                )
                summary = {"processed": 0}
            else:
                app.logger.info(
                    "fiscal_worker_batch_completed",
                    extra={
                        "request_id": run_request_id,
                        "worker_id": worker_id,
                        "job_types": job_types or "all",
                        "processed": summary.get("processed", 0),
                        "completed": summary.get("completed", 0),
                        "retried": summary.get("retried", 0),
                        "deferred": summary.get("deferred", 0),
                        "failed": summary.get("failed", 0),
                        "released": summary.get("released", 0),
                    },
                )
        if args.once:
            break
        if not summary.get("processed"):
            time.sleep(interval_seconds)

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
