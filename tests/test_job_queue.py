import threading
import unittest
from datetime import datetime, timedelta, timezone

from app.contexts.fiscal.application.job_queue import (
    DeferredJobError,
    JobHandlerRegistry,
    RetryableJobError,
    TerminalJobError,
    claim_next_job,
    enqueue_job,
    get_job,
    list_jobs,
    next_backoff_seconds,
    process_jobs,
    release_stale_jobs,
    requeue_failed_job,
)
from app.contexts.fiscal.domain.jobs import NFE_CANCEL, NFE_EMIT, NFE_POLL_RECEIPT, EmitNfeJob
from app.db import close_db, connect_database, get_db
from app.errors import NotFoundError, PreconditionError, ValidationError
from app.observability import metrics_snapshot
from tests.helpers.fiscal import TENANT_ID, build_fiscal_app
from tests.helpers.temp_db import TempDbSandbox


NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class BackoffTest(unittest.TestCase):
    def test_exponential_growth_until_cap(self) -> None:
        values = [next_backoff_seconds(attempt, base_minutes=1, max_seconds=600, jitter_ratio=0) for attempt in range(6)]
        self.assertEqual(values, [60.0, 120.0, 240.0, 480.0, 600.0, 600.0])

    def test_jitter_never_passes_cap(self) -> None:
        for attempt in range(8):
            delay = next_backoff_seconds(attempt, base_minutes=1, max_seconds=300, jitter_ratio=0.5)
            self.assertLessEqual(delay, 300.0)
            self.assertGreaterEqual(delay, min(300.0, 60.0 * 2**attempt))


class JobQueueTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="fiscal_jobs")
        self.app = build_fiscal_app(self._temp_db, certificate=False)
        self.handled = []
        self.dead_letters = []

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()

    def _enqueue(self, db, job_type: str = NFE_EMIT, **kwargs) -> int:
        payload = kwargs.pop("payload", EmitNfeJob(emission_id=1, tenant_id=TENANT_ID))
        job_id = enqueue_job(db, job_type, payload, tenant_id=TENANT_ID, run_at=NOW, **kwargs)
        db.commit()
        return job_id

    def _registry(self, handle) -> JobHandlerRegistry:
        registry = JobHandlerRegistry()

        def on_dead_letter(db, payload, job, error):
            self.dead_letters.append((job.id, error))

        registry.register(NFE_EMIT, handle, on_dead_letter=on_dead_letter)
        return registry

    def test_default_attempt_budget_depends_on_job_type(self) -> None:
        with self.app.app_context():
            db = get_db()
            emit_id = self._enqueue(db)
            poll_id = self._enqueue(db, NFE_POLL_RECEIPT)
            self.assertEqual(get_job(db, emit_id).max_attempts, 5)
            self.assertEqual(get_job(db, poll_id).max_attempts, 10)

    def test_enqueue_rejects_unparseable_payload(self) -> None:
        with self.app.app_context():
            db = get_db()
            with self.assertRaises(ValueError):
                enqueue_job(db, NFE_CANCEL, {"tenant_id": TENANT_ID}, tenant_id=TENANT_ID)

    def test_only_one_worker_claims_a_job(self) -> None:
        with self.app.app_context():
            job_id = self._enqueue(get_db())
        db_path = self.app.config["DB_PATH"]
        barrier = threading.Barrier(6)
        claimed = []
        errors = []

        def worker(index: int) -> None:
            db = connect_database(db_path)
            try:
                barrier.wait()
                job = claim_next_job(db, [NFE_EMIT], worker_id=f"w{index}", now=NOW)
                if job is not None:
                    claimed.append((index, job.id))
            except Exception as exc:  # pragma: no cover - surfaced by the assertion below
                errors.append(exc)
            finally:
                db.close()

        threads = [threading.Thread(target=worker, args=(index,)) for index in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        self.assertEqual(len(claimed), 1)
        self.assertEqual(claimed[0][1], job_id)
        with self.app.app_context():
            job = get_job(get_db(), job_id)
            self.assertEqual(job.status, "processing")
            self.assertEqual(job.attempts, 1)
            self.assertEqual(job.locked_by, f"w{claimed[0][0]}")

    def test_future_jobs_are_not_claimed(self) -> None:
        with self.app.app_context():
            db = get_db()
            self._enqueue(db)
            self.assertIsNone(claim_next_job(db, worker_id="w", now=NOW - timedelta(seconds=1)))
            self.assertIsNone(claim_next_job(db, [NFE_CANCEL], worker_id="w", now=NOW))
            self.assertIsNotNone(claim_next_job(db, worker_id="w", now=NOW))

    def test_success_completes_job(self) -> None:
        def handle(db, payload, job):
            self.handled.append(payload.emission_id)

        with self.app.app_context():
            db = get_db()
            job_id = self._enqueue(db)
            summary = process_jobs(db, self._registry(handle), now=NOW)
            self.assertEqual(summary["completed"], 1)
            self.assertEqual(self.handled, [1])
            job = get_job(db, job_id)
            self.assertEqual(job.status, "completed")
            self.assertIsNotNone(job.finished_at)

    def test_retryable_error_schedules_backoff_then_dead_letters(self) -> None:
        def handle(db, payload, job):
            raise RetryableJobError("sefaz fora", code="timeout")

        registry = self._registry(handle)
        with self.app.app_context():
            db = get_db()
            job_id = self._enqueue(db, max_attempts=2)

            self.assertEqual(process_jobs(db, registry, now=NOW)["retried"], 1)
            job = get_job(db, job_id)
            self.assertEqual(job.status, "pending")
            self.assertEqual(job.last_error, "timeout: sefaz fora")
            self.assertEqual(job.next_run_at, "2026-10-19T12:02:00Z")

            later = NOW + timedelta(minutes=5)
            self.assertEqual(process_jobs(db, registry, now=later)["failed"], 1)
            job = get_job(db, job_id)
            self.assertEqual(job.status, "failed")
            self.assertEqual(job.attempts, 2)
            self.assertEqual(self.dead_letters, [(job_id, "timeout: sefaz fora")])
            self.assertEqual(metrics_snapshot()["job_dead_letter_total"].get(NFE_EMIT), 1)

    def test_terminal_error_fails_without_retry(self) -> None:
        def handle(db, payload, job):
            raise TerminalJobError("xml invalido", code="schema")

        with self.app.app_context():
            db = get_db()
            job_id = self._enqueue(db)
            summary = process_jobs(db, self._registry(handle), now=NOW)
            self.assertEqual(summary, {"processed": 1, "completed": 0, "retried": 0, "failed": 1, "deferred": 0})
            self.assertEqual(get_job(db, job_id).attempts, 1)
            self.assertEqual(len(self.dead_letters), 1)

    def test_deferred_job_does_not_consume_attempt(self) -> None:
        def handle(db, payload, job):
            raise DeferredJobError("circuito aberto", delay_seconds=30)

        with self.app.app_context():
            db = get_db()
            job_id = self._enqueue(db, max_attempts=1)
            for offset in range(3):
                summary = process_jobs(db, self._registry(handle), now=NOW + timedelta(minutes=offset))
                self.assertEqual(summary["deferred"], 1)
            job = get_job(db, job_id)
            self.assertEqual(job.status, "pending")
            self.assertEqual(job.attempts, 0)
            self.assertEqual(self.dead_letters, [])

    def test_unexpected_error_is_retried(self) -> None:
        def handle(db, payload, job):
            raise RuntimeError("boom")

        with self.app.app_context():
            db = get_db()
            job_id = self._enqueue(db)
            self.assertEqual(process_jobs(db, self._registry(handle), now=NOW)["retried"], 1)
            self.assertEqual(get_job(db, job_id).last_error, "boom")

    def test_job_without_handler_fails(self) -> None:
        with self.app.app_context():
            db = get_db()
            job_id = self._enqueue(db, NFE_POLL_RECEIPT)
            summary = process_jobs(db, JobHandlerRegistry(), now=NOW)
            self.assertEqual(summary["failed"], 1)
            self.assertIn("handler_missing", get_job(db, job_id).last_error)

    def test_release_stale_jobs_keeps_consumed_attempt(self) -> None:
        with self.app.app_context():
            db = get_db()
            job_id = self._enqueue(db)
            claim_next_job(db, worker_id="crashed", now=NOW)
            self.assertEqual(release_stale_jobs(db, 300, now=NOW + timedelta(seconds=60)), 0)
            self.assertEqual(release_stale_jobs(db, 300, now=NOW + timedelta(seconds=301)), 1)
            job = get_job(db, job_id)
            self.assertEqual(job.status, "pending")
            self.assertEqual(job.attempts, 1)
            self.assertEqual(job.last_error, "stale_lock_released")
            self.assertIsNone(job.locked_by)

    def test_job_that_keeps_crashing_its_worker_is_dead_lettered(self) -> None:
        registry = self._registry(lambda db, payload, job: None)
        with self.app.app_context():
            db = get_db()
            job_id = self._enqueue(db, max_attempts=3)
            clock = NOW
            for _ in range(10):
                if claim_next_job(db, worker_id="crashed", now=clock) is None:
                    break
                clock += timedelta(seconds=301)
                release_stale_jobs(db, 300, registry=registry, now=clock)

            job = get_job(db, job_id)
            self.assertEqual(job.status, "failed")
            self.assertEqual(job.attempts, 3)
            self.assertTrue(job.last_error.startswith("stale_lock_max_attempts"))
            self.assertIsNotNone(job.finished_at)
            self.assertEqual([item[0] for item in self.dead_letters], [job_id])
            self.assertIsNone(claim_next_job(db, worker_id="w", now=clock + timedelta(days=1)))

    def test_requeue_failed_job(self) -> None:
        def handle(db, payload, job):
            raise TerminalJobError("falhou")

        with self.app.app_context():
            db = get_db()
            job_id = self._enqueue(db)
            process_jobs(db, self._registry(handle), now=NOW)

            new_id = requeue_failed_job(db, job_id, tenant_id=TENANT_ID)
            self.assertNotEqual(new_id, job_id)
            fresh = get_job(db, new_id)
            self.assertEqual(fresh.status, "pending")
            self.assertEqual(fresh.payload, get_job(db, job_id).payload)

            with self.assertRaises(PreconditionError) as ctx:
                requeue_failed_job(db, new_id)
            self.assertEqual(ctx.exception.code, "job_not_requeueable")
            with self.assertRaises(NotFoundError):
                requeue_failed_job(db, job_id, tenant_id="outro-tenant")
            with self.assertRaises(NotFoundError):
                requeue_failed_job(db, 9999)

    def test_list_jobs_filters(self) -> None:
        with self.app.app_context():
            db = get_db()
            self._enqueue(db)
            self._enqueue(db, NFE_POLL_RECEIPT)
            self.assertEqual(len(list_jobs(db, tenant_id=TENANT_ID)), 2)
            self.assertEqual(len(list_jobs(db, job_type=NFE_POLL_RECEIPT)), 1)
            self.assertEqual(list_jobs(db, tenant_id="outro"), [])
            with self.assertRaises(ValidationError) as ctx:
                list_jobs(db, status="sumido")
            self.assertEqual(ctx.exception.code, "job_status_invalid")


if __name__ == "__main__":
    unittest.main()
