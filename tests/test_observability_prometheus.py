import json
import logging
import unittest

from app import create_app
from app.config import Config
from app.contexts.fiscal.application.job_queue import enqueue_job
from app.contexts.fiscal.domain.jobs import NFE_EMIT, EmitNfeJob
from app.db import close_db, get_db
from app.observability import (
    JsonLogFormatter,
    bind_request_id,
    observe_anomaly,
    observe_job_dead_letter,
    reset_metrics_for_tests,
    set_log_request_id,
)
from tests.helpers.temp_db import TempDbSandbox


class _MetricsConfig(Config):
    TESTING = False
    DB_AUTO_INIT = True
    AUTH_ENABLED = False


class ObservabilityPrometheusTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="observability_metrics")
        cfg = self._temp_db.make_config(_MetricsConfig)
        self.app = create_app(cfg)
        self.client = self.app.test_client()
        reset_metrics_for_tests()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        reset_metrics_for_tests()

    def test_metrics_endpoint_exposes_prometheus_metrics(self) -> None:
        self.client.get("/api/unknown")
        observe_job_dead_letter(NFE_EMIT)
        observe_anomaly("conflicting_verdict")

        response = self.client.get("/metrics")
        self.assertEqual(response.status_code, 200)
        self.assertIn("text/plain", response.headers.get("Content-Type") or "")

        payload = response.get_data(as_text=True)
        self.assertIn("http_request_total", payload)
        self.assertIn("http_request_duration_ms_bucket", payload)
        self.assertIn('fiscal_job_queue_size{state="pending"} 0', payload)
        self.assertIn("fiscal_job_processing_time_ms_bucket", payload)
        self.assertIn("fiscal_job_retry_backoff_seconds_bucket", payload)
        self.assertIn("sefaz_request_duration_ms_bucket", payload)
        self.assertIn('fiscal_job_dead_letter_total{job_type="NFE_EMIT"} 1', payload)
        self.assertIn('fiscal_anomaly_total{kind="conflicting_verdict"} 1', payload)

    def test_log_formatter_includes_request_id_outside_request_context(self) -> None:
        set_log_request_id("worker-req-123")
        formatter = JsonLogFormatter()
        record = logging.LogRecord(
            name="app",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="worker_log",
            args=(),
            exc_info=None,
        )
        parsed = json.loads(formatter.format(record))
        self.assertEqual(parsed.get("request_id"), "worker-req-123")

        with bind_request_id("job-req-9"):
            parsed = json.loads(formatter.format(record))
        self.assertEqual(parsed.get("request_id"), "job-req-9")

    def test_health_reports_queue_and_circuits(self) -> None:
        with self.app.app_context():
            db = get_db()
            enqueue_job(db, NFE_EMIT, EmitNfeJob(emission_id=1, tenant_id="tenant-metrics"), tenant_id="tenant-metrics")
            db.commit()

        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        payload = response.get_json() or {}
        self.assertEqual(payload.get("sefaz_mode"), "simulator")
        self.assertIn("sefaz_circuit", payload)
        worker = payload.get("worker") or {}
        self.assertIn("backlog_critical", worker)
        self.assertEqual((worker.get("queue") or {}).get("pending_jobs"), 1)
        self.assertEqual(worker.get("worker_status"), "stalled")


if __name__ == "__main__":
    unittest.main()
