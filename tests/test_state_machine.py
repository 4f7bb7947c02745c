import unittest

from app.contexts.fiscal.application.lifecycle import create_emission, queue_emission
from app.contexts.fiscal.application.state_machine import (
    ANOMALY_CONFLICTING_VERDICT,
    ANOMALY_PROTOCOL_MISMATCH,
    LifecycleAnomaly,
    StaleTransitionError,
    apply_remote_verdict,
    backfill_protocol,
    reconcile_remote_status,
    transition,
)
from app.contexts.fiscal.domain.status import (
    STATUS_AUTHORIZED,
    STATUS_CANCELLED,
    STATUS_DRAFT,
    STATUS_PROCESSING,
    STATUS_QUEUED,
)
from app.contexts.fiscal.infrastructure.providers import get_artifact_store
from app.contexts.fiscal.infrastructure.repositories.audit_repository import (
    AnomalyRepository,
    FiscalStatusEventRepository,
)
from app.contexts.fiscal.infrastructure.repositories.emission_repository import EmissionRepository
from app.db import close_db, get_db
from tests.helpers.fiscal import (
    TENANT_ID,
    authorized_reply,
    build_fiscal_app,
    sample_document,
    seed_tenant,
    status_reply,
)
from tests.helpers.temp_db import TempDbSandbox


class EmissionStateMachineTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="fiscal_state_machine")
        self.app = build_fiscal_app(self._temp_db)
        with self.app.app_context():
            seed_tenant(get_db())

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()

    def _queued(self, db, number: int) -> dict:
        emission = create_emission(db, TENANT_ID, sample_document(number))
        queue_emission(db, emission)
        return self._reload(db, emission)

    def _authorized(self, db, number: int, protocol: str = "135260000000100") -> dict:
        emission = self._queued(db, number)
        apply_remote_verdict(db, emission, authorized_reply(emission["access_key"], protocol))
        db.commit()
        return self._reload(db, emission)

    @staticmethod
    def _reload(db, emission: dict) -> dict:
        return EmissionRepository(tenant_id=TENANT_ID).get_by_id(db, int(emission["id"]))

    @staticmethod
    def _anomalies(db, emission: dict) -> list:
        return AnomalyRepository(tenant_id=TENANT_ID).list_for_emission(db, int(emission["id"]))

    def test_authorization_keeps_protocol_history_and_nfe_proc(self) -> None:
        with self.app.app_context():
            db = get_db()
            emission = self._authorized(db, 100)

            self.assertEqual(emission["status"], STATUS_AUTHORIZED)
            self.assertEqual(emission["protocol_number"], "135260000000100")
            self.assertEqual(emission["last_status_code"], "100")
            self.assertTrue(get_artifact_store().exists(emission["authorized_xml_ref"]))
            self.assertIn("nfeProc", get_artifact_store().load(emission["authorized_xml_ref"]))

            events = FiscalStatusEventRepository(tenant_id=TENANT_ID).list_for_emission(db, emission["id"])
            self.assertEqual(
                [event["to_status"] for event in events],
                [STATUS_DRAFT, "signed_offline", STATUS_QUEUED, STATUS_AUTHORIZED],
            )
            self.assertEqual(events[-1]["from_status"], STATUS_QUEUED)

    def test_same_terminal_verdict_twice_is_a_no_op(self) -> None:
        with self.app.app_context():
            db = get_db()
            emission = self._authorized(db, 101)
            again = apply_remote_verdict(db, emission, authorized_reply(emission["access_key"], "135260000000100"))
            self.assertEqual(again["status"], STATUS_AUTHORIZED)
            self.assertEqual(self._anomalies(db, emission), [])
            events = FiscalStatusEventRepository(tenant_id=TENANT_ID).list_for_emission(db, emission["id"])
            self.assertEqual(len(events), 4)

    def test_conflicting_terminal_verdict_is_recorded_not_applied(self) -> None:
        with self.app.app_context():
            db = get_db()
            emission = self._authorized(db, 102)
            with self.assertRaises(LifecycleAnomaly):
                apply_remote_verdict(db, emission, status_reply("110", operation="query_receipt"))
            db.commit()

            self.assertEqual(self._reload(db, emission)["status"], STATUS_AUTHORIZED)
            anomalies = self._anomalies(db, emission)
            self.assertEqual(len(anomalies), 1)
            self.assertEqual(anomalies[0]["kind"], ANOMALY_CONFLICTING_VERDICT)
            self.assertEqual(anomalies[0]["current_value"], STATUS_AUTHORIZED)
            self.assertEqual(anomalies[0]["observed_value"], "denied")

    def test_late_authorization_after_cancellation_is_ignored(self) -> None:
        with self.app.app_context():
            db = get_db()
            emission = self._authorized(db, 103)
            cancelled = transition(
                db, emission, STATUS_CANCELLED, expected=(STATUS_AUTHORIZED,), reason="cancellation_processed"
            )
            result = apply_remote_verdict(db, cancelled, authorized_reply(emission["access_key"], "135260000000100"))
            self.assertEqual(result["status"], STATUS_CANCELLED)
            self.assertEqual(self._anomalies(db, emission), [])

    def test_stale_and_illegal_transitions(self) -> None:
        with self.app.app_context():
            db = get_db()
            emission = self._authorized(db, 104)
            with self.assertRaises(StaleTransitionError):
                transition(db, emission, STATUS_PROCESSING, expected=(STATUS_QUEUED,), reason="late_receipt")
            with self.assertRaises(ValueError):
                transition(db, emission, STATUS_AUTHORIZED, expected=(STATUS_DRAFT,), reason="skip")
            self.assertEqual(self._anomalies(db, emission), [])

    def test_protocol_mismatch_keeps_stored_protocol(self) -> None:
        with self.app.app_context():
            db = get_db()
            emission = self._authorized(db, 105, protocol="135260000000105")
            current = backfill_protocol(db, emission, status_reply("100", protocol_number="135260000009999"))
            self.assertEqual(current["protocol_number"], "135260000000105")
            anomalies = self._anomalies(db, emission)
            self.assertEqual([item["kind"] for item in anomalies], [ANOMALY_PROTOCOL_MISMATCH])
            self.assertEqual(anomalies[0]["observed_value"], "135260000009999")

    def test_backfill_fills_missing_protocol(self) -> None:
        with self.app.app_context():
            db = get_db()
            emission = self._queued(db, 106)
            apply_remote_verdict(db, emission, status_reply("100", operation="query_receipt"))
            emission = self._reload(db, emission)
            self.assertEqual(emission["status"], STATUS_AUTHORIZED)
            self.assertIsNone(emission["protocol_number"])

            current = backfill_protocol(db, emission, authorized_reply(emission["access_key"], "135260000000106"))
            self.assertEqual(current["protocol_number"], "135260000000106")
            self.assertTrue(current["authorized_xml_ref"])

    def test_reconcile_applies_remote_cancellation(self) -> None:
        with self.app.app_context():
            db = get_db()
            emission = self._authorized(db, 107)
            current = reconcile_remote_status(db, emission, status_reply("101", protocol_number="135260000000100"))
            self.assertEqual(current["status"], STATUS_CANCELLED)
            self.assertEqual(current["last_status_code"], "101")

    def test_reconcile_moves_pending_emission_to_verdict(self) -> None:
        with self.app.app_context():
            db = get_db()
            emission = self._queued(db, 108)
            current = reconcile_remote_status(
                db, emission, authorized_reply(emission["access_key"], "135260000000108", operation="query_access_key")
            )
            self.assertEqual(current["status"], STATUS_AUTHORIZED)
            self.assertEqual(current["protocol_number"], "135260000000108")

            untouched = reconcile_remote_status(db, self._queued(db, 109), status_reply("217"))
            self.assertEqual(untouched["status"], STATUS_QUEUED)
            self.assertEqual(untouched["last_status_code"], "217")


if __name__ == "__main__":
    unittest.main()
