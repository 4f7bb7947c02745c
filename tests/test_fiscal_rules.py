import unittest

from app.contexts.fiscal.domain.contracts import SefazResponse
from app.contexts.fiscal.domain.jobs import (
    NFE_CANCEL,
    NFE_EMIT,
    CancelNfeJob,
    JobPayloadError,
    parse_job_payload,
)
from app.contexts.fiscal.domain.rules import (
    normalize_reason,
    validate_cancellation_reason,
    validate_correction_text,
)
from app.contexts.fiscal.domain.status import (
    VERDICT_AUTHORIZED,
    VERDICT_CANCELLED,
    VERDICT_DENIED,
    VERDICT_NOT_FOUND,
    VERDICT_PROCESSING,
    VERDICT_REJECTED,
    VERDICT_UNAVAILABLE,
    can_transition,
    classify_status,
    is_event_success,
)
from app.errors import ValidationError


class StatusClassificationTest(unittest.TestCase):
    def test_known_codes(self) -> None:
        expected = {
            "103": VERDICT_PROCESSING,
            "105": VERDICT_PROCESSING,
            "100": VERDICT_AUTHORIZED,
            "150": VERDICT_AUTHORIZED,
            "101": VERDICT_CANCELLED,
            "155": VERDICT_CANCELLED,
            "110": VERDICT_DENIED,
            "124": VERDICT_DENIED,
            "205": VERDICT_REJECTED,
            "301": VERDICT_REJECTED,
            "302": VERDICT_REJECTED,
            "303": VERDICT_REJECTED,
            "217": VERDICT_NOT_FOUND,
            "108": VERDICT_UNAVAILABLE,
            "109": VERDICT_UNAVAILABLE,
            "225": VERDICT_REJECTED,
            "539": VERDICT_REJECTED,
            "": VERDICT_REJECTED,
        }
        for code, verdict in expected.items():
            self.assertEqual(classify_status(code), verdict, msg=f"cStat {code}")

    def test_event_success_needs_batch_ok(self) -> None:
        self.assertTrue(is_event_success("128", "135"))
        self.assertTrue(is_event_success("128", "155"))
        self.assertFalse(is_event_success("128", "573"))
        self.assertFalse(is_event_success("215", "135"))
        self.assertTrue(is_event_success(None, "136"))

    def test_response_verdict_helpers(self) -> None:
        reply = SefazResponse(operation="event", status_code="135", batch_status_code="128", event_status_code="135")
        self.assertTrue(reply.event_succeeded)
        self.assertFalse(SefazResponse(operation="submit", status_code="103").event_succeeded)
        self.assertTrue(SefazResponse(operation="submit", status_code="103").is_processing)

    def test_only_1xx_codes_are_denials(self) -> None:
        self.assertEqual(SefazResponse(operation="query_receipt", status_code="110").verdict, VERDICT_DENIED)
        for code in ("205", "301", "302", "303"):
            reply = SefazResponse(operation="query_receipt", status_code=code)
            self.assertEqual(reply.verdict, VERDICT_REJECTED, msg=f"cStat {code}")

    def test_transition_table(self) -> None:
        self.assertTrue(can_transition("draft", "signed_offline"))
        self.assertTrue(can_transition("queued", "authorized"))
        self.assertTrue(can_transition("processing", "denied"))
        self.assertTrue(can_transition("authorized", "cancelled"))
        self.assertFalse(can_transition("draft", "queued"))
        self.assertFalse(can_transition("denied", "authorized"))
        self.assertFalse(can_transition("cancelled", "authorized"))
        self.assertFalse(can_transition("processing", "queued"))


class FiscalRulesTest(unittest.TestCase):
    def test_reason_is_normalized_before_length_check(self) -> None:
        self.assertEqual(normalize_reason("  erro\x00 de   digitacao\n "), "erro de digitacao")
        self.assertEqual(validate_cancellation_reason("Cancelamento por erro de digitacao"), "Cancelamento por erro de digitacao")

    def test_reason_length_limits(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            validate_cancellation_reason("curto demais")
        self.assertEqual(ctx.exception.code, "reason_invalid")
        with self.assertRaises(ValidationError):
            validate_cancellation_reason("x" * 256)
        self.assertEqual(len(validate_cancellation_reason("x" * 255)), 255)

    def test_correction_text_limits(self) -> None:
        self.assertEqual(len(validate_correction_text("y" * 1000)), 1000)
        with self.assertRaises(ValidationError) as ctx:
            validate_correction_text("y" * 1001)
        self.assertEqual(ctx.exception.code, "correction_text_invalid")
        with self.assertRaises(ValidationError):
            validate_correction_text("   \t  ")


class JobPayloadTest(unittest.TestCase):
    def test_parse_payload_variants(self) -> None:
        job = parse_job_payload(NFE_CANCEL, '{"cancellation_id": 4, "tenant_id": "t1"}')
        self.assertEqual(job, CancelNfeJob(cancellation_id=4, tenant_id="t1"))
        self.assertEqual(parse_job_payload(NFE_EMIT, {"emission_id": "7", "tenant_id": "t1"}).emission_id, 7)

    def test_parse_payload_rejects_bad_input(self) -> None:
        with self.assertRaises(JobPayloadError):
            parse_job_payload("NFE_UNKNOWN", {})
        with self.assertRaises(JobPayloadError):
            parse_job_payload(NFE_EMIT, "{nao e json")
        with self.assertRaises(JobPayloadError):
            parse_job_payload(NFE_EMIT, {"emission_id": 0, "tenant_id": "t1"})
        with self.assertRaises(JobPayloadError):
            parse_job_payload(NFE_EMIT, {"emission_id": True, "tenant_id": "t1"})
        with self.assertRaises(JobPayloadError):
            parse_job_payload(NFE_EMIT, {"emission_id": 1})


if __name__ == "__main__":
    unittest.main()
