from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Type, Union


NFE_EMIT = "NFE_EMIT"
NFE_POLL_RECEIPT = "NFE_POLL_RECEIPT"
NFE_SYNC_STATUS = "NFE_SYNC_STATUS"
NFE_CANCEL = "NFE_CANCEL"
NFE_CCE = "NFE_CCE"

JOB_TYPES = (NFE_EMIT, NFE_POLL_RECEIPT, NFE_SYNC_STATUS, NFE_CANCEL, NFE_CCE)


class JobPayloadError(ValueError):
    pass


def _required_int(data: Dict[str, Any], key: str) -> int:
    value = data.get(key)
    if isinstance(value, bool):
        raise JobPayloadError(f"campo {key} invalido")
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise JobPayloadError(f"campo {key} ausente ou invalido") from None
    if parsed <= 0:
        raise JobPayloadError(f"campo {key} deve ser positivo")
    return parsed


def _required_str(data: Dict[str, Any], key: str) -> str:
    value = str(data.get(key) or "").strip()
    if not value:
        raise JobPayloadError(f"campo {key} ausente")
    return value


@dataclass(frozen=True)
class EmitNfeJob:
    job_type: ClassVar[str] = NFE_EMIT
    emission_id: int
    tenant_id: str

    def to_payload(self) -> Dict[str, Any]:
        return {"emission_id": self.emission_id, "tenant_id": self.tenant_id}

    @staticmethod
    def from_payload(data: Dict[str, Any]) -> "EmitNfeJob":
        return EmitNfeJob(emission_id=_required_int(data, "emission_id"), tenant_id=_required_str(data, "tenant_id"))


@dataclass(frozen=True)
class PollReceiptJob:
    job_type: ClassVar[str] = NFE_POLL_RECEIPT
    emission_id: int
    tenant_id: str

    def to_payload(self) -> Dict[str, Any]:
        return {"emission_id": self.emission_id, "tenant_id": self.tenant_id}

    @staticmethod
    def from_payload(data: Dict[str, Any]) -> "PollReceiptJob":
        return PollReceiptJob(emission_id=_required_int(data, "emission_id"), tenant_id=_required_str(data, "tenant_id"))


@dataclass(frozen=True)
class SyncStatusJob:
    job_type: ClassVar[str] = NFE_SYNC_STATUS
    emission_id: int
    tenant_id: str

    def to_payload(self) -> Dict[str, Any]:
        return {"emission_id": self.emission_id, "tenant_id": self.tenant_id}

    @staticmethod
    def from_payload(data: Dict[str, Any]) -> "SyncStatusJob":
        return SyncStatusJob(emission_id=_required_int(data, "emission_id"), tenant_id=_required_str(data, "tenant_id"))


@dataclass(frozen=True)
class CancelNfeJob:
    job_type: ClassVar[str] = NFE_CANCEL
    cancellation_id: int
    tenant_id: str

    def to_payload(self) -> Dict[str, Any]:
        return {"cancellation_id": self.cancellation_id, "tenant_id": self.tenant_id}

    @staticmethod
    def from_payload(data: Dict[str, Any]) -> "CancelNfeJob":
        return CancelNfeJob(
            cancellation_id=_required_int(data, "cancellation_id"),
            tenant_id=_required_str(data, "tenant_id"),
        )


@dataclass(frozen=True)
class CorrectionLetterJob:
    job_type: ClassVar[str] = NFE_CCE
    correction_letter_id: int
    tenant_id: str

    def to_payload(self) -> Dict[str, Any]:
        return {"correction_letter_id": self.correction_letter_id, "tenant_id": self.tenant_id}

    @staticmethod
    def from_payload(data: Dict[str, Any]) -> "CorrectionLetterJob":
        return CorrectionLetterJob(
            correction_letter_id=_required_int(data, "correction_letter_id"),
            tenant_id=_required_str(data, "tenant_id"),
        )


JobPayload = Union[EmitNfeJob, PollReceiptJob, SyncStatusJob, CancelNfeJob, CorrectionLetterJob]

_PAYLOAD_TYPES: Dict[str, Type] = {
    NFE_EMIT: EmitNfeJob,
    NFE_POLL_RECEIPT: PollReceiptJob,
    NFE_SYNC_STATUS: SyncStatusJob,
    NFE_CANCEL: CancelNfeJob,
    NFE_CCE: CorrectionLetterJob,
}


def parse_job_payload(job_type: str, raw: str | Dict[str, Any] | None) -> JobPayload:
    payload_type = _PAYLOAD_TYPES.get(str(job_type or "").strip())
    if payload_type is None:
        raise JobPayloadError(f"tipo de tarefa desconhecido: {job_type!r}")
    if isinstance(raw, dict):
        data = raw
    else:
        try:
            data = json.loads(str(raw or ""))
        except json.JSONDecodeError as exc:
            raise JobPayloadError(f"payload nao e JSON valido: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise JobPayloadError("payload deve ser um objeto JSON")
    return payload_type.from_payload(data)
