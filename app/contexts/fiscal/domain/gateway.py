from __future__ import annotations

from abc import ABC, abstractmethod

from app.contexts.fiscal.domain.contracts import SefazContext, SefazResponse


class SefazGatewayError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        definitive: bool = False,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = str(code or "").strip() or None
        self.definitive = bool(definitive)
        self.status_code = status_code


class SefazGateway(ABC):
    """Remote SEFAZ authorization service. Implementations hold no persistent state of their own."""

    @abstractmethod
    def submit_for_processing(self, signed_xml: str, context: SefazContext) -> SefazResponse:
        raise NotImplementedError

    @abstractmethod
    def query_by_receipt(self, receipt_number: str, context: SefazContext) -> SefazResponse:
        raise NotImplementedError

    @abstractmethod
    def query_by_access_key(self, access_key: str, context: SefazContext) -> SefazResponse:
        raise NotImplementedError

    @abstractmethod
    def submit_cancellation(
        self,
        access_key: str,
        protocol_number: str,
        reason: str,
        context: SefazContext,
    ) -> SefazResponse:
        raise NotImplementedError

    @abstractmethod
    def submit_correction_letter(
        self,
        access_key: str,
        sequence: int,
        correction_text: str,
        context: SefazContext,
    ) -> SefazResponse:
        raise NotImplementedError
