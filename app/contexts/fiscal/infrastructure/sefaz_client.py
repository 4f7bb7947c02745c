from __future__ import annotations

import logging
import time
from typing import Callable, Dict

import requests
from requests_pkcs12 import Pkcs12Adapter

from app.contexts.fiscal.domain.contracts import SefazContext, SefazResponse
from app.contexts.fiscal.domain.gateway import SefazGateway, SefazGatewayError
from app.contexts.fiscal.infrastructure.endpoints import resolve_endpoint
from app.contexts.fiscal.infrastructure.signer import SignatureError, sign_xml
from app.contexts.fiscal.infrastructure.soap import (
    SERVICE_AUTHORIZATION,
    SERVICE_EVENT,
    SERVICE_PROTOCOL_QUERY,
    SERVICE_RET_AUTHORIZATION,
    STEP_EVENT,
    STEP_QUERY_ACCESS_KEY,
    STEP_QUERY_RECEIPT,
    STEP_SUBMIT,
    batch_id_from,
    build_cancellation_event,
    build_cons_reci,
    build_cons_sit,
    build_correction_event,
    build_env_evento,
    build_envi_nfe,
    build_soap_envelope,
    parse_sefaz_response,
    soap_content_type,
)
from app.observability import observe_sefaz_call


_LOGGER = logging.getLogger("app")


class SefazSoapGateway(SefazGateway):
    """SOAP 1.2 client for the NF-e 4.00 web services, authenticated with the tenant A1 certificate."""

    def __init__(
        self,
        *,
        timeout_seconds: int = 60,
        verify_ssl: bool = True,
        ca_bundle: str | None = None,
        url_overrides: Dict[str, str] | None = None,
        synchronous_submission: bool = False,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ) -> None:
        self.timeout_seconds = max(1, int(timeout_seconds))
        self.verify = ca_bundle or bool(verify_ssl)
        self.url_overrides = dict(url_overrides or {})
        self.synchronous_submission = bool(synchronous_submission)
        self._session_factory = session_factory

    def _session(self, context: SefazContext) -> requests.Session:
        certificate = context.certificate
        if certificate is None:
            raise SefazGatewayError("certificado digital ausente no contexto", code="certificate_missing", definitive=True)
        pkcs12_data, password = certificate.to_pkcs12()
        session = self._session_factory()
        session.verify = self.verify
        session.mount("https://", Pkcs12Adapter(pkcs12_data=pkcs12_data, pkcs12_password=password))
        return session

    def _call(self, service: str, step: str, payload_xml: str, context: SefazContext) -> SefazResponse:
        url = resolve_endpoint(context.uf, context.environment, service, self.url_overrides)
        envelope = build_soap_envelope(service, payload_xml)
        headers = {"Content-Type": soap_content_type(service)}
        started = time.perf_counter()
        outcome = "error"
        session = self._session(context)
        try:
            try:
                response = session.post(
                    url,
                    data=envelope.encode("utf-8"),
                    headers=headers,
                    timeout=self.timeout_seconds,
                )
            except requests.exceptions.Timeout as exc:
                outcome = "timeout"
                raise SefazGatewayError(f"timeout ao chamar {service}", code="timeout") from exc
            except requests.exceptions.RequestException as exc:
                raise SefazGatewayError(f"falha de conexao com {service}: {exc}", code="connection_error") from exc

            if response.status_code >= 500:
                raise SefazGatewayError(
                    f"SEFAZ respondeu HTTP {response.status_code} em {service}",
                    code="http_5xx",
                    status_code=response.status_code,
                )
            if response.status_code >= 400:
                raise SefazGatewayError(
                    f"SEFAZ recusou a requisicao HTTP {response.status_code} em {service}",
                    code="http_4xx",
                    definitive=True,
                    status_code=response.status_code,
                )

            parsed = parse_sefaz_response(response.content, step)
            parsed.http_status = response.status_code
            outcome = "ok"
            return parsed
        finally:
            session.close()
            duration_ms = (time.perf_counter() - started) * 1000.0
            observe_sefaz_call(step, outcome, duration_ms)
            _LOGGER.info(
                "sefaz_call",
                extra={
                    "sefaz_service": service,
                    "sefaz_step": step,
                    "tenant_id": context.tenant_id,
                    "uf": context.uf,
                    "environment": context.environment,
                    "outcome": outcome,
                    "duration_ms": round(duration_ms, 2),
                },
            )

    def _sign_event(self, event_xml: str, reference_id: str, context: SefazContext) -> str:
        try:
            return sign_xml(event_xml, reference_id, context.certificate)
        except SignatureError as exc:
            raise SefazGatewayError(f"falha ao assinar evento: {exc}", code="signature_error", definitive=True) from exc

    def submit_for_processing(self, signed_xml: str, context: SefazContext) -> SefazResponse:
        payload = build_envi_nfe(signed_xml, batch_id_from(), synchronous=self.synchronous_submission)
        return self._call(SERVICE_AUTHORIZATION, STEP_SUBMIT, payload, context)

    def query_by_receipt(self, receipt_number: str, context: SefazContext) -> SefazResponse:
        return self._call(SERVICE_RET_AUTHORIZATION, STEP_QUERY_RECEIPT, build_cons_reci(receipt_number, context), context)

    def query_by_access_key(self, access_key: str, context: SefazContext) -> SefazResponse:
        return self._call(SERVICE_PROTOCOL_QUERY, STEP_QUERY_ACCESS_KEY, build_cons_sit(access_key, context), context)

    def submit_cancellation(
        self,
        access_key: str,
        protocol_number: str,
        reason: str,
        context: SefazContext,
    ) -> SefazResponse:
        event_xml, reference_id = build_cancellation_event(access_key, protocol_number, reason, context)
        signed = self._sign_event(event_xml, reference_id, context)
        return self._call(SERVICE_EVENT, STEP_EVENT, build_env_evento(signed, batch_id_from()), context)

    def submit_correction_letter(
        self,
        access_key: str,
        sequence: int,
        correction_text: str,
        context: SefazContext,
    ) -> SefazResponse:
        event_xml, reference_id = build_correction_event(access_key, sequence, correction_text, context)
        signed = self._sign_event(event_xml, reference_id, context)
        return self._call(SERVICE_EVENT, STEP_EVENT, build_env_evento(signed, batch_id_from()), context)
