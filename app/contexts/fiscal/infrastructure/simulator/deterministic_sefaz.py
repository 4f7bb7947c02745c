from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Dict, List, Set

from lxml import etree

from app.contexts.fiscal.domain.access_key import normalize_access_key
from app.contexts.fiscal.domain.contracts import SefazContext, SefazResponse
from app.contexts.fiscal.domain.gateway import SefazGateway, SefazGatewayError
from app.contexts.fiscal.domain.rules import MAX_CORRECTION_SEQUENCE
from app.contexts.fiscal.infrastructure.signer import SignatureError, parse_xml
from app.contexts.fiscal.infrastructure.soap import (
    SERVICE_AUTHORIZATION,
    SERVICE_EVENT,
    SERVICE_PROTOCOL_QUERY,
    SERVICE_RET_AUTHORIZATION,
    SOAP12_NS,
    STEP_EVENT,
    STEP_QUERY_ACCESS_KEY,
    STEP_QUERY_RECEIPT,
    STEP_SUBMIT,
    WSDL_BASE,
    parse_sefaz_response,
)
from app.contexts.fiscal.infrastructure.xml_builder import BRAZIL_TZ, NFE_NS
from app.observability import observe_sefaz_call


_VERDICT_MESSAGES = {
    "100": "Autorizado o uso da NF-e",
    "101": "Cancelamento de NF-e homologado",
    "110": "Uso Denegado",
    "225": "Rejeicao: Falha no Schema XML da NFe",
}


@dataclass
class _LedgerEntry:
    access_key: str
    verdict_code: str
    receipt_number: str
    protocol_number: str
    polls_remaining: int
    received_at: str
    cancelled: bool = False
    cancellation_protocol: str | None = None
    correction_sequences: Set[int] = field(default_factory=set)

    @property
    def settled(self) -> bool:
        return self.polls_remaining <= 0


def _now_text() -> str:
    return datetime.now(BRAZIL_TZ).replace(microsecond=0).isoformat()


class DeterministicSefazSimulator(SefazGateway):
    """In-process SEFAZ stand-in seeded for reproducible verdicts.

    Every access key gets a verdict from a sha256 bucket of ``seed:key``; the
    verdict stays behind ``105`` for ``processing_polls`` receipt queries.
    Replies are rendered as SOAP XML and go through the same parser as the
    real client.
    """

    def __init__(
        self,
        seed: int = 42,
        *,
        processing_polls: int = 1,
        denial_percent: int = 0,
        rejection_percent: int = 0,
    ) -> None:
        self.seed = int(seed)
        self.processing_polls = max(0, int(processing_polls))
        self.denial_percent = max(0, min(100, int(denial_percent)))
        self.rejection_percent = max(0, min(100 - self.denial_percent, int(rejection_percent)))
        self._lock = Lock()
        self._ledger: Dict[str, _LedgerEntry] = {}
        self._receipts: Dict[str, str] = {}
        self.calls: List[tuple[str, str]] = []

    def _digits(self, label: str, value: str, size: int) -> str:
        digest = hashlib.sha256(f"{label}:{self.seed}:{value}".encode("utf-8")).hexdigest()
        return f"{int(digest[:16], 16) % (10 ** size):0{size}d}"

    def _bucket(self, access_key: str) -> int:
        digest = hashlib.sha256(f"{self.seed}:{access_key}".encode("utf-8")).hexdigest()
        return int(digest[:8], 16) % 100

    def _verdict_for(self, access_key: str) -> str:
        bucket = self._bucket(access_key)
        if bucket < self.denial_percent:
            return "110"
        if bucket < self.denial_percent + self.rejection_percent:
            return "225"
        return "100"

    def register_authorized(self, access_key: str, protocol_number: str | None = None) -> str:
        """Seed the ledger with a document authorized outside this process."""
        key = normalize_access_key(access_key)
        protocol = protocol_number or f"1{key[:2]}{self._digits('prot', key, 12)}"
        with self._lock:
            self._ledger[key] = _LedgerEntry(
                access_key=key,
                verdict_code="100",
                receipt_number=f"{key[:2]}{self._digits('rec', key, 13)}",
                protocol_number=protocol,
                polls_remaining=0,
                received_at=_now_text(),
            )
        return protocol

    # Rendering -----------------------------------------------------------

    @staticmethod
    def _envelope(service: str, result: etree._Element) -> str:
        envelope = etree.Element(f"{{{SOAP12_NS}}}Envelope", nsmap={"soap": SOAP12_NS})
        body = etree.SubElement(envelope, f"{{{SOAP12_NS}}}Body")
        message_ns = f"{WSDL_BASE}/{service}"
        message = etree.SubElement(body, f"{{{message_ns}}}nfeResultMsg", nsmap={None: message_ns})
        message.append(result)
        return etree.tostring(envelope, encoding="unicode")

    @staticmethod
    def _node(parent: etree._Element | None, name: str, text: object | None = None, **attrs) -> etree._Element:
        tag = f"{{{NFE_NS}}}{name}"
        element = etree.Element(tag, nsmap={None: NFE_NS}) if parent is None else etree.SubElement(parent, tag)
        for key, value in attrs.items():
            element.set(key, str(value))
        if text is not None:
            element.text = str(text)
        return element

    def _result(self, name: str, context: SefazContext, code: str, message: str) -> etree._Element:
        result = self._node(None, name, versao="4.00")
        self._node(result, "tpAmb", context.tp_amb)
        self._node(result, "verAplic", "SIM-4.00")
        self._node(result, "cStat", code)
        self._node(result, "xMotivo", message)
        self._node(result, "cUF", context.uf_code)
        self._node(result, "dhRecbto", _now_text())
        return result

    def _append_protocol(self, parent: etree._Element, entry: _LedgerEntry, context: SefazContext) -> None:
        protocol = self._node(parent, "protNFe", versao="4.00")
        inf = self._node(protocol, "infProt")
        self._node(inf, "tpAmb", context.tp_amb)
        self._node(inf, "verAplic", "SIM-4.00")
        self._node(inf, "chNFe", entry.access_key)
        self._node(inf, "dhRecbto", entry.received_at)
        if entry.verdict_code in {"100", "110"}:
            self._node(inf, "nProt", entry.protocol_number)
        self._node(inf, "cStat", entry.verdict_code)
        self._node(inf, "xMotivo", _VERDICT_MESSAGES.get(entry.verdict_code, "Rejeicao"))

    def _reply(self, service: str, step: str, result: etree._Element) -> SefazResponse:
        started = datetime.now()
        xml = self._envelope(service, result)
        response = parse_sefaz_response(xml, step)
        observe_sefaz_call(step, "ok", (datetime.now() - started).total_seconds() * 1000.0)
        return response

    # Gateway operations --------------------------------------------------

    def submit_for_processing(self, signed_xml: str, context: SefazContext) -> SefazResponse:
        try:
            root = parse_xml(signed_xml)
        except SignatureError as exc:
            raise SefazGatewayError(str(exc), code="schema", definitive=True) from exc
        infs = root.xpath("//*[local-name()='infNFe']")
        reference_id = infs[0].get("Id", "") if infs else ""
        access_key = normalize_access_key(reference_id)
        if len(access_key) != 44:
            result = self._result("retEnviNFe", context, "225", _VERDICT_MESSAGES["225"])
            return self._reply(SERVICE_AUTHORIZATION, STEP_SUBMIT, result)
        if not root.xpath("//*[local-name()='Signature']"):
            result = self._result("retEnviNFe", context, "290", "Rejeicao: Certificado Assinatura invalido")
            return self._reply(SERVICE_AUTHORIZATION, STEP_SUBMIT, result)

        with self._lock:
            self.calls.append(("submit", access_key))
            entry = self._ledger.get(access_key)
            if entry is None:
                entry = _LedgerEntry(
                    access_key=access_key,
                    verdict_code=self._verdict_for(access_key),
                    receipt_number=f"{access_key[:2]}{self._digits('rec', access_key, 13)}",
                    protocol_number=f"1{access_key[:2]}{self._digits('prot', access_key, 12)}",
                    polls_remaining=self.processing_polls,
                    received_at=_now_text(),
                )
                self._ledger[access_key] = entry
                self._receipts[entry.receipt_number] = access_key

        result = self._result("retEnviNFe", context, "103", "Lote recebido com sucesso")
        info = self._node(result, "infRec")
        self._node(info, "nRec", entry.receipt_number)
        self._node(info, "tMed", "1")
        return self._reply(SERVICE_AUTHORIZATION, STEP_SUBMIT, result)

    def query_by_receipt(self, receipt_number: str, context: SefazContext) -> SefazResponse:
        with self._lock:
            self.calls.append(("query_receipt", receipt_number))
            access_key = self._receipts.get(str(receipt_number or "").strip())
            entry = self._ledger.get(access_key) if access_key else None
            settled = False
            if entry is not None:
                if entry.settled:
                    settled = True
                else:
                    entry.polls_remaining -= 1

        if entry is None:
            result = self._result("retConsReciNFe", context, "106", "Lote nao localizado")
        elif not settled:
            result = self._result("retConsReciNFe", context, "105", "Lote em processamento")
            self._node(result, "nRec", entry.receipt_number)
        else:
            result = self._result("retConsReciNFe", context, "104", "Lote processado")
            self._node(result, "nRec", entry.receipt_number)
            self._append_protocol(result, entry, context)
        return self._reply(SERVICE_RET_AUTHORIZATION, STEP_QUERY_RECEIPT, result)

    def query_by_access_key(self, access_key: str, context: SefazContext) -> SefazResponse:
        key = normalize_access_key(access_key)
        with self._lock:
            self.calls.append(("query_access_key", key))
            entry = self._ledger.get(key)

        if entry is None or not entry.settled:
            result = self._result("retConsSitNFe", context, "217", "Rejeicao: NF-e nao consta na base de dados da SEFAZ")
            self._node(result, "chNFe", key)
        elif entry.cancelled:
            result = self._result("retConsSitNFe", context, "101", _VERDICT_MESSAGES["101"])
            self._node(result, "chNFe", key)
            self._append_protocol(result, entry, context)
        elif entry.verdict_code == "225":
            result = self._result("retConsSitNFe", context, "217", "Rejeicao: NF-e nao consta na base de dados da SEFAZ")
            self._node(result, "chNFe", key)
        else:
            result = self._result("retConsSitNFe", context, entry.verdict_code, _VERDICT_MESSAGES[entry.verdict_code])
            self._node(result, "chNFe", key)
            self._append_protocol(result, entry, context)
        return self._reply(SERVICE_PROTOCOL_QUERY, STEP_QUERY_ACCESS_KEY, result)

    def _event_reply(self, context: SefazContext, access_key: str, event_type: str, code: str, message: str, protocol: str | None) -> SefazResponse:
        result = self._node(None, "retEnvEvento", versao="1.00")
        self._node(result, "idLote", self._digits("lote", f"{access_key}:{event_type}", 15))
        self._node(result, "tpAmb", context.tp_amb)
        self._node(result, "verAplic", "SIM-4.00")
        self._node(result, "cOrgao", access_key[:2] or context.uf_code)
        self._node(result, "cStat", "128")
        self._node(result, "xMotivo", "Lote de Evento Processado")
        ret_event = self._node(result, "retEvento", versao="1.00")
        inf = self._node(ret_event, "infEvento")
        self._node(inf, "tpAmb", context.tp_amb)
        self._node(inf, "cStat", code)
        self._node(inf, "xMotivo", message)
        self._node(inf, "chNFe", access_key)
        self._node(inf, "tpEvento", event_type)
        self._node(inf, "dhRegEvento", _now_text())
        if protocol:
            self._node(inf, "nProt", protocol)
        return self._reply(SERVICE_EVENT, STEP_EVENT, result)

    def submit_cancellation(
        self,
        access_key: str,
        protocol_number: str,
        reason: str,
        context: SefazContext,
    ) -> SefazResponse:
        key = normalize_access_key(access_key)
        with self._lock:
            self.calls.append(("cancel", key))
            entry = self._ledger.get(key)
            if entry is None:
                outcome = ("494", "Rejeicao: Chave de Acesso inexistente", None)
            elif entry.cancelled:
                outcome = ("573", "Rejeicao: Duplicidade de Evento", None)
            elif entry.verdict_code != "100" or not entry.settled:
                outcome = ("580", "Rejeicao: NF-e nao autorizada", None)
            elif str(protocol_number or "").strip() != entry.protocol_number:
                outcome = ("222", "Rejeicao: Protocolo de Autorizacao de Uso difere do cadastrado", None)
            else:
                entry.cancelled = True
                entry.cancellation_protocol = f"1{key[:2]}{self._digits('canc', key, 12)}"
                outcome = ("135", "Evento registrado e vinculado a NF-e", entry.cancellation_protocol)
        return self._event_reply(context, key, "110111", *outcome)

    def submit_correction_letter(
        self,
        access_key: str,
        sequence: int,
        correction_text: str,
        context: SefazContext,
    ) -> SefazResponse:
        key = normalize_access_key(access_key)
        sequence = int(sequence)
        with self._lock:
            self.calls.append(("correction", f"{key}:{sequence}"))
            entry = self._ledger.get(key)
            if entry is None:
                outcome = ("494", "Rejeicao: Chave de Acesso inexistente", None)
            elif entry.cancelled or entry.verdict_code != "100" or not entry.settled:
                outcome = ("580", "Rejeicao: NF-e nao autorizada", None)
            elif sequence < 1 or sequence > MAX_CORRECTION_SEQUENCE:
                outcome = ("594", "Rejeicao: Numero de sequencia do evento maior que o permitido", None)
            elif sequence in entry.correction_sequences:
                outcome = ("573", "Rejeicao: Duplicidade de Evento", None)
            else:
                entry.correction_sequences.add(sequence)
                outcome = (
                    "135",
                    "Evento registrado e vinculado a NF-e",
                    f"1{key[:2]}{self._digits(f'cce{sequence}', key, 12)}",
                )
        return self._event_reply(context, key, "110110", *outcome)
