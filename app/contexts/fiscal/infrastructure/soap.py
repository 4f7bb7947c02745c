from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict

from lxml import etree

from app.contexts.fiscal.domain.contracts import SefazContext, SefazResponse
from app.contexts.fiscal.domain.gateway import SefazGatewayError
from app.contexts.fiscal.domain.status import CANCELLED_CODES
from app.contexts.fiscal.domain.rules import CORRECTION_USAGE_CONDITIONS
from app.contexts.fiscal.infrastructure.xml_builder import BRAZIL_TZ, NFE_NS


SOAP12_NS = "http://www.w3.org/2003/05/soap-envelope"
WSDL_BASE = "http://www.portalfiscal.inf.br/nfe/wsdl"

SERVICE_AUTHORIZATION = "NFeAutorizacao4"
SERVICE_RET_AUTHORIZATION = "NFeRetAutorizacao4"
SERVICE_PROTOCOL_QUERY = "NFeConsultaProtocolo4"
SERVICE_EVENT = "NFeRecepcaoEvento4"

SERVICES: Dict[str, str] = {
    SERVICE_AUTHORIZATION: "nfeAutorizacaoLote",
    SERVICE_RET_AUTHORIZATION: "nfeRetAutorizacaoLote",
    SERVICE_PROTOCOL_QUERY: "nfeConsultaNF",
    SERVICE_EVENT: "nfeRecepcaoEventoNF",
}

STEP_SUBMIT = "submit"
STEP_QUERY_RECEIPT = "query_receipt"
STEP_QUERY_ACCESS_KEY = "query_access_key"
STEP_EVENT = "event"

_RESULT_NODES = {
    STEP_SUBMIT: "retEnviNFe",
    STEP_QUERY_RECEIPT: "retConsReciNFe",
    STEP_QUERY_ACCESS_KEY: "retConsSitNFe",
    STEP_EVENT: "retEnvEvento",
}

EVENT_CANCELLATION = "110111"
EVENT_CORRECTION = "110110"


def _parser() -> etree.XMLParser:
    return etree.XMLParser(remove_blank_text=True, resolve_entities=False, no_network=True)


def _nfe(parent: etree._Element, name: str, text: object | None = None) -> etree._Element:
    element = etree.SubElement(parent, f"{{{NFE_NS}}}{name}")
    if text is not None:
        element.text = str(text)
    return element


def _nfe_root(name: str, version: str) -> etree._Element:
    root = etree.Element(f"{{{NFE_NS}}}{name}", nsmap={None: NFE_NS})
    root.set("versao", version)
    return root


def _fragment(xml: str) -> etree._Element:
    return etree.fromstring(xml.encode("utf-8"), parser=_parser())


def soap_action(service: str) -> str:
    return f"{WSDL_BASE}/{service}/{SERVICES[service]}"


def soap_content_type(service: str) -> str:
    return f'application/soap+xml; charset=utf-8; action="{soap_action(service)}"'


def build_soap_envelope(service: str, payload_xml: str) -> str:
    envelope = etree.Element(f"{{{SOAP12_NS}}}Envelope", nsmap={"soap12": SOAP12_NS})
    body = etree.SubElement(envelope, f"{{{SOAP12_NS}}}Body")
    message_ns = f"{WSDL_BASE}/{service}"
    message = etree.SubElement(body, f"{{{message_ns}}}nfeDadosMsg", nsmap={None: message_ns})
    message.append(_fragment(payload_xml))
    return '<?xml version="1.0" encoding="utf-8"?>' + etree.tostring(envelope, encoding="unicode")


def build_envi_nfe(signed_xml: str, batch_id: str, *, synchronous: bool = False) -> str:
    root = _nfe_root("enviNFe", "4.00")
    _nfe(root, "idLote", batch_id)
    _nfe(root, "indSinc", "1" if synchronous else "0")
    root.append(_fragment(signed_xml))
    return etree.tostring(root, encoding="unicode")


def build_cons_reci(receipt_number: str, context: SefazContext) -> str:
    root = _nfe_root("consReciNFe", "4.00")
    _nfe(root, "tpAmb", context.tp_amb)
    _nfe(root, "nRec", receipt_number)
    return etree.tostring(root, encoding="unicode")


def build_cons_sit(access_key: str, context: SefazContext) -> str:
    root = _nfe_root("consSitNFe", "4.00")
    _nfe(root, "tpAmb", context.tp_amb)
    _nfe(root, "xServ", "CONSULTAR")
    _nfe(root, "chNFe", access_key)
    return etree.tostring(root, encoding="unicode")


def event_reference_id(event_type: str, access_key: str, sequence: int) -> str:
    return f"ID{event_type}{access_key}{int(sequence):02d}"


def _event_timestamp(when: datetime | None) -> str:
    moment = (when or datetime.now(BRAZIL_TZ)).astimezone(BRAZIL_TZ).replace(microsecond=0)
    return moment.strftime("%Y-%m-%dT%H:%M:%S-03:00")


def _build_event(
    event_type: str,
    access_key: str,
    sequence: int,
    context: SefazContext,
    when: datetime | None,
    fill_details: Callable[[etree._Element], None],
) -> tuple[str, str]:
    reference_id = event_reference_id(event_type, access_key, sequence)
    evento = _nfe_root("evento", "1.00")
    inf = _nfe(evento, "infEvento")
    inf.set("Id", reference_id)
    _nfe(inf, "cOrgao", access_key[:2])
    _nfe(inf, "tpAmb", context.tp_amb)
    _nfe(inf, "CNPJ", context.issuer_cnpj)
    _nfe(inf, "chNFe", access_key)
    _nfe(inf, "dhEvento", _event_timestamp(when))
    _nfe(inf, "tpEvento", event_type)
    _nfe(inf, "nSeqEvento", str(int(sequence)))
    _nfe(inf, "verEvento", "1.00")
    details = _nfe(inf, "detEvento")
    details.set("versao", "1.00")
    fill_details(details)
    return etree.tostring(evento, encoding="unicode"), reference_id


def build_cancellation_event(
    access_key: str,
    protocol_number: str,
    reason: str,
    context: SefazContext,
    *,
    when: datetime | None = None,
) -> tuple[str, str]:
    def fill(details: etree._Element) -> None:
        _nfe(details, "descEvento", "Cancelamento")
        _nfe(details, "nProt", protocol_number)
        _nfe(details, "xJust", reason)

    return _build_event(EVENT_CANCELLATION, access_key, 1, context, when, fill)


def build_correction_event(
    access_key: str,
    sequence: int,
    correction_text: str,
    context: SefazContext,
    *,
    when: datetime | None = None,
) -> tuple[str, str]:
    def fill(details: etree._Element) -> None:
        _nfe(details, "descEvento", "Carta de Correcao")
        _nfe(details, "xCorrecao", correction_text)
        _nfe(details, "xCondUso", CORRECTION_USAGE_CONDITIONS)

    return _build_event(EVENT_CORRECTION, access_key, sequence, context, when, fill)


def build_env_evento(signed_event_xml: str, batch_id: str) -> str:
    root = _nfe_root("envEvento", "1.00")
    _nfe(root, "idLote", batch_id)
    root.append(_fragment(signed_event_xml))
    return etree.tostring(root, encoding="unicode")


def batch_id_from(moment: datetime | None = None) -> str:
    value = moment or datetime.now(BRAZIL_TZ)
    return str(int(value.timestamp() * 1000))[-15:]


def _first(element: etree._Element, name: str) -> etree._Element | None:
    found = element.xpath(f".//*[local-name()='{name}']")
    return found[0] if found else None


def _child(element: etree._Element | None, name: str) -> etree._Element | None:
    if element is None:
        return None
    found = element.xpath(f"./*[local-name()='{name}']")
    return found[0] if found else None


def _child_text(element: etree._Element | None, name: str) -> str | None:
    child = _child(element, name)
    if child is None or child.text is None:
        return None
    return child.text.strip() or None


def parse_sefaz_response(xml: str | bytes, step: str) -> SefazResponse:
    """Typed view of a SEFAZ SOAP reply; lookups ignore namespace prefixes."""
    if step not in _RESULT_NODES:
        raise ValueError(f"etapa desconhecida: {step!r}")
    data = xml.encode("utf-8") if isinstance(xml, str) else xml
    raw_text = data.decode("utf-8", errors="replace")
    try:
        root = etree.fromstring(data, parser=_parser())
    except etree.XMLSyntaxError as exc:
        raise SefazGatewayError(f"resposta SEFAZ ilegivel: {exc}", code="parse_error") from exc

    fault = _first(root, "Fault")
    if fault is not None:
        reason = _first(fault, "Text")
        if reason is None:
            reason = _first(fault, "faultstring")
        message = (reason.text or "").strip() if reason is not None else "falha SOAP sem descricao"
        raise SefazGatewayError(f"SOAP Fault: {message}", code="soap_fault")

    result = _first(root, "nfeResultMsg")
    if result is None and etree.QName(root).localname == _RESULT_NODES[step]:
        result = root
    if result is None:
        raise SefazGatewayError("resposta invalida: nfeResultMsg nao encontrado", code="parse_error")
    ret = result if etree.QName(result).localname == _RESULT_NODES[step] else _first(result, _RESULT_NODES[step])
    if ret is None:
        raise SefazGatewayError(
            f"resposta invalida: {_RESULT_NODES[step]} nao encontrado",
            code="parse_error",
        )

    response = SefazResponse(
        operation=step,
        status_code=_child_text(ret, "cStat"),
        status_message=_child_text(ret, "xMotivo"),
        received_at=_child_text(ret, "dhRecbto"),
        raw_xml=raw_text,
        http_status=200,
    )

    if step == STEP_EVENT:
        response.batch_status_code = response.status_code
        inf_event = _first(ret, "infEvento")
        event_code = _child_text(inf_event, "cStat")
        response.event_status_code = event_code or response.batch_status_code
        response.event_status_message = _child_text(inf_event, "xMotivo") or response.status_message
        response.event_protocol = _child_text(inf_event, "nProt")
        response.received_at = _child_text(inf_event, "dhRegEvento") or response.received_at
        response.status_code = response.event_status_code
        response.status_message = response.event_status_message
        return response

    response.receipt_number = _child_text(_child(ret, "infRec"), "nRec") or _child_text(ret, "nRec")

    protocol = _first(ret, "protNFe")
    if protocol is not None:
        response.protocol_xml = etree.tostring(protocol, encoding="unicode")
        inf_prot = _child(protocol, "infProt")
        inner_code = _child_text(inf_prot, "cStat")
        response.protocol_number = _child_text(inf_prot, "nProt")
        response.received_at = _child_text(inf_prot, "dhRecbto") or response.received_at
        if inner_code and response.status_code not in CANCELLED_CODES:
            response.status_code = inner_code
            response.status_message = _child_text(inf_prot, "xMotivo") or response.status_message
    return response
