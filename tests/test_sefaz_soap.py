import unittest
from dataclasses import replace

import requests
from lxml import etree

from app import create_app
from app.config import Config
from app.contexts.fiscal.domain.contracts import SefazContext
from app.contexts.fiscal.domain.gateway import SefazGatewayError
from app.contexts.fiscal.infrastructure.endpoints import (
    authorizer_for,
    parse_url_overrides,
    resolve_endpoint,
)
from app.contexts.fiscal.infrastructure.sefaz_client import SefazSoapGateway
from app.contexts.fiscal.infrastructure.soap import (
    SERVICE_AUTHORIZATION,
    SERVICE_PROTOCOL_QUERY,
    STEP_EVENT,
    STEP_QUERY_ACCESS_KEY,
    STEP_QUERY_RECEIPT,
    STEP_SUBMIT,
    parse_sefaz_response,
)
from app.contexts.fiscal.infrastructure.xml_builder import build_nfe_xml
from tests.helpers.fiscal import ISSUER_CNPJ, generate_test_certificate, sample_document
from tests.helpers.temp_db import TempDbSandbox


NFE = "http://www.portalfiscal.inf.br/nfe"
SOAP = "http://www.w3.org/2003/05/soap-envelope"


def _envelope(service: str, inner: str) -> str:
    return (
        f'<soap:Envelope xmlns:soap="{SOAP}"><soap:Body>'
        f'<nfeResultMsg xmlns="http://www.portalfiscal.inf.br/nfe/wsdl/{service}">{inner}</nfeResultMsg>'
        "</soap:Body></soap:Envelope>"
    )


class SoapParsingTest(unittest.TestCase):
    def test_submit_reply_carries_receipt(self) -> None:
        xml = _envelope(
            SERVICE_AUTHORIZATION,
            f'<retEnviNFe xmlns="{NFE}" versao="4.00"><cStat>103</cStat><xMotivo>Lote recebido</xMotivo>'
            "<infRec><nRec>351000000012345</nRec><tMed>1</tMed></infRec></retEnviNFe>",
        )
        reply = parse_sefaz_response(xml, STEP_SUBMIT)
        self.assertEqual(reply.status_code, "103")
        self.assertEqual(reply.receipt_number, "351000000012345")
        self.assertTrue(reply.is_processing)

    def test_protocol_code_overrides_batch_code(self) -> None:
        xml = _envelope(
            "NFeRetAutorizacao4",
            f'<retConsReciNFe xmlns="{NFE}" versao="4.00"><cStat>104</cStat><xMotivo>Lote processado</xMotivo>'
            "<protNFe versao=\"4.00\"><infProt><chNFe>1</chNFe><dhRecbto>2026-10-19T10:00:00-03:00</dhRecbto>"
            "<nProt>135260000000777</nProt><cStat>100</cStat><xMotivo>Autorizado</xMotivo></infProt></protNFe>"
            "</retConsReciNFe>",
        )
        reply = parse_sefaz_response(xml, STEP_QUERY_RECEIPT)
        self.assertEqual(reply.status_code, "100")
        self.assertEqual(reply.protocol_number, "135260000000777")
        self.assertEqual(reply.received_at, "2026-10-19T10:00:00-03:00")
        self.assertIn("protNFe", reply.protocol_xml)

    def test_cancelled_status_is_kept_over_protocol_code(self) -> None:
        xml = _envelope(
            SERVICE_PROTOCOL_QUERY,
            f'<retConsSitNFe xmlns="{NFE}" versao="4.00"><cStat>101</cStat><xMotivo>Cancelamento homologado</xMotivo>'
            "<protNFe versao=\"4.00\"><infProt><nProt>135260000000777</nProt><cStat>100</cStat></infProt></protNFe>"
            "</retConsSitNFe>",
        )
        reply = parse_sefaz_response(xml, STEP_QUERY_ACCESS_KEY)
        self.assertEqual(reply.status_code, "101")
        self.assertEqual(reply.verdict, "cancelled")
        self.assertEqual(reply.protocol_number, "135260000000777")

    def test_event_reply_splits_batch_and_event_codes(self) -> None:
        xml = _envelope(
            "NFeRecepcaoEvento4",
            f'<retEnvEvento xmlns="{NFE}" versao="1.00"><cStat>128</cStat><xMotivo>Lote processado</xMotivo>'
            "<retEvento versao=\"1.00\"><infEvento><cStat>573</cStat><xMotivo>Duplicidade de Evento</xMotivo>"
            "</infEvento></retEvento></retEnvEvento>",
        )
        reply = parse_sefaz_response(xml, STEP_EVENT)
        self.assertEqual(reply.batch_status_code, "128")
        self.assertEqual(reply.event_status_code, "573")
        self.assertEqual(reply.status_code, "573")
        self.assertFalse(reply.event_succeeded)

    def test_fault_and_garbage_raise_gateway_error(self) -> None:
        fault = (
            f'<soap:Envelope xmlns:soap="{SOAP}"><soap:Body><soap:Fault>'
            "<soap:Reason><soap:Text>Server busy</soap:Text></soap:Reason></soap:Fault></soap:Body></soap:Envelope>"
        )
        with self.assertRaises(SefazGatewayError) as ctx:
            parse_sefaz_response(fault, STEP_SUBMIT)
        self.assertEqual(ctx.exception.code, "soap_fault")
        self.assertFalse(ctx.exception.definitive)

        with self.assertRaises(SefazGatewayError) as ctx:
            parse_sefaz_response("<html>502</html", STEP_SUBMIT)
        self.assertEqual(ctx.exception.code, "parse_error")

        with self.assertRaises(SefazGatewayError):
            parse_sefaz_response(_envelope(SERVICE_AUTHORIZATION, "<outro/>"), STEP_SUBMIT)


class EndpointResolutionTest(unittest.TestCase):
    def test_known_and_fallback_authorizers(self) -> None:
        self.assertIn("homologacao.nfe.fazenda.sp.gov.br", resolve_endpoint("SP", "homologation", SERVICE_AUTHORIZATION))
        self.assertIn("svrs", resolve_endpoint("SC", "production", SERVICE_AUTHORIZATION))
        self.assertEqual(authorizer_for("sp"), "SP")
        self.assertEqual(authorizer_for("SC"), "SVRS")

    def test_overrides_take_precedence(self) -> None:
        overrides = parse_url_overrides('{"*:homologation:NFeAutorizacao4": "http://localhost:8080/aut"}')
        self.assertEqual(
            resolve_endpoint("MG", "homologation", SERVICE_AUTHORIZATION, overrides),
            "http://localhost:8080/aut",
        )
        self.assertEqual(parse_url_overrides("nao json"), {})


class _FakeResponse:
    def __init__(self, status_code: int, content: bytes) -> None:
        self.status_code = status_code
        self.content = content


class _FakeSession:
    def __init__(self, outcomes: list) -> None:
        self.outcomes = outcomes
        self.posts: list = []
        self.mounted: list = []
        self.verify = None
        self.closed = False

    def mount(self, prefix, adapter) -> None:
        self.mounted.append(prefix)

    def post(self, url, data=None, headers=None, timeout=None):
        self.posts.append({"url": url, "data": data, "headers": headers, "timeout": timeout})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def close(self) -> None:
        self.closed = True


class SoapGatewayTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="sefaz_soap")
        self.app = create_app(self._temp_db.make_config(Config, TESTING=True, AUTH_ENABLED=False))
        certificate = replace(generate_test_certificate(), password="segredo")
        self.context = SefazContext(
            tenant_id="tenant-soap",
            uf="SP",
            environment="homologation",
            issuer_cnpj=ISSUER_CNPJ,
            certificate=certificate,
        )
        self.sessions: list = []

    def tearDown(self) -> None:
        self._temp_db.cleanup()

    def _gateway(self, *outcomes) -> SefazSoapGateway:
        session = _FakeSession(list(outcomes))
        self.sessions.append(session)
        return SefazSoapGateway(timeout_seconds=5, session_factory=lambda: session)

    def test_query_posts_soap12_envelope_and_parses_reply(self) -> None:
        reply_xml = _envelope(
            SERVICE_PROTOCOL_QUERY,
            f'<retConsSitNFe xmlns="{NFE}" versao="4.00"><cStat>217</cStat><xMotivo>Nao consta</xMotivo></retConsSitNFe>',
        )
        gateway = self._gateway(_FakeResponse(200, reply_xml.encode("utf-8")))
        with self.app.app_context():
            reply = gateway.query_by_access_key("3" * 44, self.context)

        self.assertEqual(reply.verdict, "not_found")
        self.assertEqual(reply.http_status, 200)
        session = self.sessions[0]
        self.assertEqual(session.mounted, ["https://"])
        self.assertTrue(session.closed)
        post = session.posts[0]
        self.assertEqual(post["url"], resolve_endpoint("SP", "homologation", SERVICE_PROTOCOL_QUERY))
        self.assertTrue(post["url"].endswith("/nfeconsultaprotocolo4.asmx"))
        self.assertIn("application/soap+xml", post["headers"]["Content-Type"])
        body = etree.fromstring(post["data"])
        self.assertEqual(etree.QName(body).localname, "Envelope")
        self.assertEqual(body.xpath("//*[local-name()='chNFe']/text()"), ["3" * 44])
        self.assertEqual(post["timeout"], 5)

    def test_transport_failures_are_transient_and_4xx_definitive(self) -> None:
        with self.app.app_context():
            with self.assertRaises(SefazGatewayError) as ctx:
                self._gateway(requests.exceptions.Timeout("lento")).query_by_receipt("1", self.context)
            self.assertEqual(ctx.exception.code, "timeout")
            self.assertFalse(ctx.exception.definitive)

            with self.assertRaises(SefazGatewayError) as ctx:
                self._gateway(_FakeResponse(503, b"")).query_by_receipt("1", self.context)
            self.assertEqual(ctx.exception.code, "http_5xx")
            self.assertFalse(ctx.exception.definitive)

            with self.assertRaises(SefazGatewayError) as ctx:
                self._gateway(_FakeResponse(403, b"")).query_by_receipt("1", self.context)
            self.assertEqual(ctx.exception.code, "http_4xx")
            self.assertTrue(ctx.exception.definitive)

    def test_cancellation_event_is_signed_before_sending(self) -> None:
        reply_xml = _envelope(
            "NFeRecepcaoEvento4",
            f'<retEnvEvento xmlns="{NFE}" versao="1.00"><cStat>128</cStat><xMotivo>ok</xMotivo>'
            "<retEvento><infEvento><cStat>135</cStat><xMotivo>Evento registrado</xMotivo>"
            "<nProt>135260000000999</nProt></infEvento></retEvento></retEnvEvento>",
        )
        gateway = self._gateway(_FakeResponse(200, reply_xml.encode("utf-8")))
        access_key = build_nfe_xml(sample_document(30)).access_key
        with self.app.app_context():
            reply = gateway.submit_cancellation(
                access_key,
                "135260000000777",
                "Cancelamento por erro de digitacao",
                self.context,
            )

        self.assertTrue(reply.event_succeeded)
        self.assertEqual(reply.event_protocol, "135260000000999")
        body = etree.fromstring(self.sessions[0].posts[0]["data"])
        evento = body.xpath("//*[local-name()='evento']")[0]
        self.assertEqual(evento.xpath("*[local-name()='infEvento']/@Id"), [f"ID110111{access_key}01"])
        self.assertEqual([etree.QName(child).localname for child in evento], ["infEvento", "Signature"])

    def test_missing_certificate_is_definitive(self) -> None:
        context = replace(self.context, certificate=None)
        with self.app.app_context():
            with self.assertRaises(SefazGatewayError) as ctx:
                self._gateway().query_by_receipt("1", context)
        self.assertTrue(ctx.exception.definitive)


if __name__ == "__main__":
    unittest.main()
