import unittest

from lxml import etree

from app.contexts.fiscal.infrastructure.signer import DSIG_NS, SignatureError, sign_xml, verify_signature
from app.contexts.fiscal.infrastructure.xml_builder import NFE_NS, NfeBuildError, build_nfe_proc, build_nfe_xml
from tests.helpers.fiscal import generate_test_certificate, protocol_xml, sample_document


class NfeXmlBuilderTest(unittest.TestCase):
    def test_build_is_deterministic_for_same_document(self) -> None:
        first = build_nfe_xml(sample_document(10))
        second = build_nfe_xml(sample_document(10))
        self.assertEqual(first.access_key, second.access_key)
        self.assertEqual(first.xml, second.xml)
        self.assertEqual(first.reference_id, f"NFe{first.access_key}")

    def test_build_fills_ide_from_access_key(self) -> None:
        built = build_nfe_xml(sample_document(11), environment="homologation")
        root = etree.fromstring(built.xml.encode("utf-8"))
        ns = {"n": NFE_NS}
        self.assertEqual(root.findtext("n:infNFe/n:ide/n:cDV", namespaces=ns), built.access_key[-1])
        self.assertEqual(root.findtext("n:infNFe/n:ide/n:nNF", namespaces=ns), "11")
        self.assertEqual(root.findtext("n:infNFe/n:ide/n:tpAmb", namespaces=ns), "2")
        self.assertEqual(root.findtext("n:infNFe/n:total/n:ICMSTot/n:vProd", namespaces=ns), "100.00")

    def test_build_reports_every_issue(self) -> None:
        document = sample_document(1)
        document["issuer"]["cnpj"] = "123"
        document["items"][0]["ncm"] = "12"
        with self.assertRaises(NfeBuildError) as ctx:
            build_nfe_xml(document)
        paths = {issue["path"] for issue in ctx.exception.issues}
        self.assertIn("issuer.cnpj", paths)
        self.assertIn("items[0].ncm", paths)


class XmlSignerTest(unittest.TestCase):
    def setUp(self) -> None:
        self.certificate = generate_test_certificate()
        self.built = build_nfe_xml(sample_document(20))

    def test_signature_is_sibling_of_infnfe_and_verifies(self) -> None:
        signed = sign_xml(self.built.xml, self.built.reference_id, self.certificate)
        root = etree.fromstring(signed.encode("utf-8"))
        children = [etree.QName(child).localname for child in root]
        self.assertEqual(children, ["infNFe", "Signature"])
        reference = root.find(f".//{{{DSIG_NS}}}Reference")
        self.assertEqual(reference.get("URI"), f"#{self.built.reference_id}")
        self.assertTrue(verify_signature(signed))

    def test_tampered_content_fails_verification(self) -> None:
        signed = sign_xml(self.built.xml, self.built.reference_id, self.certificate)
        tampered = signed.replace("PRODUTO TESTE", "PRODUTO ALTERADO")
        self.assertNotEqual(signed, tampered)
        self.assertFalse(verify_signature(tampered))

    def test_refuses_double_signature_and_unknown_id(self) -> None:
        signed = sign_xml(self.built.xml, self.built.reference_id, self.certificate)
        with self.assertRaises(SignatureError):
            sign_xml(signed, self.built.reference_id, self.certificate)
        with self.assertRaises(SignatureError):
            sign_xml(self.built.xml, "NFe" + "1" * 44, self.certificate)

    def test_refuses_malformed_xml(self) -> None:
        with self.assertRaises(SignatureError):
            sign_xml("<NFe><infNFe>", None, self.certificate)

    def test_nfe_proc_wraps_signed_nfe_and_protocol(self) -> None:
        signed = sign_xml(self.built.xml, self.built.reference_id, self.certificate)
        proc = build_nfe_proc(signed, protocol_xml(self.built.access_key, "135260000000001"))
        root = etree.fromstring(proc.encode("utf-8"))
        self.assertEqual(etree.QName(root).localname, "nfeProc")
        self.assertEqual([etree.QName(child).localname for child in root], ["NFe", "protNFe"])
        self.assertTrue(verify_signature(etree.tostring(root[0])))


if __name__ == "__main__":
    unittest.main()
