from __future__ import annotations

import base64
import hashlib
import re

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from lxml import etree

from app.contexts.fiscal.infrastructure.certificates import SigningCertificate


DSIG_NS = "http://www.w3.org/2000/09/xmldsig#"
C14N_ALGORITHM = "http://www.w3.org/TR/2001/REC-xml-c14n-20010315"
SIGNATURE_ALGORITHM = "http://www.w3.org/2000/09/xmldsig#rsa-sha1"
DIGEST_ALGORITHM = "http://www.w3.org/2000/09/xmldsig#sha1"
ENVELOPED_TRANSFORM = "http://www.w3.org/2000/09/xmldsig#enveloped-signature"

_NFE_ID = re.compile(r"^NFe(\d{44})$")
_EVENT_ID = re.compile(r"^ID\d{6}(\d{44})\d{2}$")


class SignatureError(ValueError):
    pass


def _parser() -> etree.XMLParser:
    return etree.XMLParser(remove_blank_text=True, resolve_entities=False, no_network=True)


def parse_xml(xml: str | bytes) -> etree._Element:
    data = xml.encode("utf-8") if isinstance(xml, str) else xml
    try:
        return etree.fromstring(data, parser=_parser())
    except etree.XMLSyntaxError as exc:
        raise SignatureError(f"XML invalido: {exc}") from exc


def _localname(element: etree._Element) -> str:
    return etree.QName(element).localname if isinstance(element.tag, str) else ""


def _c14n(element: etree._Element) -> bytes:
    return etree.tostring(element, method="c14n", exclusive=False, with_comments=False)


def _find_by_id(root: etree._Element, reference_id: str | None) -> etree._Element:
    if reference_id:
        matches = [element for element in root.iter() if element.get("Id") == reference_id]
        if len(matches) != 1:
            raise SignatureError(f"esperado exatamente um elemento com Id={reference_id}, encontrados {len(matches)}")
        return matches[0]
    matches = [element for element in root.iter() if _localname(element) == "infNFe"]
    if len(matches) != 1:
        raise SignatureError(f"esperado exatamente um infNFe, encontrados {len(matches)}")
    return matches[0]


def _validate_target(target: etree._Element) -> str:
    reference_id = str(target.get("Id") or "")
    name = _localname(target)
    if name == "infNFe":
        match = _NFE_ID.match(reference_id)
    elif name == "infEvento":
        match = _EVENT_ID.match(reference_id)
    else:
        match = re.match(r"^\S+$", reference_id)
    if not match:
        raise SignatureError(f"Id invalido para assinatura: {reference_id!r}")
    if match.groups() and set(match.group(1)) == {"0"}:
        raise SignatureError("chave de acesso zerada nao pode ser assinada")
    parent = target.getparent()
    scope = parent if parent is not None else target
    if next(scope.iter(f"{{{DSIG_NS}}}Signature"), None) is not None:
        raise SignatureError("documento ja possui assinatura")
    return reference_id


def _sub(parent: etree._Element, name: str, text: str | None = None, **attrs) -> etree._Element:
    element = etree.SubElement(parent, f"{{{DSIG_NS}}}{name}", **attrs)
    if text is not None:
        element.text = text
    return element


def sign_xml(xml: str | bytes, reference_id: str | None, certificate: SigningCertificate) -> str:
    """Enveloped XMLDSig over the element carrying ``reference_id``.

    The Signature is appended as the next sibling of the signed element, as the
    NF-e layout requires (``NFe/infNFe`` + ``NFe/Signature``). Canonicalization is
    inclusive C14N 1.0, digest SHA-1 and signature RSA-SHA1.
    """
    root = parse_xml(xml)
    target = _find_by_id(root, reference_id)
    reference_id = _validate_target(target)

    digest = base64.b64encode(hashlib.sha1(_c14n(target)).digest()).decode("ascii")

    signature = etree.Element(f"{{{DSIG_NS}}}Signature", nsmap={None: DSIG_NS})
    signed_info = _sub(signature, "SignedInfo")
    _sub(signed_info, "CanonicalizationMethod", Algorithm=C14N_ALGORITHM)
    _sub(signed_info, "SignatureMethod", Algorithm=SIGNATURE_ALGORITHM)
    reference = _sub(signed_info, "Reference", URI=f"#{reference_id}")
    transforms = _sub(reference, "Transforms")
    _sub(transforms, "Transform", Algorithm=ENVELOPED_TRANSFORM)
    _sub(transforms, "Transform", Algorithm=C14N_ALGORITHM)
    _sub(reference, "DigestMethod", Algorithm=DIGEST_ALGORITHM)
    _sub(reference, "DigestValue", digest)
    signature_value = _sub(signature, "SignatureValue")
    key_info = _sub(signature, "KeyInfo")
    x509_data = _sub(key_info, "X509Data")
    _sub(x509_data, "X509Certificate", certificate.certificate_base64())

    target.addnext(signature)

    raw_signature = certificate.private_key.sign(_c14n(signed_info), padding.PKCS1v15(), hashes.SHA1())
    signature_value.text = base64.b64encode(raw_signature).decode("ascii")
    return etree.tostring(root, encoding="unicode")


def verify_signature(xml: str | bytes) -> bool:
    root = parse_xml(xml)
    signature = root if _localname(root) == "Signature" else root.find(f".//{{{DSIG_NS}}}Signature")
    if signature is None:
        return False
    signed_info = signature.find(f"{{{DSIG_NS}}}SignedInfo")
    reference = signed_info.find(f"{{{DSIG_NS}}}Reference") if signed_info is not None else None
    if reference is None:
        return False

    reference_id = str(reference.get("URI") or "").lstrip("#")
    targets = [element for element in root.iter() if element.get("Id") == reference_id]
    if len(targets) != 1:
        return False

    expected_digest = (reference.findtext(f"{{{DSIG_NS}}}DigestValue") or "").strip()
    actual_digest = base64.b64encode(hashlib.sha1(_c14n(targets[0])).digest()).decode("ascii")
    if expected_digest != actual_digest:
        return False

    cert_text = signature.findtext(f".//{{{DSIG_NS}}}X509Certificate") or ""
    value_text = signature.findtext(f"{{{DSIG_NS}}}SignatureValue") or ""
    try:
        certificate = x509.load_der_x509_certificate(base64.b64decode(cert_text))
        certificate.public_key().verify(
            base64.b64decode(value_text),
            _c14n(signed_info),
            padding.PKCS1v15(),
            hashes.SHA1(),
        )
    except (InvalidSignature, ValueError):
        return False
    return True
