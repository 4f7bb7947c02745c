from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List

from lxml import etree

from app.contexts.fiscal.domain.access_key import (
    UF_IBGE_CODES,
    AccessKeyError,
    build_access_key,
    only_digits,
)
from app.contexts.fiscal.domain.contracts import ENVIRONMENT_PRODUCTION, normalize_environment


NFE_NS = "http://www.portalfiscal.inf.br/nfe"
NFE_VERSION = "4.00"
PROCESS_VERSION = "plataforma-fiscal 1.0"
BRAZIL_TZ = timezone(timedelta(hours=-3))

_CENTS = Decimal("0.01")
_QUANTITY = Decimal("0.0001")


class NfeBuildError(ValueError):
    def __init__(self, issues: List[Dict[str, str]]) -> None:
        self.issues = list(issues)
        summary = "; ".join(f"{issue['path']}: {issue['message']}" for issue in self.issues[:5])
        super().__init__(f"documento fiscal invalido: {summary}")


@dataclass
class BuiltNfe:
    xml: str
    access_key: str
    reference_id: str
    emitted_at: datetime


def _decimal(value: object) -> Decimal:
    try:
        return Decimal(str(value if value is not None else "0"))
    except (InvalidOperation, ValueError):
        return Decimal("NaN")


def _money(value: Decimal) -> str:
    return str(value.quantize(_CENTS, rounding=ROUND_HALF_UP))


def _qty(value: Decimal) -> str:
    return str(value.quantize(_QUANTITY, rounding=ROUND_HALF_UP))


def _text(value: object, limit: int | None = None) -> str:
    text = " ".join(str(value or "").split())
    return text[:limit] if limit else text


def _el(parent: etree._Element, name: str, text: object | None = None) -> etree._Element:
    element = etree.SubElement(parent, f"{{{NFE_NS}}}{name}")
    if text is not None:
        element.text = str(text)
    return element


def parse_emitted_at(value: object | None) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif value:
        raw = str(value).strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        parsed = datetime.fromisoformat(raw)
    else:
        parsed = datetime.now(BRAZIL_TZ)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=BRAZIL_TZ)
    return parsed.astimezone(BRAZIL_TZ).replace(microsecond=0)


def _validate(document: Dict[str, Any]) -> List[Dict[str, str]]:
    issues: List[Dict[str, str]] = []

    def require(path: str, value: object, message: str = "obrigatorio") -> None:
        if value is None or str(value).strip() == "":
            issues.append({"path": path, "message": message})

    issuer = document.get("issuer") or {}
    recipient = document.get("recipient") or {}
    items = document.get("items") or []

    try:
        number = int(document.get("number") or 0)
    except (TypeError, ValueError):
        number = 0
    if not 1 <= number <= 999_999_999:
        issues.append({"path": "number", "message": "numero fora da faixa 1-999999999"})
    try:
        series = int(document.get("series") if document.get("series") is not None else -1)
    except (TypeError, ValueError):
        series = -1
    if not 0 <= series <= 999:
        issues.append({"path": "series", "message": "serie fora da faixa 0-999"})

    if len(only_digits(issuer.get("cnpj"))) != 14:
        issues.append({"path": "issuer.cnpj", "message": "CNPJ deve ter 14 digitos"})
    require("issuer.name", issuer.get("name"))
    require("issuer.ie", issuer.get("ie"))
    issuer_address = issuer.get("address") or {}
    if str(issuer_address.get("uf") or "").upper() not in UF_IBGE_CODES:
        issues.append({"path": "issuer.address.uf", "message": "UF invalida"})
    if len(only_digits(issuer_address.get("city_code"))) != 7:
        issues.append({"path": "issuer.address.city_code", "message": "codigo IBGE do municipio deve ter 7 digitos"})

    if len(only_digits(recipient.get("document"))) not in {11, 14}:
        issues.append({"path": "recipient.document", "message": "CPF/CNPJ invalido"})
    require("recipient.name", recipient.get("name"))

    if not items:
        issues.append({"path": "items", "message": "a nota deve ter pelo menos um item"})
    for index, item in enumerate(items):
        prefix = f"items[{index}]"
        require(f"{prefix}.code", item.get("code"))
        require(f"{prefix}.description", item.get("description"))
        if len(only_digits(item.get("ncm"))) != 8:
            issues.append({"path": f"{prefix}.ncm", "message": "NCM deve ter 8 digitos"})
        if len(only_digits(item.get("cfop"))) != 4:
            issues.append({"path": f"{prefix}.cfop", "message": "CFOP deve ter 4 digitos"})
        quantity = _decimal(item.get("quantity"))
        unit_price = _decimal(item.get("unit_price"))
        if quantity.is_nan() or quantity <= 0:
            issues.append({"path": f"{prefix}.quantity", "message": "quantidade deve ser positiva"})
        if unit_price.is_nan() or unit_price <= 0:
            issues.append({"path": f"{prefix}.unit_price", "message": "valor unitario deve ser positivo"})
        icms = item.get("icms") or {}
        cst = str(icms.get("cst") or "").strip()
        if not icms.get("csosn") and cst not in {"", "00", "40", "41", "50"}:
            issues.append({"path": f"{prefix}.icms.cst", "message": f"CST ICMS {cst} nao suportado"})
    return issues


def _build_address(parent: etree._Element, name: str, address: Dict[str, Any]) -> None:
    node = _el(parent, name)
    _el(node, "xLgr", _text(address.get("street") or "NAO INFORMADO", 60))
    _el(node, "nro", _text(address.get("number") or "S/N", 60))
    if address.get("complement"):
        _el(node, "xCpl", _text(address.get("complement"), 60))
    _el(node, "xBairro", _text(address.get("district") or "NAO INFORMADO", 60))
    _el(node, "cMun", only_digits(address.get("city_code")) or "9999999")
    _el(node, "xMun", _text(address.get("city") or "NAO INFORMADO", 60))
    _el(node, "UF", str(address.get("uf") or "").upper())
    _el(node, "CEP", only_digits(address.get("zip")).zfill(8))
    _el(node, "cPais", "1058")
    _el(node, "xPais", "BRASIL")
    if address.get("phone"):
        _el(node, "fone", only_digits(address.get("phone")))


def _build_taxes(det: etree._Element, item: Dict[str, Any], amount: Decimal, totals: Dict[str, Decimal]) -> None:
    imposto = _el(det, "imposto")
    icms = item.get("icms") or {}
    origin = str(icms.get("origin") or "0")
    icms_node = _el(imposto, "ICMS")
    if icms.get("csosn"):
        group = _el(icms_node, "ICMSSN102")
        _el(group, "orig", origin)
        _el(group, "CSOSN", str(icms.get("csosn")))
    else:
        cst = str(icms.get("cst") or "00")
        if cst == "00":
            rate = _decimal(icms.get("rate") or 0)
            value = (amount * rate / Decimal(100)).quantize(_CENTS, rounding=ROUND_HALF_UP)
            group = _el(icms_node, "ICMS00")
            _el(group, "orig", origin)
            _el(group, "CST", cst)
            _el(group, "modBC", "3")
            _el(group, "vBC", _money(amount))
            _el(group, "pICMS", _money(rate))
            _el(group, "vICMS", _money(value))
            totals["vBC"] += amount
            totals["vICMS"] += value
        else:
            group = _el(icms_node, "ICMS40")
            _el(group, "orig", origin)
            _el(group, "CST", cst)

    for tax, rate_tag, value_tag in (("PIS", "pPIS", "vPIS"), ("COFINS", "pCOFINS", "vCOFINS")):
        config = item.get(tax.lower()) or {}
        cst = str(config.get("cst") or "07")
        tax_node = _el(imposto, tax)
        if cst in {"04", "05", "06", "07", "08", "09"}:
            group = _el(tax_node, f"{tax}NT")
            _el(group, "CST", cst)
            continue
        rate = _decimal(config.get("rate") or 0)
        value = (amount * rate / Decimal(100)).quantize(_CENTS, rounding=ROUND_HALF_UP)
        group = _el(tax_node, f"{tax}Aliq" if cst in {"01", "02"} else f"{tax}Outr")
        _el(group, "CST", cst)
        _el(group, "vBC", _money(amount))
        _el(group, rate_tag, _money(rate))
        _el(group, value_tag, _money(value))
        totals[value_tag] += value


def build_nfe_xml(document: Dict[str, Any], *, environment: str = "homologation") -> BuiltNfe:
    """Canonical unsigned NF-e (layout 4.00) for ``document``.

    The access key is derived from the issuer, series, number and emission
    date, so building the same document twice yields the same key and XML.
    """
    issues = _validate(document)
    if issues:
        raise NfeBuildError(issues)

    issuer = document["issuer"]
    recipient = document["recipient"]
    issuer_address = issuer.get("address") or {}
    uf = str(issuer_address.get("uf")).upper()
    emitted_at = parse_emitted_at(document.get("issued_at"))
    number = int(document["number"])
    series = int(document["series"])
    model = str(document.get("model") or "55")
    emission_type = str(document.get("emission_type") or "1")
    tp_amb = "1" if normalize_environment(environment) == ENVIRONMENT_PRODUCTION else "2"

    try:
        access_key = build_access_key(
            uf,
            emitted_at,
            issuer["cnpj"],
            model,
            series,
            number,
            emission_type=emission_type,
        )
    except AccessKeyError as exc:
        raise NfeBuildError([{"path": "access_key", "message": str(exc)}]) from exc

    reference_id = f"NFe{access_key}"
    root = etree.Element(f"{{{NFE_NS}}}NFe", nsmap={None: NFE_NS})
    inf = _el(root, "infNFe")
    inf.set("versao", NFE_VERSION)
    inf.set("Id", reference_id)

    ide = _el(inf, "ide")
    _el(ide, "cUF", access_key[:2])
    _el(ide, "cNF", access_key[35:43])
    _el(ide, "natOp", _text(document.get("nature_of_operation") or "VENDA DE MERCADORIA", 60))
    _el(ide, "mod", model)
    _el(ide, "serie", str(series))
    _el(ide, "nNF", str(number))
    _el(ide, "dhEmi", emitted_at.isoformat())
    _el(ide, "tpNF", str(document.get("operation_type") or "1"))
    _el(ide, "idDest", str(document.get("destination") or "1"))
    _el(ide, "cMunFG", only_digits(issuer_address.get("city_code")))
    _el(ide, "tpImp", "1")
    _el(ide, "tpEmis", emission_type)
    _el(ide, "cDV", access_key[43])
    _el(ide, "tpAmb", tp_amb)
    _el(ide, "finNFe", str(document.get("purpose") or "1"))
    _el(ide, "indFinal", str(document.get("final_consumer") or "0"))
    _el(ide, "indPres", str(document.get("presence") or "1"))
    _el(ide, "procEmi", "0")
    _el(ide, "verProc", PROCESS_VERSION)

    emit = _el(inf, "emit")
    _el(emit, "CNPJ", only_digits(issuer["cnpj"]))
    _el(emit, "xNome", _text(issuer.get("name"), 60))
    if issuer.get("trade_name"):
        _el(emit, "xFant", _text(issuer.get("trade_name"), 60))
    _build_address(emit, "enderEmit", issuer_address)
    _el(emit, "IE", only_digits(issuer.get("ie")) or "ISENTO")
    _el(emit, "CRT", str(issuer.get("crt") or "3"))

    dest = _el(inf, "dest")
    recipient_document = only_digits(recipient.get("document"))
    _el(dest, "CNPJ" if len(recipient_document) == 14 else "CPF", recipient_document)
    recipient_name = _text(recipient.get("name"), 60)
    if tp_amb == "2":
        recipient_name = "NF-E EMITIDA EM AMBIENTE DE HOMOLOGACAO - SEM VALOR FISCAL"
    _el(dest, "xNome", recipient_name)
    if recipient.get("address"):
        _build_address(dest, "enderDest", recipient["address"])
    ie_indicator = str(recipient.get("ie_indicator") or ("1" if recipient.get("ie") else "9"))
    _el(dest, "indIEDest", ie_indicator)
    if ie_indicator == "1" and recipient.get("ie"):
        _el(dest, "IE", only_digits(recipient.get("ie")))
    if recipient.get("email"):
        _el(dest, "email", _text(recipient.get("email"), 60))

    totals: Dict[str, Decimal] = {
        "vBC": Decimal(0),
        "vICMS": Decimal(0),
        "vProd": Decimal(0),
        "vPIS": Decimal(0),
        "vCOFINS": Decimal(0),
    }
    for index, item in enumerate(document["items"], start=1):
        quantity = _decimal(item.get("quantity"))
        unit_price = _decimal(item.get("unit_price"))
        amount = (quantity * unit_price).quantize(_CENTS, rounding=ROUND_HALF_UP)
        totals["vProd"] += amount

        det = _el(inf, "det")
        det.set("nItem", str(index))
        prod = _el(det, "prod")
        unit = _text(item.get("unit") or "UN", 6)
        _el(prod, "cProd", _text(item.get("code"), 60))
        _el(prod, "cEAN", item.get("ean") or "SEM GTIN")
        _el(prod, "xProd", _text(item.get("description"), 120))
        _el(prod, "NCM", only_digits(item.get("ncm")))
        _el(prod, "CFOP", only_digits(item.get("cfop")))
        _el(prod, "uCom", unit)
        _el(prod, "qCom", _qty(quantity))
        _el(prod, "vUnCom", _qty(unit_price))
        _el(prod, "vProd", _money(amount))
        _el(prod, "cEANTrib", item.get("ean") or "SEM GTIN")
        _el(prod, "uTrib", unit)
        _el(prod, "qTrib", _qty(quantity))
        _el(prod, "vUnTrib", _qty(unit_price))
        _el(prod, "indTot", "1")
        _build_taxes(det, item, amount, totals)

    total = _el(inf, "total")
    icms_tot = _el(total, "ICMSTot")
    for tag in (
        "vBC",
        "vICMS",
        "vICMSDeson",
        "vFCP",
        "vBCST",
        "vST",
        "vFCPST",
        "vFCPSTRet",
        "vProd",
        "vFrete",
        "vSeg",
        "vDesc",
        "vII",
        "vIPI",
        "vIPIDevol",
        "vPIS",
        "vCOFINS",
        "vOutro",
    ):
        _el(icms_tot, tag, _money(totals.get(tag, Decimal(0))))
    _el(icms_tot, "vNF", _money(totals["vProd"]))

    transp = _el(inf, "transp")
    _el(transp, "modFrete", str(document.get("freight_mode") or "9"))

    pag = _el(inf, "pag")
    payments = document.get("payments") or [{"method": "90", "amount": "0"}]
    for payment in payments:
        det_pag = _el(pag, "detPag")
        _el(det_pag, "tPag", str(payment.get("method") or "90").zfill(2))
        _el(det_pag, "vPag", _money(_decimal(payment.get("amount") or 0)))

    if document.get("additional_info"):
        inf_adic = _el(inf, "infAdic")
        _el(inf_adic, "infCpl", _text(document.get("additional_info"), 5000))

    xml = etree.tostring(root, encoding="unicode")
    return BuiltNfe(xml=xml, access_key=access_key, reference_id=reference_id, emitted_at=emitted_at)


def build_nfe_proc(signed_xml: str, protocol_xml: str) -> str:
    """Wrap the signed NFe and its protNFe in ``nfeProc``, the authorized distribution artifact."""
    parser = etree.XMLParser(remove_blank_text=True, resolve_entities=False, no_network=True)
    nfe = etree.fromstring(signed_xml.encode("utf-8"), parser=parser)
    protocol = etree.fromstring(protocol_xml.encode("utf-8"), parser=parser)
    proc = etree.Element(f"{{{NFE_NS}}}nfeProc", nsmap={None: NFE_NS})
    proc.set("versao", NFE_VERSION)
    proc.append(nfe)
    proc.append(protocol)
    return etree.tostring(proc, encoding="unicode")
