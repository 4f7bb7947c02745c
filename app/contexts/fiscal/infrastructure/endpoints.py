from __future__ import annotations

import json
from typing import Dict

from app.contexts.fiscal.domain.contracts import ENVIRONMENT_PRODUCTION, normalize_environment
from app.contexts.fiscal.infrastructure.soap import (
    SERVICE_AUTHORIZATION,
    SERVICE_EVENT,
    SERVICE_PROTOCOL_QUERY,
    SERVICE_RET_AUTHORIZATION,
)


def _standard(base: str) -> Dict[str, str]:
    return {
        SERVICE_AUTHORIZATION: f"{base}/NFeAutorizacao4",
        SERVICE_RET_AUTHORIZATION: f"{base}/NFeRetAutorizacao4",
        SERVICE_PROTOCOL_QUERY: f"{base}/NFeConsultaProtocolo4",
        SERVICE_EVENT: f"{base}/NFeRecepcaoEvento4",
    }


def _asmx(base: str) -> Dict[str, str]:
    return {
        SERVICE_AUTHORIZATION: f"{base}/nfeautorizacao4.asmx",
        SERVICE_RET_AUTHORIZATION: f"{base}/nferetautorizacao4.asmx",
        SERVICE_PROTOCOL_QUERY: f"{base}/nfeconsultaprotocolo4.asmx",
        SERVICE_EVENT: f"{base}/nferecepcaoevento4.asmx",
    }


def _rs_layout(base: str) -> Dict[str, str]:
    return {
        SERVICE_AUTHORIZATION: f"{base}/ws/NfeAutorizacao/NFeAutorizacao4.asmx",
        SERVICE_RET_AUTHORIZATION: f"{base}/ws/NfeRetAutorizacao/NFeRetAutorizacao4.asmx",
        SERVICE_PROTOCOL_QUERY: f"{base}/ws/NfeConsulta/NfeConsulta4.asmx",
        SERVICE_EVENT: f"{base}/ws/recepcaoevento/recepcaoevento4.asmx",
    }


def _ba_layout(base: str) -> Dict[str, str]:
    return {
        service: f"{base}/webservices/{service}/{service}.asmx"
        for service in (SERVICE_AUTHORIZATION, SERVICE_RET_AUTHORIZATION, SERVICE_PROTOCOL_QUERY, SERVICE_EVENT)
    }


def _am_mt_layout(base: str) -> Dict[str, str]:
    return {
        SERVICE_AUTHORIZATION: f"{base}/NfeAutorizacao4",
        SERVICE_RET_AUTHORIZATION: f"{base}/NfeRetAutorizacao4",
        SERVICE_PROTOCOL_QUERY: f"{base}/NfeConsulta4",
        SERVICE_EVENT: f"{base}/RecepcaoEvento4",
    }


SEFAZ_ENDPOINTS: Dict[str, Dict[str, Dict[str, str]]] = {
    "SP": {
        "production": _asmx("https://nfe.fazenda.sp.gov.br/ws"),
        "homologation": _asmx("https://homologacao.nfe.fazenda.sp.gov.br/ws"),
    },
    "MG": {
        "production": _standard("https://nfe.fazenda.mg.gov.br/nfe2/services"),
        "homologation": _standard("https://hnfe.fazenda.mg.gov.br/nfe2/services"),
    },
    "PR": {
        "production": _standard("https://nfe.sefa.pr.gov.br/nfe"),
        "homologation": _standard("https://homologacao.nfe.sefa.pr.gov.br/nfe"),
    },
    "RS": {
        "production": _rs_layout("https://nfe.sefazrs.rs.gov.br"),
        "homologation": _rs_layout("https://nfe-homologacao.sefazrs.rs.gov.br"),
    },
    "GO": {
        "production": _standard("https://nfe.sefaz.go.gov.br/nfe/services"),
        "homologation": _standard("https://homolog.sefaz.go.gov.br/nfe/services"),
    },
    "MS": {
        "production": _standard("https://nfe.sefaz.ms.gov.br/ws"),
        "homologation": _standard("https://hom.nfe.sefaz.ms.gov.br/ws"),
    },
    "MT": {
        "production": _am_mt_layout("https://nfe.sefaz.mt.gov.br/nfews/v2/services"),
        "homologation": _am_mt_layout("https://homologacao.sefaz.mt.gov.br/nfews/v2/services"),
    },
    "BA": {
        "production": _ba_layout("https://nfe.sefaz.ba.gov.br"),
        "homologation": _ba_layout("https://hnfe.sefaz.ba.gov.br"),
    },
    "PE": {
        "production": _standard("https://nfe.sefaz.pe.gov.br/nfe-service/services"),
        "homologation": _standard("https://nfehomolog.sefaz.pe.gov.br/nfe-service/services"),
    },
    "AM": {
        "production": _am_mt_layout("https://nfe.sefaz.am.gov.br/services2/services"),
        "homologation": _am_mt_layout("https://homnfe.sefaz.am.gov.br/services2/services"),
    },
    "SVRS": {
        "production": _rs_layout("https://nfe.svrs.rs.gov.br"),
        "homologation": _rs_layout("https://nfe-homologacao.svrs.rs.gov.br"),
    },
}


def parse_url_overrides(raw: object) -> Dict[str, str]:
    """Overrides keyed as ``UF:environment:service``; ``*`` matches any UF."""
    if not raw:
        return {}
    if isinstance(raw, dict):
        data = raw
    else:
        try:
            data = json.loads(str(raw))
        except json.JSONDecodeError:
            return {}
    if not isinstance(data, dict):
        return {}
    return {str(key).strip(): str(value).strip() for key, value in data.items() if str(value or "").strip()}


def resolve_endpoint(
    uf: str,
    environment: str,
    service: str,
    overrides: Dict[str, str] | None = None,
) -> str:
    state = str(uf or "").strip().upper()
    env = "production" if normalize_environment(environment) == ENVIRONMENT_PRODUCTION else "homologation"
    overrides = overrides or {}
    for key in (f"{state}:{env}:{service}", f"*:{env}:{service}"):
        if overrides.get(key):
            return overrides[key]

    table = SEFAZ_ENDPOINTS.get(state) or SEFAZ_ENDPOINTS["SVRS"]
    url = table[env].get(service)
    if not url:
        raise KeyError(f"servico {service} sem endpoint para {state}/{env}")
    return url


def authorizer_for(uf: str | None) -> str:
    state = str(uf or "").strip().upper()
    return state if state in SEFAZ_ENDPOINTS else "SVRS"
