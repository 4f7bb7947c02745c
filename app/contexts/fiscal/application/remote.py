from __future__ import annotations

from typing import Callable, TypeVar

from flask import current_app

from app.contexts.fiscal.domain.contracts import SefazContext, normalize_environment
from app.contexts.fiscal.domain.gateway import SefazGatewayError
from app.contexts.fiscal.infrastructure.endpoints import authorizer_for
from app.contexts.fiscal.infrastructure.providers import get_certificate_provider, get_circuit_breaker


T = TypeVar("T")


class SefazCircuitOpenError(SefazGatewayError):
    def __init__(self, authorizer: str, state: str) -> None:
        super().__init__(f"circuito SEFAZ {authorizer} {state}", code="sefaz_circuit_open")
        self.authorizer = authorizer
        self.state = state


def sefaz_context(emission: dict) -> SefazContext:
    """Remote context for an emission. Raises CertificateUnavailableError when custody fails."""
    tenant_id = str(emission["tenant_id"])
    return SefazContext(
        tenant_id=tenant_id,
        uf=str(emission.get("uf") or "").upper(),
        environment=normalize_environment(emission.get("environment")),
        issuer_cnpj=str(emission.get("issuer_cnpj") or ""),
        certificate=get_certificate_provider().load(tenant_id),
    )


def circuit_open_seconds() -> float:
    return float(current_app.config.get("SEFAZ_CIRCUIT_OPEN_SECONDS", 60) or 60)


def call_sefaz(context: SefazContext, call: Callable[[], T]) -> T:
    """Run ``call`` behind the circuit of the UF authorizer serving ``context``."""
    breaker = get_circuit_breaker()
    authorizer = authorizer_for(context.uf)
    allowed, state = breaker.before_call(authorizer)
    if not allowed:
        raise SefazCircuitOpenError(authorizer, state)
    try:
        result = call()
    except SefazGatewayError as exc:
        # A definitive answer means the service is up and judging requests.
        if exc.definitive:
            breaker.record_success(authorizer)
        else:
            breaker.record_failure(authorizer)
        raise
    breaker.record_success(authorizer)
    return result
