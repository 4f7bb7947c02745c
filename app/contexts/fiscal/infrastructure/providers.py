from __future__ import annotations

from flask import current_app

from app.contexts.fiscal.domain.gateway import SefazGateway
from app.contexts.fiscal.infrastructure.artifacts import ArtifactStore
from app.contexts.fiscal.infrastructure.certificates import (
    CertificateProvider,
    DirectoryCertificateProvider,
    parse_password_map,
)
from app.contexts.fiscal.infrastructure.circuit_breaker import SefazCircuitBreaker, get_sefaz_circuit_breaker
from app.contexts.fiscal.infrastructure.endpoints import parse_url_overrides
from app.contexts.fiscal.infrastructure.sefaz_client import SefazSoapGateway
from app.contexts.fiscal.infrastructure.simulator.deterministic_sefaz import DeterministicSefazSimulator


GATEWAY_KEY = "fiscal.sefaz_gateway"
CERTIFICATE_PROVIDER_KEY = "fiscal.certificate_provider"
ARTIFACT_STORE_KEY = "fiscal.artifact_store"


def _build_gateway(config) -> SefazGateway:
    mode = str(config.get("FISCAL_SEFAZ_MODE") or "simulator").strip().lower()
    if mode == "soap":
        return SefazSoapGateway(
            timeout_seconds=int(config.get("FISCAL_SEFAZ_TIMEOUT_SECONDS", 60) or 60),
            verify_ssl=bool(config.get("FISCAL_SEFAZ_VERIFY_SSL", True)),
            ca_bundle=config.get("FISCAL_SEFAZ_CA_BUNDLE") or None,
            url_overrides=parse_url_overrides(config.get("FISCAL_SEFAZ_URL_OVERRIDES")),
            synchronous_submission=bool(config.get("FISCAL_SEFAZ_SYNC_SUBMISSION", False)),
        )
    return DeterministicSefazSimulator(
        seed=int(config.get("FISCAL_SIMULATOR_SEED", 42) or 42),
        processing_polls=int(config.get("FISCAL_SIMULATOR_PROCESSING_POLLS", 1) or 0),
    )


def get_sefaz_gateway() -> SefazGateway:
    extensions = current_app.extensions
    gateway = extensions.get(GATEWAY_KEY)
    if gateway is None:
        gateway = _build_gateway(current_app.config)
        extensions[GATEWAY_KEY] = gateway
    return gateway


def get_certificate_provider() -> CertificateProvider:
    extensions = current_app.extensions
    provider = extensions.get(CERTIFICATE_PROVIDER_KEY)
    if provider is None:
        config = current_app.config
        provider = DirectoryCertificateProvider(
            config["FISCAL_CERTIFICATES_DIR"],
            passwords=parse_password_map(config.get("FISCAL_CERTIFICATE_PASSWORDS")),
            default_password=config.get("FISCAL_CERTIFICATE_PASSWORD"),
            cache_seconds=int(config.get("FISCAL_CERTIFICATE_CACHE_SECONDS", 900) or 900),
        )
        extensions[CERTIFICATE_PROVIDER_KEY] = provider
    return provider


def get_artifact_store() -> ArtifactStore:
    extensions = current_app.extensions
    store = extensions.get(ARTIFACT_STORE_KEY)
    if store is None:
        store = ArtifactStore(current_app.config["FISCAL_ARTIFACT_DIR"])
        extensions[ARTIFACT_STORE_KEY] = store
    return store


def get_circuit_breaker() -> SefazCircuitBreaker:
    config = current_app.config
    breaker = get_sefaz_circuit_breaker()
    breaker.configure(
        enabled=bool(config.get("SEFAZ_CIRCUIT_ENABLED", True)),
        error_rate_threshold=config.get("SEFAZ_CIRCUIT_ERROR_RATE_THRESHOLD", 0.6),
        min_samples=config.get("SEFAZ_CIRCUIT_MIN_SAMPLES", 5),
        window_seconds=config.get("SEFAZ_CIRCUIT_WINDOW_SECONDS", 120),
        open_seconds=config.get("SEFAZ_CIRCUIT_OPEN_SECONDS", 60),
        half_open_max_calls=config.get("SEFAZ_CIRCUIT_HALF_OPEN_MAX_CALLS", 1),
    )
    return breaker
