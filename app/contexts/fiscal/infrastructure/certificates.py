from __future__ import annotations

import base64
import json
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12


class CertificateUnavailableError(RuntimeError):
    def __init__(self, message: str, *, tenant_id: str | None = None) -> None:
        super().__init__(message)
        self.tenant_id = tenant_id


@dataclass
class SigningCertificate:
    private_key: object
    certificate: object
    pkcs12_data: bytes | None = None
    password: str | None = None

    def certificate_base64(self) -> str:
        der = self.certificate.public_bytes(serialization.Encoding.DER)
        return base64.b64encode(der).decode("ascii")

    def to_pkcs12(self) -> tuple[bytes, str]:
        """PFX bytes and password for the mutual TLS adapter."""
        if self.pkcs12_data is not None:
            return self.pkcs12_data, self.password or ""
        password = self.password or ""
        encryption = (
            serialization.BestAvailableEncryption(password.encode("utf-8"))
            if password
            else serialization.NoEncryption()
        )
        data = pkcs12.serialize_key_and_certificates(
            b"nfe",
            self.private_key,
            self.certificate,
            None,
            encryption,
        )
        return data, password

    @staticmethod
    def from_pkcs12(data: bytes, password: str | None) -> "SigningCertificate":
        secret = password.encode("utf-8") if password else None
        private_key, certificate, _chain = pkcs12.load_key_and_certificates(data, secret)
        if private_key is None or certificate is None:
            raise ValueError("arquivo PFX sem chave privada ou certificado")
        return SigningCertificate(
            private_key=private_key,
            certificate=certificate,
            pkcs12_data=data,
            password=password,
        )


class CertificateProvider(ABC):
    @abstractmethod
    def load(self, tenant_id: str) -> SigningCertificate:
        raise NotImplementedError


def parse_password_map(raw: object) -> Dict[str, str]:
    if not raw:
        return {}
    if isinstance(raw, dict):
        return {str(key): str(value) for key, value in raw.items()}
    try:
        parsed = json.loads(str(raw))
    except json.JSONDecodeError:
        return {}
    if not isinstance(parsed, dict):
        return {}
    return {str(key): str(value) for key, value in parsed.items()}


class DirectoryCertificateProvider(CertificateProvider):
    """Reads `<directory>/<tenant_id>.pfx`; decoded certificates are cached per tenant."""

    def __init__(
        self,
        directory: str,
        *,
        passwords: Dict[str, str] | None = None,
        default_password: str | None = None,
        cache_seconds: int = 900,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.directory = directory
        self.passwords = dict(passwords or {})
        self.default_password = default_password
        self.cache_seconds = max(0, int(cache_seconds))
        self._clock = clock
        self._lock = Lock()
        self._cache: Dict[str, tuple[float, SigningCertificate]] = {}

    def _path_for(self, tenant_id: str) -> str:
        safe = str(tenant_id or "").strip()
        if not safe or "/" in safe or "\\" in safe or safe.startswith("."):
            raise CertificateUnavailableError("tenant invalido para certificado", tenant_id=tenant_id)
        return os.path.join(self.directory, f"{safe}.pfx")

    def load(self, tenant_id: str) -> SigningCertificate:
        now = self._clock()
        with self._lock:
            cached = self._cache.get(tenant_id)
            if cached and now - cached[0] < self.cache_seconds:
                return cached[1]

        path = self._path_for(tenant_id)
        try:
            with open(path, "rb") as handle:
                data = handle.read()
        except OSError as exc:
            raise CertificateUnavailableError(
                f"certificado nao encontrado para {tenant_id}",
                tenant_id=tenant_id,
            ) from exc

        password = self.passwords.get(tenant_id, self.default_password)
        try:
            certificate = SigningCertificate.from_pkcs12(data, password)
        except ValueError as exc:
            raise CertificateUnavailableError(
                f"certificado invalido ou senha incorreta para {tenant_id}",
                tenant_id=tenant_id,
            ) from exc

        with self._lock:
            self._cache[tenant_id] = (now, certificate)
        return certificate

    def invalidate(self, tenant_id: str | None = None) -> None:
        with self._lock:
            if tenant_id is None:
                self._cache.clear()
            else:
                self._cache.pop(tenant_id, None)


class StaticCertificateProvider(CertificateProvider):
    def __init__(self, certificates: Dict[str, SigningCertificate] | SigningCertificate) -> None:
        self._certificates = certificates

    def load(self, tenant_id: str) -> SigningCertificate:
        if isinstance(self._certificates, SigningCertificate):
            return self._certificates
        certificate = self._certificates.get(tenant_id)
        if certificate is None:
            raise CertificateUnavailableError(f"certificado nao cadastrado para {tenant_id}", tenant_id=tenant_id)
        return certificate
