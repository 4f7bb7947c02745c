from __future__ import annotations

import hashlib
import os
import tempfile
from pathlib import Path


ARTIFACT_KINDS = ("unsigned", "signed", "authorized", "cancellation", "correction")


class ArtifactStoreError(RuntimeError):
    pass


class ArtifactStore:
    """Content-addressed XML artifacts under ``<base>/<tenant>/<access_key>/<kind>-<sha12>.xml``."""

    def __init__(self, base_dir: str) -> None:
        self.base_dir = Path(base_dir).expanduser().resolve()

    @staticmethod
    def _segment(value: str, label: str) -> str:
        raw = str(value or "").strip()
        if not raw or raw in {".", ".."} or "/" in raw or "\\" in raw:
            raise ArtifactStoreError(f"{label} invalido para artefato: {value!r}")
        return raw

    def _resolve(self, ref: str) -> Path:
        path = (self.base_dir / str(ref or "")).resolve()
        try:
            path.relative_to(self.base_dir)
        except ValueError:
            raise ArtifactStoreError(f"referencia fora do diretorio de artefatos: {ref!r}") from None
        return path

    def save(self, tenant_id: str, access_key: str, kind: str, content: str) -> str:
        if kind not in ARTIFACT_KINDS:
            raise ArtifactStoreError(f"tipo de artefato desconhecido: {kind!r}")
        data = content.encode("utf-8")
        digest = hashlib.sha256(data).hexdigest()[:12]
        ref = "/".join(
            (
                self._segment(tenant_id, "tenant"),
                self._segment(access_key, "chave"),
                f"{kind}-{digest}.xml",
            )
        )
        path = self._resolve(ref)
        if path.exists():
            return ref

        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{kind}-", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(temp_path, path)
        except OSError:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
        return ref

    def load(self, ref: str) -> str:
        path = self._resolve(ref)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise ArtifactStoreError(f"artefato nao encontrado: {ref}") from None

    def exists(self, ref: str | None) -> bool:
        if not ref:
            return False
        try:
            return self._resolve(ref).is_file()
        except ArtifactStoreError:
            return False
