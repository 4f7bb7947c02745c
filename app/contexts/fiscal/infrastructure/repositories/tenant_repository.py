from __future__ import annotations

from dataclasses import dataclass

from app.contexts.fiscal.domain.contracts import normalize_environment
from app.infrastructure.repositories.base import BaseRepository


@dataclass(frozen=True)
class TenantFiscalSettings:
    tenant_id: str
    issuer_cnpj: str | None
    uf: str | None
    environment: str


class TenantRepository(BaseRepository):
    def get_fiscal_settings(self, db, *, default_environment: str = "homologation") -> TenantFiscalSettings:
        row = db.execute(
            "SELECT issuer_cnpj, uf, nfe_environment FROM tenants WHERE id = ? LIMIT 1",
            (self.tenant_id,),
        ).fetchone()
        data = self.row_to_dict(row) or {}
        uf = str(data.get("uf") or "").strip().upper() or None
        cnpj = "".join(ch for ch in str(data.get("issuer_cnpj") or "") if ch.isdigit()) or None
        return TenantFiscalSettings(
            tenant_id=self.tenant_id,
            issuer_cnpj=cnpj,
            uf=uf,
            environment=normalize_environment(data.get("nfe_environment"), default=default_environment),
        )
