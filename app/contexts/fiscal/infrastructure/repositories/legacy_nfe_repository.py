from __future__ import annotations

from app.infrastructure.repositories.base import BaseRepository


class LegacyNfeRepository(BaseRepository):
    """Read-only access to the per-document ``sales_document_nfes`` rows."""

    def find_by_key(self, db, access_key: str) -> dict | None:
        row = db.execute(
            """
            SELECT *
            FROM sales_document_nfes
            WHERE nfe_key = ? AND tenant_id = ?
            ORDER BY id DESC
            LIMIT 1
            """,
            (access_key, self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def list_for_document(self, db, document_id: str) -> list[dict]:
        rows = db.execute(
            """
            SELECT *
            FROM sales_document_nfes
            WHERE document_id = ? AND tenant_id = ?
            ORDER BY id DESC
            """,
            (str(document_id), self.tenant_id),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def find_by_id(self, db, legacy_id: int) -> dict | None:
        row = db.execute(
            "SELECT * FROM sales_document_nfes WHERE id = ? AND tenant_id = ? LIMIT 1",
            (int(legacy_id), self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)
