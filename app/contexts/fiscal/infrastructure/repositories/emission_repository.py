from __future__ import annotations

from typing import Any, Dict, Iterable

from app.infrastructure.repositories.base import BaseRepository


# Columns a transition may write alongside the status.
_MUTABLE_FIELDS = frozenset(
    {
        "receipt_number",
        "authorized_at",
        "last_status_code",
        "last_status_message",
        "last_error",
        "unsigned_xml_ref",
        "signed_xml_ref",
        "authorized_xml_ref",
    }
)


class EmissionRepository(BaseRepository):
    def get_by_id(self, db, emission_id: int) -> dict | None:
        row = db.execute(
            "SELECT * FROM fiscal_emissions WHERE id = ? AND tenant_id = ? LIMIT 1",
            (int(emission_id), self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def get_by_access_key(self, db, access_key: str) -> dict | None:
        row = db.execute(
            "SELECT * FROM fiscal_emissions WHERE access_key = ? AND tenant_id = ? LIMIT 1",
            (access_key, self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def get_by_document_number(
        self,
        db,
        *,
        issuer_cnpj: str,
        model: str,
        series: int,
        number: int,
        environment: str,
    ) -> dict | None:
        row = db.execute(
            """
            SELECT *
            FROM fiscal_emissions
            WHERE issuer_cnpj = ?
              AND model = ?
              AND document_series = ?
              AND document_number = ?
              AND environment = ?
              AND tenant_id = ?
            LIMIT 1
            """,
            (issuer_cnpj, model, int(series), int(number), environment, self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def find_by_sales_document(
        self,
        db,
        sales_document_id: str,
        *,
        number: int | None = None,
        series: int | None = None,
    ) -> dict | None:
        clauses = ["sales_document_id = ?", "tenant_id = ?"]
        params: list[Any] = [str(sales_document_id), self.tenant_id]
        if number is not None:
            clauses.append("document_number = ?")
            params.append(int(number))
        if series is not None:
            clauses.append("document_series = ?")
            params.append(int(series))
        row = db.execute(
            f"SELECT * FROM fiscal_emissions WHERE {' AND '.join(clauses)} ORDER BY id DESC LIMIT 1",
            tuple(params),
        ).fetchone()
        return self.row_to_dict(row)

    def create(
        self,
        db,
        *,
        access_key: str,
        sales_document_id: str | None,
        document_number: int,
        document_series: int,
        model: str,
        environment: str,
        uf: str,
        issuer_cnpj: str,
        status: str,
        document_payload: str | None = None,
        protocol_number: str | None = None,
        authorized_at: str | None = None,
        last_status_code: str | None = None,
        last_status_message: str | None = None,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO fiscal_emissions (
                tenant_id,
                sales_document_id,
                access_key,
                document_number,
                document_series,
                model,
                environment,
                uf,
                issuer_cnpj,
                status,
                document_payload,
                protocol_number,
                authorized_at,
                last_status_code,
                last_status_message
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                self.tenant_id,
                sales_document_id,
                access_key,
                int(document_number),
                int(document_series),
                model,
                environment,
                uf,
                issuer_cnpj,
                status,
                document_payload,
                protocol_number,
                authorized_at,
                last_status_code,
                last_status_message,
            ),
        )
        return self.returning_id(cursor)

    def transition(
        self,
        db,
        emission_id: int,
        *,
        to_status: str,
        expected: Iterable[str],
        protocol_number: str | None = None,
        fields: Dict[str, Any] | None = None,
    ) -> int:
        """Status-guarded update. Returns the number of rows changed (0 or 1)."""
        expected = tuple(expected)
        if not expected:
            return 0
        assignments = ["status = ?", "protocol_number = COALESCE(protocol_number, ?)", "updated_at = CURRENT_TIMESTAMP"]
        params: list[Any] = [to_status, protocol_number]
        for column, value in (fields or {}).items():
            if column not in _MUTABLE_FIELDS:
                raise ValueError(f"coluna nao permitida em transicao: {column}")
            assignments.append(f"{column} = ?")
            params.append(value)
        placeholders = ", ".join("?" for _ in expected)
        cursor = db.execute(
            f"""
            UPDATE fiscal_emissions
            SET {', '.join(assignments)}
            WHERE id = ? AND tenant_id = ? AND status IN ({placeholders})
            """,
            (*params, int(emission_id), self.tenant_id, *expected),
        )
        return int(cursor.rowcount or 0)

    def update_fields(self, db, emission_id: int, fields: Dict[str, Any]) -> None:
        if not fields:
            return
        assignments = []
        params: list[Any] = []
        for column, value in fields.items():
            if column not in _MUTABLE_FIELDS:
                raise ValueError(f"coluna nao permitida: {column}")
            assignments.append(f"{column} = ?")
            params.append(value)
        db.execute(
            f"""
            UPDATE fiscal_emissions
            SET {', '.join(assignments)}, updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND tenant_id = ?
            """,
            (*params, int(emission_id), self.tenant_id),
        )

    def set_protocol_if_missing(
        self,
        db,
        emission_id: int,
        protocol_number: str,
        *,
        authorized_at: str | None = None,
    ) -> int:
        cursor = db.execute(
            """
            UPDATE fiscal_emissions
            SET protocol_number = ?,
                authorized_at = COALESCE(authorized_at, ?),
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND tenant_id = ? AND (protocol_number IS NULL OR protocol_number = '')
            """,
            (protocol_number, authorized_at, int(emission_id), self.tenant_id),
        )
        return int(cursor.rowcount or 0)

    def advance_correction_sequence(self, db, emission_id: int, sequence: int) -> None:
        db.execute(
            """
            UPDATE fiscal_emissions
            SET last_correction_sequence = CASE
                    WHEN last_correction_sequence >= ? THEN last_correction_sequence
                    ELSE ?
                END,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND tenant_id = ?
            """,
            (int(sequence), int(sequence), int(emission_id), self.tenant_id),
        )


def get_emission_any_tenant(db, emission_id: int) -> dict | None:
    """Unscoped lookup, only to tell a foreign emission apart from a missing one."""
    row = db.execute("SELECT * FROM fiscal_emissions WHERE id = ? LIMIT 1", (int(emission_id),)).fetchone()
    return dict(row) if row else None
