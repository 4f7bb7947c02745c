from __future__ import annotations

from app.infrastructure.repositories.base import BaseRepository


class FiscalStatusEventRepository(BaseRepository):
    def add_event(
        self,
        db,
        *,
        emission_id: int,
        from_status: str | None,
        to_status: str,
        reason: str,
        status_code: str | None = None,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO fiscal_status_events (tenant_id, emission_id, from_status, to_status, reason, status_code)
            VALUES (?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (self.tenant_id, int(emission_id), from_status, to_status, reason, status_code),
        )
        return self.returning_id(cursor)

    def list_for_emission(self, db, emission_id: int, *, limit: int = 200) -> list[dict]:
        rows = db.execute(
            """
            SELECT id, emission_id, from_status, to_status, reason, status_code, created_at
            FROM fiscal_status_events
            WHERE emission_id = ? AND tenant_id = ?
            ORDER BY id ASC
            LIMIT ?
            """,
            (int(emission_id), self.tenant_id, int(limit)),
        ).fetchall()
        return self.rows_to_dicts(rows)


class AnomalyRepository(BaseRepository):
    def add(
        self,
        db,
        *,
        emission_id: int,
        kind: str,
        current_value: str | None,
        observed_value: str | None,
        status_code: str | None = None,
        details: str | None = None,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO fiscal_anomalies (tenant_id, emission_id, kind, current_value, observed_value, status_code, details)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (self.tenant_id, int(emission_id), kind, current_value, observed_value, status_code, details),
        )
        return self.returning_id(cursor)

    def list_for_emission(self, db, emission_id: int) -> list[dict]:
        rows = db.execute(
            """
            SELECT id, emission_id, kind, current_value, observed_value, status_code, details, created_at
            FROM fiscal_anomalies
            WHERE emission_id = ? AND tenant_id = ?
            ORDER BY id ASC
            """,
            (int(emission_id), self.tenant_id),
        ).fetchall()
        return self.rows_to_dicts(rows)
