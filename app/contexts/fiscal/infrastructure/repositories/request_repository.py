from __future__ import annotations

from typing import Iterable

from app.infrastructure.repositories.base import BaseRepository


class _EventRequestRepository(BaseRepository):
    table = ""

    def get_by_id(self, db, request_id: int) -> dict | None:
        row = db.execute(
            f"SELECT * FROM {self.table} WHERE id = ? AND tenant_id = ? LIMIT 1",
            (int(request_id), self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def list_for_emission(self, db, emission_id: int) -> list[dict]:
        rows = db.execute(
            f"""
            SELECT *
            FROM {self.table}
            WHERE emission_id = ? AND tenant_id = ?
            ORDER BY sequence ASC, id ASC
            """,
            (int(emission_id), self.tenant_id),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def mark_status(
        self,
        db,
        request_id: int,
        *,
        status: str,
        expected: Iterable[str],
        status_code: str | None = None,
        status_message: str | None = None,
        event_protocol: str | None = None,
        processed: bool = False,
    ) -> int:
        expected = tuple(expected)
        placeholders = ", ".join("?" for _ in expected)
        processed_sql = "CURRENT_TIMESTAMP" if processed else "processed_at"
        cursor = db.execute(
            f"""
            UPDATE {self.table}
            SET status = ?,
                status_code = COALESCE(?, status_code),
                status_message = COALESCE(?, status_message),
                event_protocol = COALESCE(event_protocol, ?),
                processed_at = {processed_sql},
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND tenant_id = ? AND status IN ({placeholders})
            """,
            (status, status_code, status_message, event_protocol, int(request_id), self.tenant_id, *expected),
        )
        return int(cursor.rowcount or 0)


class CancellationRepository(_EventRequestRepository):
    table = "nfe_cancellations"

    def get_for_access_key(self, db, access_key: str) -> dict | None:
        row = db.execute(
            """
            SELECT *
            FROM nfe_cancellations
            WHERE access_key = ? AND tenant_id = ? AND sequence = 1
            LIMIT 1
            """,
            (access_key, self.tenant_id),
        ).fetchone()
        return self.row_to_dict(row)

    def create(
        self,
        db,
        *,
        emission_id: int,
        access_key: str,
        reason: str,
        requested_by: str | None,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO nfe_cancellations (tenant_id, emission_id, access_key, sequence, reason, status, requested_by)
            VALUES (?, ?, ?, 1, ?, 'pending', ?)
            RETURNING id
            """,
            (self.tenant_id, int(emission_id), access_key, reason, requested_by),
        )
        return self.returning_id(cursor)


class CorrectionLetterRepository(_EventRequestRepository):
    table = "nfe_correction_letters"

    def create_next(
        self,
        db,
        *,
        emission_id: int,
        access_key: str,
        correction_text: str,
        requested_by: str | None,
        max_sequence: int,
    ) -> tuple[int, int] | None:
        """Insert with sequence MAX+1 for the access key; returns (id, sequence).

        Nothing is written and ``None`` is returned once ``max_sequence`` is taken.
        """
        cursor = db.execute(
            """
            INSERT INTO nfe_correction_letters (
                tenant_id, emission_id, access_key, sequence, correction_text, status, requested_by
            )
            SELECT ?, ?, ?, allocation.next_sequence, ?, 'pending', ?
            FROM (
                SELECT COALESCE(MAX(sequence), 0) + 1 AS next_sequence
                FROM nfe_correction_letters
                WHERE tenant_id = ? AND access_key = ?
            ) AS allocation
            WHERE allocation.next_sequence <= ?
            RETURNING id, sequence
            """,
            (
                self.tenant_id,
                int(emission_id),
                access_key,
                correction_text,
                requested_by,
                self.tenant_id,
                access_key,
                int(max_sequence),
            ),
        )
        rows = cursor.fetchall()
        if not rows:
            return None
        row = rows[0]
        if isinstance(row, dict):
            return int(row["id"]), int(row["sequence"])
        return int(row[0]), int(row[1])
