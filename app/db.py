import sqlite3
from typing import Iterable, List

try:
    import psycopg2
    import psycopg2.extras
except ImportError:  # pragma: no cover - optional dependency for postgres
    psycopg2 = None

from flask import current_app, g


DEFAULT_TENANT_ID = "tenant-demo"


class Database:
    def __init__(self, backend: str, connection):
        self.backend = backend
        self._conn = connection

    def execute(self, sql: str, params: Iterable | None = None):
        if self.backend == "postgres":
            cursor = self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            if params:
                sql = _convert_qmark_to_pg(sql)
                cursor.execute(sql, list(params))
            else:
                cursor.execute(sql)
            return cursor
        return self._conn.execute(sql, params or ())

    def executescript(self, sql: str):
        if self.backend != "postgres":
            return self._conn.executescript(sql)
        for statement in _split_sql_statements(sql):
            if statement.strip():
                self.execute(statement)

    def begin_immediate(self) -> None:
        # Postgres connections run in autocommit; a unit of work switches it off until commit or rollback.
        if self.backend == "postgres":
            if self._conn.autocommit:
                self._conn.autocommit = False
            return
        if self._conn.in_transaction:
            return
        self._conn.execute("BEGIN IMMEDIATE")

    def commit(self):
        self._conn.commit()
        self._restore_autocommit()

    def rollback(self):
        self._conn.rollback()
        self._restore_autocommit()

    def _restore_autocommit(self) -> None:
        if self.backend == "postgres" and not self._conn.autocommit:
            self._conn.autocommit = True

    def close(self):
        self._conn.close()


def is_unique_violation(exc: Exception) -> bool:
    if isinstance(exc, sqlite3.IntegrityError):
        return "unique" in str(exc).lower()
    if psycopg2 is not None and isinstance(exc, psycopg2.IntegrityError):
        return str(getattr(exc, "pgcode", "") or "") == "23505"
    return False


def _split_sql_statements(sql: str) -> List[str]:
    statements = []
    current = []
    in_single = False
    in_double = False
    i = 0
    while i < len(sql):
        ch = sql[i]
        if ch == "'" and not in_double:
            in_single = not in_single
        elif ch == '"' and not in_single:
            in_double = not in_double
        elif ch == ";" and not in_single and not in_double:
            statements.append("".join(current))
            current = []
            i += 1
            continue
        current.append(ch)
        i += 1
    if current:
        statements.append("".join(current))
    return statements


def _convert_qmark_to_pg(sql: str) -> str:
    return sql.replace("?", "%s")


def connect_database(db_path: str, *, busy_timeout_seconds: int = 30) -> Database:
    if db_path.lower().startswith("postgres"):
        if psycopg2 is None:
            raise RuntimeError("psycopg2 nao instalado.")
        conn = psycopg2.connect(db_path)
        conn.autocommit = True
        return Database("postgres", conn)

    conn = sqlite3.connect(db_path, timeout=float(max(1, busy_timeout_seconds)))
    conn.row_factory = sqlite3.Row
    return Database("sqlite", conn)


def get_db():
    if "db" not in g:
        db_path = current_app.config["DB_PATH"]
        g.db = connect_database(
            db_path,
            busy_timeout_seconds=int(current_app.config.get("SQLITE_BUSY_TIMEOUT_SECONDS", 30) or 30),
        )
    return g.db


def close_db(_error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    if db.backend == "postgres":
        db.executescript(_POSTGRES_SCHEMA)
        return
    db.executescript(_SQLITE_SCHEMA)
    db.commit()


_SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS tenants (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    issuer_cnpj TEXT,
    uf TEXT,
    nfe_environment TEXT NOT NULL DEFAULT 'homologation',
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS fiscal_emissions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT NOT NULL,
    sales_document_id TEXT,
    access_key TEXT NOT NULL,
    document_number INTEGER NOT NULL,
    document_series INTEGER NOT NULL,
    model TEXT NOT NULL DEFAULT '55',
    environment TEXT NOT NULL DEFAULT 'homologation'
        CHECK (environment IN ('production', 'homologation')),
    uf TEXT NOT NULL,
    issuer_cnpj TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'draft'
        CHECK (status IN ('draft', 'signed_offline', 'queued', 'processing', 'authorized', 'denied', 'rejected', 'cancelled')),
    receipt_number TEXT,
    protocol_number TEXT,
    authorized_at TEXT,
    last_status_code TEXT,
    last_status_message TEXT,
    last_error TEXT,
    unsigned_xml_ref TEXT,
    signed_xml_ref TEXT,
    authorized_xml_ref TEXT,
    document_payload TEXT,
    last_correction_sequence INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (tenant_id, access_key),
    UNIQUE (tenant_id, issuer_cnpj, model, document_series, document_number, environment)
);

CREATE INDEX IF NOT EXISTS idx_fiscal_emissions_sales_document
    ON fiscal_emissions (tenant_id, sales_document_id);

CREATE TABLE IF NOT EXISTS nfe_cancellations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT NOT NULL,
    emission_id INTEGER NOT NULL REFERENCES fiscal_emissions(id),
    access_key TEXT NOT NULL,
    sequence INTEGER NOT NULL DEFAULT 1 CHECK (sequence = 1),
    reason TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'processed', 'failed')),
    status_code TEXT,
    status_message TEXT,
    event_protocol TEXT,
    requested_by TEXT,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    processed_at TEXT,
    UNIQUE (tenant_id, access_key, sequence)
);

CREATE TABLE IF NOT EXISTS nfe_correction_letters (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT NOT NULL,
    emission_id INTEGER NOT NULL REFERENCES fiscal_emissions(id),
    access_key TEXT NOT NULL,
    sequence INTEGER NOT NULL CHECK (sequence >= 1),
    correction_text TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'processed', 'failed')),
    status_code TEXT,
    status_message TEXT,
    event_protocol TEXT,
    requested_by TEXT,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    processed_at TEXT,
    UNIQUE (tenant_id, access_key, sequence)
);

CREATE TABLE IF NOT EXISTS jobs_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT,
    job_type TEXT NOT NULL,
    payload TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 5,
    last_error TEXT,
    next_run_at TEXT NOT NULL,
    locked_at TEXT,
    locked_by TEXT,
    request_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    finished_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_queue_due
    ON jobs_queue (status, next_run_at, id);

CREATE TABLE IF NOT EXISTS fiscal_status_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT NOT NULL,
    emission_id INTEGER NOT NULL,
    from_status TEXT,
    to_status TEXT NOT NULL,
    reason TEXT NOT NULL,
    status_code TEXT,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_fiscal_status_events_emission
    ON fiscal_status_events (tenant_id, emission_id, id);

CREATE TABLE IF NOT EXISTS fiscal_anomalies (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT NOT NULL,
    emission_id INTEGER NOT NULL,
    kind TEXT NOT NULL,
    current_value TEXT,
    observed_value TEXT,
    status_code TEXT,
    details TEXT,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS sales_document_nfes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT NOT NULL,
    document_id TEXT NOT NULL,
    nfe_key TEXT,
    nfe_number INTEGER,
    nfe_series INTEGER,
    status TEXT,
    issued_at TEXT,
    details TEXT
);

CREATE INDEX IF NOT EXISTS idx_sales_document_nfes_key
    ON sales_document_nfes (nfe_key);
CREATE INDEX IF NOT EXISTS idx_sales_document_nfes_document
    ON sales_document_nfes (tenant_id, document_id);
"""


_POSTGRES_SCHEMA = """
CREATE TABLE IF NOT EXISTS tenants (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    issuer_cnpj TEXT,
    uf TEXT,
    nfe_environment TEXT NOT NULL DEFAULT 'homologation',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS fiscal_emissions (
    id BIGSERIAL PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    sales_document_id TEXT,
    access_key TEXT NOT NULL,
    document_number INTEGER NOT NULL,
    document_series INTEGER NOT NULL,
    model TEXT NOT NULL DEFAULT '55',
    environment TEXT NOT NULL DEFAULT 'homologation'
        CHECK (environment IN ('production', 'homologation')),
    uf TEXT NOT NULL,
    issuer_cnpj TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'draft'
        CHECK (status IN ('draft', 'signed_offline', 'queued', 'processing', 'authorized', 'denied', 'rejected', 'cancelled')),
    receipt_number TEXT,
    protocol_number TEXT,
    authorized_at TEXT,
    last_status_code TEXT,
    last_status_message TEXT,
    last_error TEXT,
    unsigned_xml_ref TEXT,
    signed_xml_ref TEXT,
    authorized_xml_ref TEXT,
    document_payload TEXT,
    last_correction_sequence INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT to_char(NOW() AT TIME ZONE 'UTC', 'YYYY-MM-DD HH24:MI:SS'),
    updated_at TEXT NOT NULL DEFAULT to_char(NOW() AT TIME ZONE 'UTC', 'YYYY-MM-DD HH24:MI:SS'),
    UNIQUE (tenant_id, access_key),
    UNIQUE (tenant_id, issuer_cnpj, model, document_series, document_number, environment)
);

CREATE INDEX IF NOT EXISTS idx_fiscal_emissions_sales_document
    ON fiscal_emissions (tenant_id, sales_document_id);

CREATE TABLE IF NOT EXISTS nfe_cancellations (
    id BIGSERIAL PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    emission_id BIGINT NOT NULL REFERENCES fiscal_emissions(id),
    access_key TEXT NOT NULL,
    sequence INTEGER NOT NULL DEFAULT 1 CHECK (sequence = 1),
    reason TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'processed', 'failed')),
    status_code TEXT,
    status_message TEXT,
    event_protocol TEXT,
    requested_by TEXT,
    created_at TEXT NOT NULL DEFAULT to_char(NOW() AT TIME ZONE 'UTC', 'YYYY-MM-DD HH24:MI:SS'),
    updated_at TEXT NOT NULL DEFAULT to_char(NOW() AT TIME ZONE 'UTC', 'YYYY-MM-DD HH24:MI:SS'),
    processed_at TEXT,
    UNIQUE (tenant_id, access_key, sequence)
);

CREATE TABLE IF NOT EXISTS nfe_correction_letters (
    id BIGSERIAL PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    emission_id BIGINT NOT NULL REFERENCES fiscal_emissions(id),
    access_key TEXT NOT NULL,
    sequence INTEGER NOT NULL CHECK (sequence >= 1),
    correction_text TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'processed', 'failed')),
    status_code TEXT,
    status_message TEXT,
    event_protocol TEXT,
    requested_by TEXT,
    created_at TEXT NOT NULL DEFAULT to_char(NOW() AT TIME ZONE 'UTC', 'YYYY-MM-DD HH24:MI:SS'),
    updated_at TEXT NOT NULL DEFAULT to_char(NOW() AT TIME ZONE 'UTC', 'YYYY-MM-DD HH24:MI:SS'),
    processed_at TEXT,
    UNIQUE (tenant_id, access_key, sequence)
);

CREATE TABLE IF NOT EXISTS jobs_queue (
    id BIGSERIAL PRIMARY KEY,
    tenant_id TEXT,
    job_type TEXT NOT NULL,
    payload TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 5,
    last_error TEXT,
    next_run_at TEXT NOT NULL,
    locked_at TEXT,
    locked_by TEXT,
    request_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    finished_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_queue_due
    ON jobs_queue (status, next_run_at, id);

CREATE TABLE IF NOT EXISTS fiscal_status_events (
    id BIGSERIAL PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    emission_id BIGINT NOT NULL,
    from_status TEXT,
    to_status TEXT NOT NULL,
    reason TEXT NOT NULL,
    status_code TEXT,
    created_at TEXT NOT NULL DEFAULT to_char(NOW() AT TIME ZONE 'UTC', 'YYYY-MM-DD HH24:MI:SS')
);

CREATE INDEX IF NOT EXISTS idx_fiscal_status_events_emission
    ON fiscal_status_events (tenant_id, emission_id, id);

CREATE TABLE IF NOT EXISTS fiscal_anomalies (
    id BIGSERIAL PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    emission_id BIGINT NOT NULL,
    kind TEXT NOT NULL,
    current_value TEXT,
    observed_value TEXT,
    status_code TEXT,
    details TEXT,
    created_at TEXT NOT NULL DEFAULT to_char(NOW() AT TIME ZONE 'UTC', 'YYYY-MM-DD HH24:MI:SS')
);

CREATE TABLE IF NOT EXISTS sales_document_nfes (
    id BIGSERIAL PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    document_id TEXT NOT NULL,
    nfe_key TEXT,
    nfe_number INTEGER,
    nfe_series INTEGER,
    status TEXT,
    issued_at TEXT,
    details TEXT
);

CREATE INDEX IF NOT EXISTS idx_sales_document_nfes_key
    ON sales_document_nfes (nfe_key);
CREATE INDEX IF NOT EXISTS idx_sales_document_nfes_document
    ON sales_document_nfes (tenant_id, document_id);
"""
