from __future__ import annotations

from pathlib import Path

import click
from alembic import command
from alembic.config import Config as AlembicConfig
from flask import Flask


def _project_root() -> Path:
    return Path(__file__).resolve().parents[1]


def to_sqlalchemy_url(raw_db_path: str) -> str:
    """Map DB_PATH/DATABASE_URL (a postgres DSN or a sqlite file path) to a SQLAlchemy URL."""
    raw = (raw_db_path or "").strip()
    if not raw:
        raise RuntimeError("DB_PATH indefinido para migrations.")

    if raw.startswith("postgres://"):
        raw = "postgresql://" + raw[len("postgres://") :]
    if raw.startswith(("postgresql://", "postgresql+", "sqlite://", "sqlite+pysqlite://")):
        return raw

    sqlite_path = Path(raw).expanduser().resolve()
    return f"sqlite:///{sqlite_path.as_posix()}"


def build_alembic_config(app: Flask) -> AlembicConfig:
    root = _project_root()
    alembic_ini = root / "alembic.ini"
    if not alembic_ini.exists():
        raise RuntimeError("alembic.ini nao encontrado na raiz do projeto.")

    alembic_cfg = AlembicConfig(str(alembic_ini))
    alembic_cfg.set_main_option("script_location", str((root / "migrations").as_posix()))
    alembic_cfg.set_main_option("sqlalchemy.url", to_sqlalchemy_url(app.config["DB_PATH"]))
    return alembic_cfg


def register_db_cli(app: Flask) -> None:
    @app.cli.group("db")
    def db_group() -> None:
        """Migrations (Alembic) e utilitarios de banco fiscal."""

    @db_group.command("upgrade")
    @click.argument("revision", required=False, default="head")
    def db_upgrade(revision: str) -> None:
        command.upgrade(build_alembic_config(app), revision)
        click.echo(f"Migration aplicada ate {revision}.")

    @db_group.command("downgrade")
    @click.argument("revision", required=False, default="-1")
    def db_downgrade(revision: str) -> None:
        command.downgrade(build_alembic_config(app), revision)
        click.echo(f"Rollback aplicado ate {revision}.")

    @db_group.command("current")
    def db_current() -> None:
        command.current(build_alembic_config(app), verbose=True)

    @db_group.command("history")
    def db_history() -> None:
        command.history(build_alembic_config(app), verbose=True)

    @db_group.command("init-schema")
    def db_init_schema() -> None:
        """Cria o schema direto pelo init_db (somente desenvolvimento)."""
        from app.db import init_db

        init_db()
        click.echo("Schema fiscal criado.")

    @db_group.command("seed-tenant")
    @click.argument("tenant_id")
    @click.option("--name", default="", help="Razao social exibida.")
    @click.option("--cnpj", default="", help="CNPJ do emitente.")
    @click.option("--uf", default="", help="UF do emitente.")
    @click.option(
        "--environment",
        type=click.Choice(["homologation", "production"]),
        default="homologation",
        show_default=True,
    )
    def db_seed_tenant(tenant_id: str, name: str, cnpj: str, uf: str, environment: str) -> None:
        """Cadastra ou atualiza os dados fiscais de um tenant."""
        from app.db import get_db

        db = get_db()
        db.execute(
            """
            INSERT INTO tenants (id, name, issuer_cnpj, uf, nfe_environment)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                name = excluded.name,
                issuer_cnpj = excluded.issuer_cnpj,
                uf = excluded.uf,
                nfe_environment = excluded.nfe_environment
            """,
            (tenant_id, name or tenant_id, cnpj or None, uf.upper() or None, environment),
        )
        db.commit()
        click.echo(f"Tenant {tenant_id} atualizado.")
