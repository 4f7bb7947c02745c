from __future__ import annotations

import os
import shutil
import sqlite3
import tempfile
import time
import uuid
from dataclasses import dataclass
from pathlib import Path


_REPO_ROOT = Path(__file__).resolve().parents[2]
_TEMP_ROOT = Path(tempfile.gettempdir()).resolve()


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False


def assert_safe_temp_db_path(db_path: str) -> None:
    resolved = Path(db_path).resolve()
    if not _is_within(resolved, _TEMP_ROOT):
        raise ValueError(f"Temporary DB must live under TEMP: {resolved}")
    if _is_within(resolved, _REPO_ROOT):
        raise ValueError(f"Temporary DB cannot live inside repository: {resolved}")


def open_sqlite_temp_connection(db_path: str) -> sqlite3.Connection:
    assert_safe_temp_db_path(db_path)
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30.0, isolation_level=None)
    conn.execute("PRAGMA journal_mode=DELETE")
    return conn


def remove_tree_with_retry(path: str, attempts: int = 8, base_delay: float = 0.05) -> None:
    root = Path(path)
    for attempt in range(attempts):
        if not root.exists():
            return
        try:
            shutil.rmtree(root)
            return
        except FileNotFoundError:
            return
        except OSError:
            # Windows keeps sqlite files locked for a moment after close.
            for current_root, _dirs, files in os.walk(root):
                for name in files:
                    try:
                        os.chmod(Path(current_root) / name, 0o600)
                    except OSError:
                        pass
            time.sleep(base_delay * (2**attempt))


@dataclass
class TempDbSandbox:
    """Throwaway folder under TEMP holding the sqlite file, XML artifacts and certificates."""

    prefix: str = "plataforma_fiscal_tests"
    db_name: str = "plataforma_fiscal_test.db"

    def __post_init__(self) -> None:
        folder = _TEMP_ROOT / f"{self.prefix}_{uuid.uuid4().hex}"
        folder.mkdir(parents=True, exist_ok=False)
        self.temp_dir = str(folder)
        self.db_path = str(folder / self.db_name)
        self.artifact_dir = str(folder / "artifacts")
        self.certificates_dir = str(folder / "certificates")
        assert_safe_temp_db_path(self.db_path)
        open_sqlite_temp_connection(self.db_path).close()

    def make_config(self, base_config, **overrides):
        attrs = {
            "DATABASE_DIR": self.temp_dir,
            "DB_PATH": self.db_path,
            "FISCAL_ARTIFACT_DIR": self.artifact_dir,
            "FISCAL_CERTIFICATES_DIR": self.certificates_dir,
            "FISCAL_SEFAZ_MODE": "simulator",
            "JOB_BACKOFF_JITTER_RATIO": 0.0,
        }
        attrs.update(overrides)
        return type("TempConfig", (base_config,), attrs)

    def cleanup(self) -> None:
        remove_tree_with_retry(self.temp_dir)
