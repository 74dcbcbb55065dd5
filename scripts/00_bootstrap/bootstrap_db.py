#!/usr/bin/env python3
"""Image index database bootstrapper

Creates or upgrades the database schema to the latest Alembic revision.

Defaults are safe:
- Uses Alembic migrations by default (no destructive operations)
- Accepts --db-url to override target DB (preferred over env var on Windows)
- Falls back to SQLAlchemy metadata create_all when the upgrade fails

Examples:
  python scripts/00_bootstrap/bootstrap_db.py --db-url sqlite:///./data/image_index.db

Optional:
  --use-metadata      Use SQLAlchemy Base.metadata.create_all instead of Alembic
  --echo              Enable SQL echo for troubleshooting
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy import create_engine  # noqa: E402

from db.models import Base  # noqa: E402
from db.session import DEFAULT_DB_URL, _normalize_sqlite_url  # noqa: E402


def _run_alembic_upgrade_head(db_url: str, project_root: Path) -> int:
    from alembic.config import Config
    from alembic import command

    ini_path = project_root / "alembic.ini"
    if not ini_path.is_file():
        print(f"[error] alembic.ini not found at {ini_path}")
        return 2

    cfg = Config(str(ini_path))
    # Ensure script location and URL are set correctly
    cfg.set_main_option("script_location", str(project_root / "alembic"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    print("Running Alembic upgrade to head...")
    try:
        command.upgrade(cfg, "head")
    except Exception as e:
        print(f"[warn] Alembic upgrade failed: {e}")
        return 2
    print("Alembic upgrade complete.")
    return 0


def _create_with_metadata(db_url: str, echo: bool = False) -> int:
    print("Creating tables via SQLAlchemy metadata (create_all)...")
    engine = create_engine(db_url, echo=echo, future=True)
    Base.metadata.create_all(bind=engine)
    engine.dispose()
    print("Metadata create_all complete.")
    return 0


def parse_args(argv: list[str]) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Bootstrap/upgrade the image index database schema")
    ap.add_argument("--db-url", dest="db_url", default=os.environ.get("IMGRECON_DB_URL", DEFAULT_DB_URL),
                    help="Target database URL (overrides env var IMGRECON_DB_URL)")
    ap.add_argument("--use-metadata", action="store_true",
                    help="Use SQLAlchemy Base.metadata.create_all instead of Alembic")
    ap.add_argument("--echo", action="store_true", help="Echo SQL statements (metadata mode)")
    return ap.parse_args(argv)


def main(argv: list[str]) -> int:
    args = parse_args(argv)
    # relative SQLite paths are anchored at the repo root (parent dir created)
    db_url = _normalize_sqlite_url(args.db_url)
    print(f"Target DB URL: {db_url}")

    if args.use_metadata:
        return _create_with_metadata(db_url, echo=args.echo)

    rc = _run_alembic_upgrade_head(db_url, ROOT)
    if rc != 0:
        print("[warn] Falling back to SQLAlchemy metadata create_all...")
        return _create_with_metadata(db_url, echo=args.echo)
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
