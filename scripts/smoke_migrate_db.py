#!/usr/bin/env python3
"""
Smoke test for the users.json -> SQLite migration (`migrate_db.py`).

Goal:
- dry run reports what would move and writes nothing;
- a real run creates the schema and copies valid users only;
- a second run is a no-op once users exist;
- a missing users.json is not an error.

Run:
  python3 scripts/smoke_migrate_db.py
"""

from __future__ import annotations

import json
import os
import shutil
import sqlite3
import sys
import tempfile
from pathlib import Path


def _resolve_repo_root() -> Path:
    candidates: list[Path] = []
    try:
        candidates.append(Path(__file__).resolve().parents[1])
    except Exception:
        pass
    candidates.extend([Path.cwd(), Path("/app"), Path("/workspace")])
    for root in candidates:
        if (root / "pyproject.toml").exists() and (root / "migrate_db.py").exists():
            return root
    raise FileNotFoundError("Cannot locate repo root with pyproject.toml and migrate_db.py")


REPO_ROOT = _resolve_repo_root()


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


def _run_checks(tmpdir: Path) -> None:
    import migrate_db  # noqa: WPS433

    db_path = tmpdir / "db.sqlite"
    users_json = tmpdir / "users.json"
    users_json.write_text(
        json.dumps(
            {
                "100": {"sign": "aries", "timezone": "Europe/Moscow", "dailyIndex": 3},
                "200": "unexpected",
                "abc": {"sign": "leo"},
                "-3": {},
                "300": {"sign": "", "timezone": None},
            },
            ensure_ascii=False,
        ),
        encoding="utf-8",
    )

    # Missing source file.
    missing = migrate_db.UsersJsonMigrator(target_db=db_path, users_json=tmpdir / "absent.json").run()
    _assert(missing.reason == "no_source" and missing.migrated == 0, f"unexpected report {missing}")

    # Dry run: counts only, no DB file.
    dry = migrate_db.UsersJsonMigrator(target_db=db_path, users_json=users_json, dry_run=True).run()
    _assert(dry.migrated == 3 and dry.skipped == 2, f"unexpected dry-run report {dry}")
    _assert(not db_path.exists(), "dry run must not create the database")

    # Real run.
    report = migrate_db.UsersJsonMigrator(target_db=db_path, users_json=users_json).run()
    _assert(report.migrated == 3 and report.skipped == 2, f"unexpected report {report}")
    conn = sqlite3.connect(db_path)
    try:
        rows = conn.execute(
            "SELECT telegram_id, sign, timezone, onboarding_completed FROM users ORDER BY telegram_id"
        ).fetchall()
        tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    finally:
        conn.close()
    _assert(
        rows == [
            (100, "aries", "Europe/Moscow", 1),
            (200, None, None, 0),
            (300, None, None, 0),
        ],
        f"unexpected users: {rows}",
    )
    _assert({"users", "payments", "subscriptions"} <= tables, f"schema must be created: {tables}")

    # Second run is a no-op.
    again = migrate_db.UsersJsonMigrator(target_db=db_path, users_json=users_json).run()
    _assert(again.reason == "already_populated" and again.migrated == 0, f"unexpected report {again}")
    backups = list(tmpdir.glob("db_backup_*.sqlite"))
    _assert(backups == [], "no backup expected when migration is skipped")


def main() -> None:
    tmpdir = Path(tempfile.mkdtemp(prefix="migrate-db-smoke-"))
    try:
        os.environ["BACKUP_DIR"] = str(tmpdir)
        os.environ.setdefault("BOT_TOKEN", "smoke-test-token")
        if str(REPO_ROOT) not in sys.path:
            sys.path.insert(0, str(REPO_ROOT))
        _run_checks(tmpdir)
        print("OK: migrate_db smoke test passed.")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


if __name__ == "__main__":
    main()
