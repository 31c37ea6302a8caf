#!/usr/bin/env python3
"""
migrate_db.py - Перенесення користувачів зі старого users.json у SQLite
=============================================================================

Перша версія бота зберігала користувачів у data/users.json
({"<telegram_id>": {"sign": ..., "timezone": ...}}). Скрипт створює/оновлює
схему БД (init_db) і переносить користувачів, якщо таблиця users порожня.

Використання:
    python migrate_db.py [--dry-run] [--verbose]

Параметри:
    --dry-run   - показує що буде перенесено, без реального запису
    --verbose   - детальний вивід

ВАЖЛИВО:
- Перед запуском зупиніть бота
- Створюється автоматичний бекап перед міграцією
=============================================================================
"""

import asyncio
import json
import os
import shutil
import sqlite3
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

SRC_DIR = Path(__file__).resolve().parent / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from database import init_db  # noqa: E402

TARGET_DB = Path(os.getenv("DB_PATH") or "db.sqlite")
USERS_JSON = Path(os.getenv("USERS_JSON") or "data/users.json")
BACKUP_DIR = Path(os.getenv("BACKUP_DIR") or str(TARGET_DB.parent))


class Colors:
    RED = '\033[0;31m'
    GREEN = '\033[0;32m'
    YELLOW = '\033[1;33m'
    BLUE = '\033[0;34m'
    NC = '\033[0m'  # No Color


def log_info(msg: str):
    print(f"{Colors.GREEN}✓{Colors.NC} {msg}")


def log_warning(msg: str):
    print(f"{Colors.YELLOW}⚠{Colors.NC} {msg}")


def log_error(msg: str):
    print(f"{Colors.RED}✗{Colors.NC} {msg}")


def log_action(msg: str):
    print(f"{Colors.BLUE}→{Colors.NC} {msg}")


@dataclass
class MigrationReport:
    migrated: int = 0
    skipped: int = 0
    reason: str | None = None


def _clean_text(value: Any) -> str | None:
    text = str(value or "").strip()
    return text or None


def parse_legacy_user(raw_id: str, data: Any) -> tuple[int, str | None, str | None] | None:
    """(telegram_id, sign, timezone) або None для невалідного id."""
    raw_id = str(raw_id).strip()
    if not raw_id.isdecimal() or int(raw_id) <= 0:
        return None
    if not isinstance(data, dict):
        data = {}
    return int(raw_id), _clean_text(data.get("sign")), _clean_text(data.get("timezone"))


class UsersJsonMigrator:
    def __init__(
        self,
        target_db: Path | None = None,
        users_json: Path | None = None,
        dry_run: bool = False,
        verbose: bool = False,
    ):
        self.target_db = Path(target_db or TARGET_DB)
        self.users_json = Path(users_json or USERS_JSON)
        self.dry_run = dry_run
        self.verbose = verbose

    def backup_database(self) -> Path | None:
        """Копія БД перед змінами."""
        if not self.target_db.exists():
            return None
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        backup_path = BACKUP_DIR / f"{self.target_db.stem}_backup_{timestamp}{self.target_db.suffix}"
        if self.dry_run:
            log_action(f"[DRY RUN] Створив би бекап: {backup_path}")
            return backup_path
        backup_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(self.target_db, backup_path)
        log_info(f"Бекап створено: {backup_path}")
        return backup_path

    def count_users(self) -> int:
        if not self.target_db.exists():
            return 0
        conn = sqlite3.connect(self.target_db)
        try:
            cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='users'")
            if cursor.fetchone() is None:
                return 0
            return int(conn.execute("SELECT COUNT(*) FROM users").fetchone()[0])
        finally:
            conn.close()

    def load_users(self) -> dict[str, Any]:
        with open(self.users_json, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"{self.users_json}: expected JSON object keyed by telegram id")
        return data

    def run(self) -> MigrationReport:
        report = MigrationReport()
        if not self.users_json.exists():
            log_info(f"{self.users_json} не знайдено, міграція не потрібна")
            report.reason = "no_source"
            return report

        if self.count_users() > 0:
            log_info("У БД вже є користувачі, міграція не потрібна")
            report.reason = "already_populated"
            return report

        users = self.load_users()
        self.backup_database()

        if not self.dry_run:
            asyncio.run(init_db(str(self.target_db)))

        rows: list[tuple[int, str | None, str | None, int]] = []
        for raw_id, data in users.items():
            parsed = parse_legacy_user(raw_id, data)
            if parsed is None:
                log_warning(f"Пропущено невалідний telegram_id: {raw_id!r}")
                report.skipped += 1
                continue
            telegram_id, sign, timezone = parsed
            if self.verbose:
                log_action(f"{telegram_id}: sign={sign} timezone={timezone}")
            rows.append((telegram_id, sign, timezone, 1 if sign else 0))

        if self.dry_run:
            report.migrated = len(rows)
            log_action(f"[DRY RUN] Переніс би {report.migrated} користувачів")
            return report

        conn = sqlite3.connect(self.target_db)
        try:
            with conn:
                for row in rows:
                    cursor = conn.execute(
                        """INSERT OR IGNORE INTO users(telegram_id, sign, timezone, onboarding_completed)
                           VALUES(?, ?, ?, ?)""",
                        row,
                    )
                    report.migrated += cursor.rowcount
        finally:
            conn.close()

        log_info(f"Міграція завершена: {report.migrated} перенесено, {report.skipped} пропущено")
        return report


def main():
    dry_run = "--dry-run" in sys.argv
    verbose = "--verbose" in sys.argv or "-v" in sys.argv

    migrator = UsersJsonMigrator(dry_run=dry_run, verbose=verbose)
    try:
        migrator.run()
    except (OSError, ValueError, sqlite3.Error) as exc:
        log_error(f"Міграція не вдалася: {exc}")
        sys.exit(1)
    sys.exit(0)


if __name__ == "__main__":
    main()
