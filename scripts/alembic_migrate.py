#!/usr/bin/env python3
"""Alembic Database Migration Helper.

Runs Alembic migrations for the off-ramp ledger, copying the SQLite
database aside before anything that changes the schema.

Usage:
    python scripts/alembic_migrate.py upgrade head    # Upgrade to latest
    python scripts/alembic_migrate.py downgrade -1    # Downgrade one version
    python scripts/alembic_migrate.py history         # Show migration history
    python scripts/alembic_migrate.py current         # Show current version
    python scripts/alembic_migrate.py generate "Add new column"  # Generate new migration
"""

import shutil
import subprocess
import sys
from datetime import datetime
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from dotenv import load_dotenv

from offramp.config import get_settings

load_dotenv(PROJECT_ROOT / ".env")

BACKUP_DIR = PROJECT_ROOT / "data" / "backups"


def run_alembic(*args):
    """Run an alembic command."""
    cmd = ["alembic"] + list(args)
    print(f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, cwd=PROJECT_ROOT)
    return result.returncode


def sqlite_path():
    """Database file for sqlite URLs, None for anything else."""
    url = get_settings().database_url
    if not url.startswith("sqlite"):
        return None
    path = Path(url.split(":///", 1)[1])
    return path if path.is_absolute() else PROJECT_ROOT / path


def backup_before_migration():
    """Copy the SQLite database (and its WAL/SHM files) into data/backups."""
    db_path = sqlite_path()
    if db_path is None or not db_path.exists():
        return None

    BACKUP_DIR.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    backup_path = BACKUP_DIR / f"pre_migration_{timestamp}.db"
    shutil.copy2(db_path, backup_path)

    for ext in ["-wal", "-shm"]:
        journal = Path(str(db_path) + ext)
        if journal.exists():
            shutil.copy2(journal, backup_path.with_suffix(f".db{ext}"))

    return backup_path


def main():
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)

    command = sys.argv[1]
    args = sys.argv[2:]

    if command in ("upgrade", "downgrade"):
        print(f"Creating backup before {command}...")
        backup_path = backup_before_migration()
        if backup_path:
            print(f"Backup created: {backup_path}")
        else:
            print("No SQLite database to back up")

        default = "head" if command == "upgrade" else "-1"
        return run_alembic(command, args[0] if args else default)

    elif command == "history":
        return run_alembic("history", "--verbose")

    elif command == "generate":
        if not args:
            print("Usage: alembic_migrate.py generate 'Migration message'")
            sys.exit(1)
        return run_alembic("revision", "--autogenerate", "-m", " ".join(args))

    else:
        # Pass through to alembic
        return run_alembic(command, *args)


if __name__ == "__main__":
    sys.exit(main() or 0)
