#!/usr/bin/env python3
"""
Migrate a legacy users.json to the current layout.

Legacy records carry a single `role` string and camelCase keys; the server
refuses to load them until this has been run.

Usage:
    python migrate_users.py [path/to/users.json] [--dry-run]
"""
import argparse
import shutil
import sys
from pathlib import Path

from dotenv import load_dotenv

from lunasphere.base_service import configure_logging
from lunasphere.storage.memory import USERS_FILE, read_json, write_json_atomic
from lunasphere.storage.migrations import migrate_user_documents


def main(argv=None) -> int:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Migrate legacy LunaSphere user records")
    parser.add_argument(
        "path",
        nargs="?",
        default=str(Path("data") / USERS_FILE),
        help="users.json to migrate (default: data/users.json)",
    )
    parser.add_argument("--dry-run", action="store_true", help="report only, write nothing")
    args = parser.parse_args(argv)
    configure_logging("INFO")

    path = Path(args.path)
    if not path.exists():
        print(f"No user file at {path}")
        return 1

    docs = read_json(path, [])
    migrated, changed = migrate_user_documents(docs)
    if not changed:
        print(f"{path}: all {len(docs)} user records are current")
        return 0

    print(f"{path}: {changed} of {len(docs)} user records need migration")
    if args.dry_run:
        return 0

    backup = path.with_name(path.name + ".bak")
    shutil.copy2(path, backup)
    write_json_atomic(path, migrated)
    print(f"Migrated {changed} records (backup at {backup})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
