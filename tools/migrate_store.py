"""
Migrate the stored legacy blob into the normalized entity-table shape.

Default mode is dry-run. `--restore` writes a pre-migration backup back as the
live blob (legacy shape).
"""
import argparse
import json
from collections import Counter
from pathlib import Path
from typing import Iterable, Optional

import sys

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from core.exceptions import MigrationError, StorageError  # noqa: E402
from core.normalization import (  # noqa: E402
    SHAPE_NORMALIZED,
    decode_payload,
    detect_shape,
    encode_payload,
    restore_backup,
    validate_normalized,
)
from core.storage import JsonFileStore  # noqa: E402
from core.utils import utc_now  # noqa: E402


def _print_counter(label: str, values: Iterable[str]) -> None:
    counter = Counter(values)
    if not counter:
        print(f"{label}: none")
        return
    print(f"{label}:")
    for key, count in sorted(counter.items(), key=lambda x: x[0]):
        print(f"  - {key}: {count}")


def migrate(store: JsonFileStore, apply: bool = False) -> int:
    try:
        payload = store.read()
    except StorageError as e:
        print(f"[error] {e.get_user_message()}")
        return 1
    if payload is None:
        print(f"[skip] no data at {store.path}")
        return 0

    source_shape = detect_shape(payload)
    print("=== Store Migration Report ===")
    print(f"path: {store.path}")
    print(f"stored shape: {source_shape}")

    if source_shape == SHAPE_NORMALIZED:
        errors = validate_normalized(payload)
        if not errors:
            print("already normalized, nothing to do")
            return 0
        print(f"normalized blob failed validation ({len(errors)} error(s)):")
        for err in errors[:10]:
            print(f"  - {err}")
        return 1

    now = utc_now()
    decoded = decode_payload(payload, now)
    data = decoded.data
    print(f"goals: {len(data.goals)}")
    print(f"tasks: {len(data.all_tasks())}")
    print(f"ideas: {len(data.ideas)}")
    print(f"sessions in history: {len(data.session_history)}")
    _print_counter("goal types", [g.type.value for g in data.goals])
    _print_counter("task statuses", [t.status.value for t in data.all_tasks()])

    migration = decoded.migration
    if migration is None or not migration.success:
        errors = migration.errors if migration else decoded.errors
        print(f"migration refused ({len(errors)} error(s)):")
        for err in errors[:10]:
            print(f"  - {err}")
        return 1

    if not apply:
        print("\n[dry-run] no files changed")
        return 0

    store.write_backup(migration.backup, "pre_migration", now)
    store.write(encode_payload(data, SHAPE_NORMALIZED))
    print(f"[done] store migrated: {store.path}")
    return 0


def restore(store: JsonFileStore, backup_path: Path) -> int:
    try:
        with open(backup_path, "r", encoding="utf-8") as f:
            legacy = restore_backup(json.load(f))
    except (OSError, json.JSONDecodeError) as e:
        print(f"[error] cannot read {backup_path}: {e}")
        return 1
    except MigrationError as e:
        print(f"[error] {e.get_user_message()}")
        return 1

    saved = store.backup("before_restore")
    if saved:
        print(f"[backup] {saved}")
    store.write(legacy)
    print(f"[done] restored legacy data into {store.path}")
    return 0


def main(argv: Optional[list] = None) -> None:
    parser = argparse.ArgumentParser(description="Migrate the Finish OS data blob to the normalized shape.")
    parser.add_argument(
        "--apply",
        action="store_true",
        help="apply migration changes (default is dry-run)",
    )
    parser.add_argument(
        "--path",
        type=Path,
        default=None,
        help="data file (default: <data dir>/finish_os_data.json)",
    )
    parser.add_argument(
        "--restore",
        type=Path,
        default=None,
        metavar="BACKUP",
        help="restore a pre-migration backup file as the live blob",
    )
    args = parser.parse_args(argv)
    store = JsonFileStore(args.path)
    if args.restore is not None:
        raise SystemExit(restore(store, args.restore))
    raise SystemExit(migrate(store, apply=args.apply))


if __name__ == "__main__":
    main()
