"""Maintenance commands for mailindex.

This module contains commands besides count:
- index: Add new messages under the mail directory to the index
- config: Read and edit the YAML config file

Indexing is safe to re-run: files already indexed are skipped.
"""

import sys
import time
from pathlib import Path
from typing import Iterator, List

from mailindex.config import get_config_value, set_config_value
from mailindex.database import DatabaseMode, IndexDatabase
from mailindex.errors import StoreOpenError
from mailindex.parser import EmailParser

# Maildir scratch directory; files there are still being delivered
MAILDIR_TMP = "tmp"


def iter_mail_files(root: Path) -> Iterator[Path]:
    """Yield message files under root in a stable order.

    Hidden files and directories (including the index directory) and
    Maildir tmp/ directories are skipped.
    """
    for path in sorted(root.iterdir()):
        if path.name.startswith("."):
            continue
        if path.is_dir():
            if path.name == MAILDIR_TMP:
                continue
            yield from iter_mail_files(path)
        elif path.is_file():
            yield path


def cmd_index(database_path: Path, new_tags: List[str], verbose: bool = False) -> None:
    """Index new messages under database_path.

    Creates the index on first use.

    Args:
        database_path: Mail root directory
        new_tags: Tags applied to newly added messages
        verbose: Print one line per file to stderr
    """
    if not database_path.is_dir():
        raise StoreOpenError(f"Database path does not exist: {database_path}")

    print("\n" + "=" * 50)
    print("mailindex - Index")
    print("=" * 50 + "\n")

    index_file = IndexDatabase.index_path(database_path)
    if index_file.exists():
        db = IndexDatabase.open(database_path, DatabaseMode.READ_WRITE)
    else:
        print(f"Creating new index: {index_file}")
        db = IndexDatabase.create(database_path)

    with db:
        t0 = time.time()
        print("Finding new messages...", end="", flush=True)
        indexed = db.get_indexed_filenames()
        files = []
        for path in iter_mail_files(database_path):
            rel_path = path.relative_to(database_path).as_posix()
            if rel_path not in indexed:
                files.append((path, rel_path))
        print(f" {len(files)} new files ({time.time()-t0:.1f}s)")
        if indexed:
            print(f"  (skipping {len(indexed)} already-indexed)")

        added = 0
        duplicates = 0
        errors = 0
        for i, (path, rel_path) in enumerate(files, 1):
            try:
                parsed = EmailParser.parse_file(path)
            except OSError as e:
                errors += 1
                print(f"\n  Error reading {rel_path}: {e}", file=sys.stderr)
                continue

            if db.add_message(rel_path, parsed, new_tags):
                added += 1
            else:
                duplicates += 1

            if verbose:
                print(f"[verbose] {rel_path}: {parsed['message_id']}", file=sys.stderr, flush=True)
            elif i % 1000 == 0:
                print(f"  Processed {i}/{len(files)}...", flush=True)

        db.commit()

    print("\n" + "-" * 50)
    print("Index Complete!")
    print(f"  Added: {added} messages")
    if duplicates:
        print(f"  Duplicate copies: {duplicates}")
    if errors:
        print(f"  Errors: {errors}")
    print(f"  Time: {time.time()-t0:.1f}s")
    print("-" * 50 + "\n")


def cmd_config_get(config: dict, key: str) -> None:
    """Print a config value; list values are printed one per line."""
    value = get_config_value(config, key)
    if isinstance(value, list):
        for item in value:
            print(item)
    elif isinstance(value, dict):
        for sub_key in value:
            print(f"{key}.{sub_key}")
    else:
        print(value)


def cmd_config_set(config_path: Path, key: str, values: List[str]) -> None:
    """Set a config value in config_path, creating the file if needed."""
    created = not config_path.exists()
    set_config_value(config_path, key, values)
    if created:
        print(f"Created {config_path}")
