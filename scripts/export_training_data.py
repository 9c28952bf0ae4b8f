#!/usr/bin/env python3
"""Exports the personalized training corpus as JSON lines for offline model training."""

from __future__ import annotations

import argparse
import json
from dataclasses import asdict
from pathlib import Path
import sys

from dotenv import load_dotenv

from personal_shopper_store.config import StoreConfig
from personal_shopper_store.db import open_store
from personal_shopper_store.training import TrainingCorpus


ROOT_DIR = Path(__file__).resolve().parents[1]


def export_corpus(corpus: TrainingCorpus, output: Path) -> int:
    output.parent.mkdir(parents=True, exist_ok=True)
    written = 0
    with output.open("w", encoding="utf-8") as handle:
        for interaction in corpus.export():
            handle.write(json.dumps(asdict(interaction), ensure_ascii=False))
            handle.write("\n")
            written += 1
    return written


def main() -> int:
    load_dotenv(ROOT_DIR / ".env")

    parser = argparse.ArgumentParser(description="Export personalized interactions from the local store.")
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Database file to read (defaults to the configured storage path).",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=ROOT_DIR / "data" / "training_export.jsonl",
        help="Where to write the JSON lines export.",
    )
    args = parser.parse_args()

    config = StoreConfig.from_env()
    db_path = args.db.expanduser().resolve() if args.db else config.resolve_db_path()
    if not db_path.exists():
        print(f"No database found at {db_path}", file=sys.stderr)
        return 1

    db = open_store(db_path, timeout_seconds=config.db_timeout_seconds, wal_enabled=config.wal_enabled)
    written = export_corpus(TrainingCorpus(db), args.output)

    print("Training Export")
    print(f"database: {db_path}")
    print(f"interactions: {written}")
    print(f"saved: {args.output}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
