"""CLI script to import question-bank files into the backend DB.
Usage: python scripts/import_questions.py FILE [FILE ...] [--dry-run] [--no-dedupe]
"""
import sys
import argparse
import pathlib
from typing import List
# Ensure `backend/` is on sys.path so `examengine` imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from examengine.database import engine, create_db_and_tables
from examengine import services


def main(paths: List[pathlib.Path], dry_run: bool = False, deduplicate: bool = True) -> int:
    """Import each file and print a short summary per file.

    Returns the number of files that could not be imported.
    """
    create_db_and_tables()
    failures = 0
    total_created = 0
    total_skipped = 0
    with Session(engine) as session:
        svc = services.ImportService(session)
        for f in paths:
            try:
                result = svc.import_file(f.read_bytes(), f.name, deduplicate=deduplicate, dry_run=dry_run)
            except (OSError, ValueError) as e:
                failures += 1
                print(f'Error importing {f}: {e}')
                continue
            total_created += result['created']
            total_skipped += result['skipped']
            print(f"Imported {f}: created {result['created']}, skipped {result['skipped']}, errors {len(result['errors'])}")
    print(f'Total created questions: {total_created}, skipped {total_skipped}')
    return failures


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('files', nargs='+', type=pathlib.Path, help='JSON, CSV or TXT question banks')
    parser.add_argument('--dry-run', action='store_true', help='Parse and validate without writing')
    parser.add_argument('--no-dedupe', action='store_true', help='Import questions even if the same text exists')
    args = parser.parse_args()
    sys.exit(1 if main(args.files, dry_run=args.dry_run, deduplicate=not args.no_dedupe) else 0)
