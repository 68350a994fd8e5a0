"""CLI script to create draft assessment definitions from question files.

Usage: python scripts/import_questions.py --author USERNAME --lesson 12 --modality mcq FILE [FILE ...]

Each file becomes one draft definition titled after the file name. Drafts
still have to be submitted for review and approved before students see them.
"""
import sys
import argparse
import pathlib
from typing import List
# Ensure `backend/` is on sys.path so `gradeflow` imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from gradeflow.database import engine, create_db_and_tables
from gradeflow import repositories, services
from gradeflow.questions import Modality


def main(author: str, lesson_ref: int, modality: Modality, files: List[pathlib.Path], time_limit_minutes=None) -> int:
    """Import each file; returns the number of drafts created."""
    create_db_and_tables()
    created = 0
    with Session(engine) as session:
        user = repositories.UserRepository(session).get_by_username(author)
        if user is None:
            print(f'Unknown author {author!r}')
            return 0
        svc = services.DefinitionService(session)
        for f in files:
            try:
                result, report = svc.create_from_file(
                    user.as_caller(), lesson_ref, f.stem, modality, f.read_bytes(), f.name, time_limit_minutes
                )
            except (OSError, ValueError) as e:
                print(f'Error importing {f}: {e}')
                continue
            if not result.ok:
                print(f'Skipped {f}: {result.error.message}')
                for err in report['errors']:
                    print(f"  question {err['index'] + 1}: {err['error']}")
                continue
            created += 1
            print(f"Imported {f}: definition {result.value.id} with {len(report['questions'])} questions")
    print(f'Total drafts created: {created}')
    return created


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('--author', required=True, help='Username of the teacher who owns the drafts')
    parser.add_argument('--lesson', type=int, required=True, help='Lesson reference the assessments belong to')
    parser.add_argument('--modality', choices=[m.value for m in Modality], required=True)
    parser.add_argument('--time-limit', type=int, default=None, help='Minutes (free-response only)')
    parser.add_argument('files', nargs='+', type=pathlib.Path)
    args = parser.parse_args()
    main(args.author, args.lesson, Modality(args.modality), args.files, args.time_limit)
