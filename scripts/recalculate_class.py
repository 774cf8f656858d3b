"""Recalculate every approved student's grades in one class.
Run from the repo root:

    python scripts/recalculate_class.py <class_id>

This uses the same DB configuration as the app (env vars / .env).
"""

import argparse
import os
import sys
import traceback

# Ensure we can import the app from the parent directory
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from app import create_app
from utils.grade_service import recalculate_class_grades
from utils.grading_errors import NotFoundError


def main(argv=None):
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("class_id", type=int)
    args = parser.parse_args(argv)

    app = create_app()
    try:
        with app.app_context():
            summary = recalculate_class_grades(args.class_id)
    except NotFoundError as e:
        print(str(e))
        return 1
    except Exception:
        print("Recalculation failed:")
        traceback.print_exc()
        return 2

    print(
        f"Class {summary['class_id']}: {len(summary['recalculated'])} recalculated, "
        f"{len(summary['skipped'])} skipped, {len(summary['failed'])} failed"
    )
    for failure in summary["failed"]:
        print(f"  student {failure['student_id']}: {failure['error']}")
    print("\nDone.")
    return 0 if not summary["failed"] else 3


if __name__ == "__main__":
    sys.exit(main())
