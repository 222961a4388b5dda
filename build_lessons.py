#!/usr/bin/env python3
"""
Build the lesson notebooks

Converts the percent-format scripts in lessons/ into Jupyter notebooks in
docs/, in schedule order, and writes docs/schedule.md.

Usage:
    python build_lessons.py
    python build_lessons.py --only 04_pseudobulk_DE_analysis
"""

import argparse

from pseudobulk_utils.config import PATHS
from pseudobulk_utils.notebooks import build_lessons

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Build lesson notebooks from percent scripts")
    parser.add_argument(
        "--lessons-dir",
        default=PATHS["lessons_dir"],
        help=f"Directory of lesson scripts (default: '{PATHS['lessons_dir']}')",
    )
    parser.add_argument(
        "--docs-dir",
        default=PATHS["docs_dir"],
        help=f"Output directory for notebooks (default: '{PATHS['docs_dir']}')",
    )
    parser.add_argument(
        "--only",
        nargs="+",
        help="Build only these lessons (schedule.md is still written)",
    )
    args = parser.parse_args()

    written = build_lessons(args.lessons_dir, args.docs_dir, only=args.only)
    print(f"✓ Built {len(written)} notebooks")
