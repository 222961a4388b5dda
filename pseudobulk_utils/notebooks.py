#!/usr/bin/env python3
"""
Lesson notebook builder

Lessons are written as percent-format Python scripts (``# %%`` code cells,
``# %% [markdown]`` prose cells) and converted to Jupyter notebooks in
schedule order.
"""

import json
import platform
from pathlib import Path

from pseudobulk_utils.config import LESSON_SCHEDULE, PATHS, SITE

CELL_MARKER = "# %%"
MARKDOWN_MARKER = "# %% [markdown]"


def create_cell(cell_type, source, metadata=None):
    """Create a notebook cell"""
    cell = {
        "cell_type": cell_type,
        "metadata": metadata or {},
        "source": source if isinstance(source, list) else [source]
    }
    if cell_type == "code":
        cell["execution_count"] = None
        cell["outputs"] = []
    return cell


def create_notebook_metadata():
    """Standard notebook metadata"""
    return {
        "kernelspec": {
            "display_name": "Python 3",
            "language": "python",
            "name": "python3"
        },
        "language_info": {
            "codemirror_mode": {"name": "ipython", "version": 3},
            "file_extension": ".py",
            "mimetype": "text/x-python",
            "name": "python",
            "version": platform.python_version()
        }
    }


def load_notebook(path):
    """Load a notebook file"""
    with open(path) as f:
        return json.load(f)


def save_notebook(nb, path):
    """Save a notebook file"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w') as f:
        json.dump(nb, f, indent=1, ensure_ascii=False)
        f.write("\n")


def _strip_blank_edges(lines):
    while lines and not lines[0].strip():
        lines.pop(0)
    while lines and not lines[-1].strip():
        lines.pop()
    return lines


def _uncomment_markdown(line):
    if line.startswith("# "):
        return line[2:]
    if line.rstrip() == "#":
        return ""
    return line


def _to_source(lines):
    # nbformat stores source as lines with trailing newlines except the last
    return [line + "\n" for line in lines[:-1]] + lines[-1:]


def parse_percent_script(text):
    """Split a percent-format script into notebook cells

    Args:
        text: Contents of a lesson script

    Returns:
        List of notebook cell dicts, in file order. Empty cells are dropped.
    """
    cells = []
    cell_type, lines = "code", []

    def flush():
        body = _strip_blank_edges(list(lines))
        if not body:
            return
        if cell_type == "markdown":
            body = [_uncomment_markdown(line) for line in body]
        cells.append(create_cell(cell_type, _to_source(body)))

    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith(CELL_MARKER):
            flush()
            cell_type = "markdown" if stripped.startswith(MARKDOWN_MARKER) else "code"
            lines = []
        else:
            lines.append(line.rstrip())
    flush()

    return cells


def script_to_notebook(script_path):
    """Convert one lesson script into a notebook dict"""
    script_path = Path(script_path)
    if not script_path.exists():
        raise FileNotFoundError(f"Lesson script not found: {script_path}")

    cells = parse_percent_script(script_path.read_text(encoding="utf-8"))
    return {
        "cells": cells,
        "metadata": create_notebook_metadata(),
        "nbformat": 4,
        "nbformat_minor": 4,
    }


def schedule_lessons(schedule=LESSON_SCHEDULE):
    """Flatten the schedule into lesson names in sidebar order"""
    return [lesson for _, lessons in schedule for lesson in lessons]


def notebook_title(nb, default):
    """First markdown heading of a notebook, or default"""
    for cell in nb["cells"]:
        if cell["cell_type"] != "markdown":
            continue
        for line in cell["source"]:
            if line.startswith("#"):
                return line.lstrip("#").strip()
    return default


def render_schedule(titles, schedule=LESSON_SCHEDULE, title=SITE["title"], footer=SITE["footer"]):
    """Markdown page listing lessons by schedule section

    Args:
        titles: Mapping of lesson name to display title
        schedule: List of (section, lessons) pairs
        title: Page heading
        footer: Text appended after the schedule

    Returns:
        Markdown string
    """
    lines = [f"# {title}", ""]
    for section, lessons in schedule:
        lines.append(f"## {section}")
        lines.append("")
        for lesson in lessons:
            lines.append(f"- [{titles.get(lesson, lesson)}]({lesson}.ipynb)")
        lines.append("")
    lines.extend(["---", "", footer, ""])
    return "\n".join(lines)


def build_lessons(lessons_dir=PATHS["lessons_dir"], docs_dir=PATHS["docs_dir"],
                  schedule=LESSON_SCHEDULE, only=None):
    """Write every scheduled lesson as a notebook plus schedule.md

    Args:
        lessons_dir: Directory of percent-format lesson scripts
        docs_dir: Output directory for notebooks
        schedule: List of (section, lessons) pairs
        only: Optional list of lesson names to build

    Returns:
        List of written notebook paths, in schedule order
    """
    lessons_dir = Path(lessons_dir)
    docs_dir = Path(docs_dir)
    scheduled = schedule_lessons(schedule)

    if only:
        unknown = [name for name in only if name not in scheduled]
        if unknown:
            raise FileNotFoundError(f"Lessons not in the schedule: {unknown}")

    print(f"Building lessons from {lessons_dir}/ into {docs_dir}/")
    print("=" * 60)

    written = []
    titles = {}
    for lesson in scheduled:
        nb = script_to_notebook(lessons_dir / f"{lesson}.py")
        titles[lesson] = notebook_title(nb, lesson)
        if only and lesson not in only:
            continue
        out_path = docs_dir / f"{lesson}.ipynb"
        save_notebook(nb, out_path)
        written.append(out_path)
        print(f"  ✓ {out_path} ({len(nb['cells'])} cells)")

    schedule_path = docs_dir / "schedule.md"
    schedule_path.parent.mkdir(parents=True, exist_ok=True)
    schedule_path.write_text(render_schedule(titles, schedule), encoding="utf-8")
    print(f"  ✓ {schedule_path}")
    print("=" * 60)

    return written
