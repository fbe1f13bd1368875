from __future__ import annotations

import re
from pathlib import Path

# Base directory; overridden by run_crawl.py from Config.data_sources_dir
OUTPUT_ROOT = Path("data") / "data_sources"


def set_output_root(root: Path) -> None:
    global OUTPUT_ROOT
    OUTPUT_ROOT = Path(root)


def sanitize_slug(slug: str) -> str:
    s = re.sub(r"[^A-Za-z0-9_.-]+", "-", (slug or "").strip()).strip("-.")
    return s or "unknown-source"


def ensure_source_dirs(slug: str, root: Path | None = None) -> dict[str, Path]:
    """
    Ensure output folders exist for a source slug.
    Returns a mapping for captures and logs.
    """
    base = Path(root or OUTPUT_ROOT) / sanitize_slug(slug)
    dirs = {
        "base": base,
        "captures": base / "captures",
        "logs": base / "logs",
    }
    for d in dirs.values():
        d.mkdir(parents=True, exist_ok=True)
    return dirs
