from __future__ import annotations

import logging
import shutil
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union


logger = logging.getLogger(__name__)

ASSET_DIRECTORIES = ("fonts", "css", "js", "images", "media", "docs")
QUERY_DELIMITER = "?"


@dataclass
class SanitizeResult:
    fixed: int = 0
    files: List[str] = field(default_factory=list)


def sanitize_assets(html_dir: Union[str, Path]) -> SanitizeResult:
    """Give query-suffixed assets a plain twin a static server can find.

    ``css/site.css?v=3`` gets copied to ``css/site.css``. The original stays in
    place and an existing clean file is never overwritten, so a second pass
    over the same directory is a no-op.
    """
    root = Path(html_dir)
    result = SanitizeResult()

    for dir_name in ASSET_DIRECTORIES:
        dir_path = root / dir_name
        if not dir_path.is_dir():
            continue
        try:
            entries = sorted(dir_path.iterdir())
        except OSError as exc:
            logger.warning("Cannot list %s: %s", dir_path, exc)
            continue

        for source in entries:
            if QUERY_DELIMITER not in source.name:
                continue
            clean_name = source.name.split(QUERY_DELIMITER, 1)[0]
            if not clean_name:
                continue
            target = dir_path / clean_name
            try:
                if target.exists() or not source.is_file():
                    continue
                shutil.copy2(source, target)
            except OSError as exc:
                logger.warning("Could not sanitize %s: %s", source, exc)
                continue
            result.fixed += 1
            result.files.append(f"{dir_name}/{clean_name}")

    return result


def flatten_directory(output_dir: Union[str, Path]) -> bool:
    root = Path(output_dir)
    try:
        subdirs = [p for p in root.iterdir() if p.is_dir()]
        if len(subdirs) != 1:
            return False
        nested = subdirs[0]
        leftovers = 0
        for item in list(nested.iterdir()):
            dest = root / item.name
            if dest.exists():
                leftovers += 1
                logger.warning("Not flattening %s: %s already exists", item, dest)
                continue
            shutil.move(str(item), str(dest))
        if leftovers:
            return True
        shutil.rmtree(nested)
        return True
    except OSError as exc:
        # keep whatever layout is on disk
        logger.error("Error flattening %s: %s", root, exc)
        return False


def find_html_dir(output_dir: Union[str, Path], index_name: str = "index.html") -> Optional[Path]:
    root = Path(output_dir)
    if not root.is_dir():
        return None
    queue: deque[Path] = deque([root])
    while queue:
        current = queue.popleft()
        try:
            entries = sorted(current.iterdir())
        except OSError:
            continue
        if any(e.name == index_name and e.is_file() for e in entries):
            return current
        queue.extend(e for e in entries if e.is_dir())
    return None
