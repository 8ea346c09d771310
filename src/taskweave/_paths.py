"""Glob matching on base-relative posix paths.

Patterns follow the conventions of build tool globs: `**` spans any number
of directories, `*` and `?` stay within one path segment, and a leading `!`
excludes matches of an earlier pattern.
"""

from __future__ import annotations

import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Iterator, Sequence


@lru_cache(maxsize=256)
def _compile_pattern(pattern: str) -> re.Pattern[str]:
    parts: list[str] = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            parts.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif pattern[i] == "*":
            parts.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            parts.append("[^/]")
            i += 1
        else:
            parts.append(re.escape(pattern[i]))
            i += 1
    return re.compile("".join(parts) + r"\Z")


def glob_match(relpath: str, pattern: str) -> bool:
    """Match a base-relative posix path against a single glob pattern."""
    if pattern.startswith("./"):
        pattern = pattern[2:]
    return _compile_pattern(pattern).match(relpath) is not None


def matches_any(relpath: str, patterns: Sequence[str]) -> bool:
    """Apply include patterns and `!` exclusions in order; last match wins."""
    matched = False
    for pattern in patterns:
        if pattern.startswith("!"):
            if matched and glob_match(relpath, pattern[1:]):
                matched = False
        elif not matched and glob_match(relpath, pattern):
            matched = True
    return matched


def iter_files(base: Path, patterns: Sequence[str]) -> Iterator[Path]:
    """Yield files below `base` matching `patterns`, in sorted order."""
    for dirpath, dirnames, filenames in os.walk(base):
        dirnames.sort()
        for filename in sorted(filenames):
            path = Path(dirpath) / filename
            if matches_any(path.relative_to(base).as_posix(), patterns):
                yield path
