"""Decide whether a change touches the files that define the cached state's layout."""

from __future__ import annotations

import fnmatch
import os
import subprocess
import typing as t
from pathlib import Path

DEFAULT_WATCHED_PATHS: tuple[str, ...] = (
    "zebra-state/**/disk_format.rs",
    "zebra-state/**/disk_db.rs",
    "zebra-state/**/finalized_state.rs",
    "zebra-state/**/constants.rs",
)


def _normalize(path: str) -> str:
    return path.strip().replace("\\", "/").lstrip("/")


def path_is_watched(path: str, watched: t.Iterable[str]) -> bool:
    candidate = _normalize(path)
    for pattern in watched:
        normalized = _normalize(pattern)
        if candidate == normalized:
            return True
        if not any(ch in normalized for ch in "*?["):
            continue
        # "**/" may also match zero directories.
        variants = {normalized, normalized.replace("/**/", "/")}
        if normalized.startswith("**/"):
            variants.add(normalized[3:])
        if any(fnmatch.fnmatchcase(candidate, variant) for variant in variants):
            return True
    return False


def should_regenerate(
    changed_paths: t.Iterable[str],
    watched_paths: t.Iterable[str] = DEFAULT_WATCHED_PATHS,
    *,
    override: bool = False,
) -> bool:
    if override:
        return True
    watched = tuple(watched_paths)
    return any(path_is_watched(path, watched) for path in changed_paths)


def changed_paths_between(base: str, head: str, repo_root: Path | str = ".") -> list[str]:
    env = dict(os.environ)
    env.setdefault("LC_ALL", "C")
    completed = subprocess.run(
        ["git", "diff", "--name-only", "-z", base, head],
        cwd=str(repo_root),
        env=env,
        check=False,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
    if completed.returncode != 0:
        raise RuntimeError(
            f"git diff {base} {head} failed: "
            f"{completed.stderr.strip() or f'exit code {completed.returncode}'}"
        )
    return [entry for entry in completed.stdout.split("\0") if entry]
