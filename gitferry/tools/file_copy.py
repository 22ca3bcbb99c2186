"""File placement between the source clone and the target checkout.

Copies are overrides, not merges: when a selected entry already exists at
the destination it is removed before the new copy is written. Git metadata
directories are never copied. These functions are synchronous and are run
in a worker thread by the pipeline.
"""

from __future__ import annotations

import fnmatch
import glob
import logging
import os
import shutil

from pydantic import BaseModel, Field

from gitferry.errors import IntegrationError, NotFoundError
from gitferry.schemas import CopyMode
from gitferry.tools.sanitize import sanitize_file_path


logger = logging.getLogger(__name__)

ALWAYS_SKIPPED = (".git",)
_GLOB_CHARS = ("*", "?", "[")


class CopyResult(BaseModel):
    """Counts of what a copy wrote."""
    files_copied: int = 0
    directories_copied: int = 0
    entries: list[str] = Field(default_factory=list, description="Destination paths, relative")

    def merge(self, other: "CopyResult") -> None:
        self.files_copied += other.files_copied
        self.directories_copied += other.directories_copied
        self.entries.extend(other.entries)


def select_patterns(copy_mode: CopyMode, files: list[str], include_folders: list[str]) -> list[str]:
    """Which configured entries drive the copy for a given mode."""
    if copy_mode == CopyMode.FILES:
        patterns = list(files)
    elif copy_mode == CopyMode.FOLDERS:
        patterns = list(include_folders)
    else:
        patterns = list(files) + list(include_folders)
    return [pattern.strip() for pattern in patterns if pattern and pattern.strip()]


def is_excluded(relative_path: str, exclude_patterns: list[str] | tuple[str, ...]) -> bool:
    """Match a relative path (or any of its components) against exclusion globs."""
    relative_path = relative_path.replace(os.sep, "/")
    parts = relative_path.split("/")
    if any(part in ALWAYS_SKIPPED for part in parts):
        return True
    for pattern in exclude_patterns:
        if fnmatch.fnmatch(relative_path, pattern):
            return True
        if any(fnmatch.fnmatch(part, pattern) for part in parts):
            return True
    return False


def _remove(path: str) -> None:
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    else:
        os.remove(path)


def _copy_tree(
    source: str,
    destination: str,
    source_root: str,
    exclude_patterns: list[str],
) -> CopyResult:
    result = CopyResult()
    os.makedirs(destination, exist_ok=True)
    result.directories_copied += 1

    for dirpath, dirnames, filenames in os.walk(source):
        rel_dir = os.path.relpath(dirpath, source)
        # prune in place so os.walk skips excluded directories
        dirnames[:] = [
            name
            for name in sorted(dirnames)
            if not is_excluded(os.path.relpath(os.path.join(dirpath, name), source_root), exclude_patterns)
        ]
        for name in dirnames:
            os.makedirs(os.path.normpath(os.path.join(destination, rel_dir, name)), exist_ok=True)
            result.directories_copied += 1

        for name in sorted(filenames):
            src_file = os.path.join(dirpath, name)
            if is_excluded(os.path.relpath(src_file, source_root), exclude_patterns):
                continue
            dest_file = os.path.normpath(os.path.join(destination, rel_dir, name))
            shutil.copy2(src_file, dest_file, follow_symlinks=False)
            result.files_copied += 1
    return result


def _expand(source_root: str, pattern: str) -> list[str]:
    if any(char in pattern for char in _GLOB_CHARS):
        matches = sorted(glob.glob(os.path.join(source_root, pattern), recursive=True))
        return [sanitize_file_path(source_root, os.path.relpath(m, source_root)) for m in matches]
    return [sanitize_file_path(source_root, pattern)]


def copy_selection(
    source_root: str,
    destination_root: str,
    patterns: list[str],
    preserve_folder_structure: bool = True,
    exclude_patterns: list[str] | None = None,
) -> CopyResult:
    """Copy the selected entries of ``source_root`` into ``destination_root``.

    Args:
        source_root: Directory the patterns are relative to
        destination_root: Directory the entries are written under
        patterns: Relative file or folder paths (globs allowed); empty copies everything
        preserve_folder_structure: Keep each entry's relative path, else only its name
        exclude_patterns: Globs skipped inside copied trees

    Returns:
        CopyResult with file and directory counts

    Raises:
        ValidationError: a pattern escapes its base directory
        NotFoundError: the source root or a selected entry does not exist
    """
    exclude_patterns = list(exclude_patterns or [])
    source_root = os.path.realpath(source_root)
    if not os.path.isdir(source_root):
        raise NotFoundError(f"Source path does not exist: {source_root}")
    os.makedirs(destination_root, exist_ok=True)
    destination_root = os.path.realpath(destination_root)

    if not patterns:
        logger.info(f"Copying entire tree {source_root} -> {destination_root}")
        result = CopyResult()
        for name in sorted(os.listdir(source_root)):
            if is_excluded(name, exclude_patterns):
                continue
            result.merge(
                _copy_entry(
                    source_root,
                    os.path.join(source_root, name),
                    os.path.join(destination_root, name),
                    name,
                    exclude_patterns,
                )
            )
        return result

    result = CopyResult()
    for pattern in patterns:
        sources = _expand(source_root, pattern)
        if not sources or not all(os.path.lexists(path) for path in sources):
            raise NotFoundError(f"Failed to copy {pattern}: source entry not found")

        for source in sources:
            relative = os.path.relpath(source, source_root)
            if relative == ".":
                relative = ""
            target_rel = relative if preserve_folder_structure else os.path.basename(source)
            destination = sanitize_file_path(destination_root, target_rel) if target_rel else destination_root

            if destination == destination_root:
                # copying a whole root: contents go directly under the destination
                for name in sorted(os.listdir(source)):
                    if is_excluded(name, exclude_patterns):
                        continue
                    result.merge(
                        _copy_entry(
                            source_root,
                            os.path.join(source, name),
                            os.path.join(destination_root, name),
                            name,
                            exclude_patterns,
                        )
                    )
                continue

            result.merge(_copy_entry(source_root, source, destination, target_rel, exclude_patterns))
    logger.info(
        f"Copied {result.files_copied} files and {result.directories_copied} directories "
        f"into {destination_root}"
    )
    return result


def _copy_entry(
    source_root: str,
    source: str,
    destination: str,
    label: str,
    exclude_patterns: list[str],
) -> CopyResult:
    """Replace ``destination`` with a copy of ``source``."""
    try:
        if os.path.lexists(destination):
            logger.debug(f"Removing existing destination {destination}")
            _remove(destination)
        os.makedirs(os.path.dirname(destination), exist_ok=True)

        if os.path.isdir(source) and not os.path.islink(source):
            result = _copy_tree(source, destination, source_root, exclude_patterns)
        else:
            shutil.copy2(source, destination, follow_symlinks=False)
            result = CopyResult(files_copied=1)
    except OSError as e:
        raise IntegrationError(f"Failed to copy {label}: {e}", service="filesystem") from e

    result.entries.append(label.replace(os.sep, "/"))
    return result
