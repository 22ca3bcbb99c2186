"""Tests for file placement between the source clone and the target checkout."""

import pytest

from gitferry.errors import NotFoundError, ValidationError
from gitferry.schemas import CopyMode
from gitferry.tools.file_copy import copy_selection, is_excluded, select_patterns

from tests.gitrepos import write_files


@pytest.fixture
def source(tmp_path):
    root = tmp_path / "source"
    write_files(
        root,
        {
            "app.py": "print('v2')\n",
            "README.md": "# widgets\n",
            "CHANGES.md": "v2\n",
            "lib/util.py": "def util(): ...\n",
            "lib/nested/deep.py": "DEEP = True\n",
            "lib/__pycache__/util.cpython-312.pyc": "bytecode",
            "lib/cache.pyc": "bytecode",
            ".git/HEAD": "ref: refs/heads/main\n",
        },
    )
    return root


@pytest.fixture
def destination(tmp_path):
    root = tmp_path / "destination"
    write_files(
        root,
        {
            "app.py": "print('v1')\n",
            "lib/stale.py": "STALE = True\n",
            "keep.txt": "untouched\n",
        },
    )
    return root


# ===========================================================================
# Selection
# ===========================================================================


class TestSelectPatterns:
    def test_files_mode(self):
        assert select_patterns(CopyMode.FILES, ["a.py", " "], ["lib"]) == ["a.py"]

    def test_folders_mode(self):
        assert select_patterns(CopyMode.FOLDERS, ["a.py"], ["lib", "docs "]) == ["lib", "docs"]

    def test_mixed_mode(self):
        assert select_patterns(CopyMode.MIXED, ["a.py"], ["lib"]) == ["a.py", "lib"]


class TestExclusion:
    def test_git_metadata_always_skipped(self):
        assert is_excluded(".git", [])
        assert is_excluded("sub/.git/config", [])

    def test_matches_path_or_component(self):
        assert is_excluded("lib/cache.pyc", ["*.pyc"])
        assert is_excluded("lib/__pycache__", ["__pycache__"])
        assert not is_excluded("lib/util.py", ["*.pyc", "__pycache__"])


# ===========================================================================
# Copying
# ===========================================================================


class TestCopySelection:
    def test_files_mode_overrides_existing_entries(self, source, destination):
        result = copy_selection(str(source), str(destination), ["app.py", "lib"])

        assert (destination / "app.py").read_text() == "print('v2')\n"
        assert (destination / "lib" / "util.py").exists()
        assert (destination / "lib" / "nested" / "deep.py").exists()
        # directories are replaced, not merged
        assert not (destination / "lib" / "stale.py").exists()
        assert (destination / "keep.txt").read_text() == "untouched\n"
        assert result.entries == ["app.py", "lib"]

    def test_counts_files_and_directories(self, source, destination):
        result = copy_selection(str(source), str(destination), ["app.py", "lib"], exclude_patterns=["*.pyc", "__pycache__"])

        # app.py, lib/util.py, lib/nested/deep.py
        assert result.files_copied == 3
        # lib, lib/nested
        assert result.directories_copied == 2
        assert not (destination / "lib" / "__pycache__").exists()
        assert not (destination / "lib" / "cache.pyc").exists()

    def test_without_preserved_structure_uses_basename(self, source, tmp_path):
        destination = tmp_path / "flat"
        copy_selection(str(source), str(destination), ["lib/nested/deep.py"], preserve_folder_structure=False)

        assert (destination / "deep.py").read_text() == "DEEP = True\n"
        assert not (destination / "lib").exists()

    def test_preserved_structure_keeps_relative_path(self, source, tmp_path):
        destination = tmp_path / "tree"
        copy_selection(str(source), str(destination), ["lib/nested/deep.py"])

        assert (destination / "lib" / "nested" / "deep.py").exists()

    def test_glob_pattern(self, source, tmp_path):
        destination = tmp_path / "docs"
        result = copy_selection(str(source), str(destination), ["*.md"])

        assert sorted(p.name for p in destination.iterdir()) == ["CHANGES.md", "README.md"]
        assert result.files_copied == 2

    def test_empty_selection_copies_everything_but_git(self, source, tmp_path):
        destination = tmp_path / "all"
        result = copy_selection(str(source), str(destination), [])

        assert (destination / "app.py").exists()
        assert (destination / "lib" / "nested" / "deep.py").exists()
        assert not (destination / ".git").exists()
        assert result.files_copied == 7

    def test_missing_entry(self, source, destination):
        with pytest.raises(NotFoundError, match="missing.py"):
            copy_selection(str(source), str(destination), ["missing.py"])

    def test_missing_source_root(self, tmp_path, destination):
        with pytest.raises(NotFoundError):
            copy_selection(str(tmp_path / "nope"), str(destination), ["app.py"])

    def test_traversal_in_pattern(self, source, destination):
        with pytest.raises(ValidationError, match="Path traversal"):
            copy_selection(str(source), str(destination), ["../destination/keep.txt"])
