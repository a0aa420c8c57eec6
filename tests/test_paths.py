"""Unit tests for destination path and conflict resolution."""

import tempfile
import unittest
from pathlib import Path

from vault_transfer import (
    ConflictPolicy,
    FileKind,
    FilesystemError,
    file_kind,
    resolve_conflict,
    resolve_destination_path,
)


class TempDirTestCase(unittest.TestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.root = Path(tmp.name)


class TestResolveDestinationPath(TempDirTestCase):
    """Tests for resolve_destination_path function."""

    def test_joins_and_creates_parents(self):
        """Nested folders are created under the destination root."""
        result = resolve_destination_path(self.root, "notes/deep/a.md")
        self.assertEqual(result, self.root / "notes" / "deep" / "a.md")
        self.assertTrue((self.root / "notes" / "deep").is_dir())
        self.assertFalse(result.exists())

    def test_existing_parents_are_fine(self):
        """Calling twice does not fail."""
        resolve_destination_path(self.root, "notes/a.md")
        result = resolve_destination_path(self.root, "notes/a.md")
        self.assertEqual(result, self.root / "notes" / "a.md")

    def test_top_level_file(self):
        result = resolve_destination_path(self.root, "a.md")
        self.assertEqual(result, self.root / "a.md")

    def test_parent_is_a_file(self):
        """A file where a folder should be is a filesystem error."""
        (self.root / "notes").write_text("not a folder")
        with self.assertRaises(FilesystemError) as ctx:
            resolve_destination_path(self.root, "notes/a.md")
        self.assertIn("notes", str(ctx.exception))

    def test_rejects_escaping_paths(self):
        """Paths climbing out of the vault are refused."""
        for bad in ("../outside.md", "notes/../../outside.md", "/etc/passwd", ""):
            with self.subTest(path=bad):
                with self.assertRaises(FilesystemError):
                    resolve_destination_path(self.root, bad)
        self.assertFalse((self.root.parent / "outside.md").exists())


class TestResolveConflict(TempDirTestCase):
    """Tests for resolve_conflict function."""

    def setUp(self):
        super().setUp()
        self.existing = self.root / "a.md"
        self.existing.write_text("existing")

    def test_overwrite_returns_candidate(self):
        result = resolve_conflict(self.existing, "a.md", ConflictPolicy.OVERWRITE)
        self.assertEqual(result, self.existing)

    def test_skip_returns_none(self):
        self.assertIsNone(resolve_conflict(self.existing, "a.md", ConflictPolicy.SKIP))

    def test_rename_first_free_suffix(self):
        result = resolve_conflict(self.existing, "a.md", ConflictPolicy.RENAME)
        self.assertEqual(result, self.root / "a (1).md")

    def test_rename_fills_gaps_in_order(self):
        """The lowest unused number is chosen, never an existing path."""
        for name in ("a (1).md", "a (3).md"):
            (self.root / name).write_text("taken")

        result = resolve_conflict(self.existing, "a.md", ConflictPolicy.RENAME)
        self.assertEqual(result, self.root / "a (2).md")

        result.write_text("now taken")
        result = resolve_conflict(self.existing, "a.md", ConflictPolicy.RENAME)
        self.assertEqual(result, self.root / "a (4).md")
        self.assertFalse(result.exists())

    def test_rename_never_returns_existing_path(self):
        """Any run of pre-existing candidates is skipped."""
        for count in range(1, 12):
            (self.root / f"a ({count}).md").write_text("taken")
            result = resolve_conflict(self.existing, "a.md", ConflictPolicy.RENAME)
            self.assertFalse(result.exists())
            self.assertEqual(result.name, f"a ({count + 1}).md")

    def test_rename_without_extension(self):
        (self.root / "README").write_text("x")
        result = resolve_conflict(self.root / "README", "README", ConflictPolicy.RENAME)
        self.assertEqual(result.name, "README (1)")

    def test_rename_keeps_last_extension_only(self):
        (self.root / "backup.tar.gz").write_text("x")
        result = resolve_conflict(self.root / "backup.tar.gz", "backup.tar.gz", ConflictPolicy.RENAME)
        self.assertEqual(result.name, "backup.tar (1).gz")


class TestFileKind(unittest.TestCase):
    """Tests for file_kind function."""

    def test_markdown_is_note(self):
        self.assertIs(file_kind("notes/a.md"), FileKind.NOTE)
        self.assertIs(file_kind("notes/A.MD"), FileKind.NOTE)

    def test_everything_else_is_attachment(self):
        for path in ("assets/pic.png", "doc.pdf", "README", "canvas.canvas"):
            with self.subTest(path=path):
                self.assertIs(file_kind(path), FileKind.ATTACHMENT)


if __name__ == "__main__":
    unittest.main()
