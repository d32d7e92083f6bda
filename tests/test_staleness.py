from __future__ import annotations

import os
import sys
import tempfile
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from osv_capsule import staleness
from osv_capsule.errors import ManifestIOError


MANIFEST_TEXT = "base: cloudius/osv-openjdk8\n\ncmdline: /java.so -jar /demo.jar\n\nfiles:\n  /demo.jar: /x/demo.jar\n"
OLD_NS = 1_600_000_000 * 1_000_000_000
NEW_NS = OLD_NS + 60 * 1_000_000_000


def _set_mtime(path: Path, mtime_ns: int) -> None:
    os.utime(path, ns=(mtime_ns, mtime_ns))


class ConfDirTests(unittest.TestCase):
    def test_conf_dir_is_created_on_first_use(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            parent = Path(tmp) / "cache"
            directory = staleness.conf_dir(parent)
            self.assertEqual(directory, parent / "osv")
            self.assertTrue(directory.is_dir())
            self.assertEqual(staleness.conf_file(directory), parent / "osv" / "Capstanfile")
            self.assertEqual(staleness.conf_dir(parent), directory)


class IsBuildNeededTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.tmp_path = Path(self.tmp.name)
        self.jar = self.tmp_path / "demo.jar"
        self.jar.write_bytes(b"jar")
        self.wrapper = self.tmp_path / "wrapper.jar"
        self.wrapper.write_bytes(b"wrapper")
        self.persisted = self.tmp_path / "Capstanfile"

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def _persist(self, text: str = MANIFEST_TEXT, mtime_ns: int = NEW_NS) -> None:
        staleness.write_manifest(text, self.persisted)
        _set_mtime(self.persisted, mtime_ns)

    def test_missing_manifest_needs_build(self) -> None:
        self.assertTrue(staleness.is_build_needed(MANIFEST_TEXT, self.persisted, self.jar))

    def test_unchanged_manifest_newer_than_jar_needs_no_build(self) -> None:
        _set_mtime(self.jar, OLD_NS)
        self._persist()
        self.assertFalse(staleness.is_build_needed(MANIFEST_TEXT, self.persisted, self.jar))

    def test_equal_timestamps_need_no_build(self) -> None:
        _set_mtime(self.jar, NEW_NS)
        self._persist(mtime_ns=NEW_NS)
        self.assertFalse(staleness.is_build_needed(MANIFEST_TEXT, self.persisted, self.jar))

    def test_changed_content_needs_build(self) -> None:
        _set_mtime(self.jar, OLD_NS)
        self._persist(MANIFEST_TEXT.replace("openjdk8", "openjdk"))
        self.assertTrue(staleness.is_build_needed(MANIFEST_TEXT, self.persisted, self.jar))

    def test_newer_jar_needs_build(self) -> None:
        self._persist(mtime_ns=OLD_NS)
        _set_mtime(self.jar, NEW_NS)
        self.assertTrue(staleness.is_build_needed(MANIFEST_TEXT, self.persisted, self.jar))

    def test_newer_wrapper_needs_build(self) -> None:
        _set_mtime(self.jar, OLD_NS)
        self._persist(mtime_ns=OLD_NS + 1_000_000_000)
        _set_mtime(self.wrapper, NEW_NS)
        self.assertFalse(staleness.is_build_needed(MANIFEST_TEXT, self.persisted, self.jar))
        self.assertTrue(staleness.is_build_needed(MANIFEST_TEXT, self.persisted, self.jar, self.wrapper))

    def test_newer_wrapper_needs_build_without_application_jar(self) -> None:
        self._persist(mtime_ns=OLD_NS)
        _set_mtime(self.wrapper, NEW_NS)
        self.assertTrue(staleness.is_build_needed(MANIFEST_TEXT, self.persisted, None, self.wrapper))

    def test_older_wrapper_without_application_jar_needs_no_build(self) -> None:
        _set_mtime(self.wrapper, OLD_NS)
        self._persist(mtime_ns=NEW_NS)
        self.assertFalse(staleness.is_build_needed(MANIFEST_TEXT, self.persisted, None, self.wrapper))

    def test_no_artifacts_need_no_build(self) -> None:
        self._persist()
        self.assertFalse(staleness.is_build_needed(MANIFEST_TEXT, self.persisted, None))

    def test_missing_jar_is_an_io_error(self) -> None:
        self._persist()
        self.jar.unlink()
        with self.assertRaises(ManifestIOError):
            staleness.is_build_needed(MANIFEST_TEXT, self.persisted, self.jar)

    def test_unreadable_manifest_is_an_io_error(self) -> None:
        self.persisted.mkdir()
        with self.assertRaises(ManifestIOError):
            staleness.is_build_needed(MANIFEST_TEXT, self.persisted, self.jar)


class ManifestFileTests(unittest.TestCase):
    def test_write_then_read(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "Capstanfile"
            self.assertIsNone(staleness.read_manifest(path))
            staleness.write_manifest(MANIFEST_TEXT, path)
            self.assertEqual(staleness.read_manifest(path), MANIFEST_TEXT)
            self.assertEqual(path.read_bytes(), MANIFEST_TEXT.encode("utf-8"))

    def test_write_into_missing_directory_is_an_io_error(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(ManifestIOError):
                staleness.write_manifest(MANIFEST_TEXT, Path(tmp) / "missing" / "Capstanfile")


if __name__ == "__main__":
    unittest.main()
