import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from icsmirror.files import write_text_atomic


class WriteTextAtomicTests(unittest.TestCase):
    def test_creates_parent_and_replaces_content(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "nested" / "recent.json"
            write_text_atomic(path, "[1]")
            write_text_atomic(path, "[2]")
            self.assertEqual(path.read_text(encoding="utf-8"), "[2]")
            self.assertFalse(path.with_suffix(".json.tmp").exists())

    def test_busy_target_is_rewritten_in_place(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "recent.json"
            path.write_text("old", encoding="utf-8")
            with mock.patch("pathlib.Path.replace", side_effect=OSError(errno.EBUSY, "Device or resource busy")):
                write_text_atomic(path, "new")
            self.assertEqual(path.read_text(encoding="utf-8"), "new")
            self.assertFalse(path.with_suffix(".json.tmp").exists())

    def test_other_errors_propagate(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "recent.json"
            with mock.patch("pathlib.Path.replace", side_effect=OSError(errno.EACCES, "Permission denied")):
                with self.assertRaises(OSError):
                    write_text_atomic(path, "new")
            self.assertFalse(path.exists())


if __name__ == "__main__":
    unittest.main()
