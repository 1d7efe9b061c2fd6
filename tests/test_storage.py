import json
import sys
import tempfile
import threading
import unittest
from pathlib import Path
from unittest import mock

sys.path.insert(0, str(Path(__file__).parent.parent))

from mediastore import storage  # noqa: E402
from mediastore.storage import (  # noqa: E402
    AssetNotFoundError,
    AssetRecord,
    AssetStore,
    InvalidFilenameError,
    JournalError,
    MetadataJournal,
    SafeName,
    sanitize_filename,
)


def make_record(name: str, size: int = 1, title=None) -> AssetRecord:
    return AssetRecord(
        file=name,
        size_bytes=size,
        title=title,
        creation_date="2024-05-01T10:00:00+00:00",
        last_modified="2024-05-01T10:00:00+00:00",
    )


class SanitizeFilenameTests(unittest.TestCase):
    def test_accepts_plain_names_unchanged(self):
        for name in ["cat.png", "holiday photo (1).JPG", ".hidden", "ünïcode.gif"]:
            with self.subTest(name=name):
                safe = sanitize_filename(name)
                self.assertIsInstance(safe, SafeName)
                self.assertEqual(safe, name)

    def test_rejects_path_separators(self):
        for name in ["../secret", "nested/cat.png", "..\\windows.ini", "a\\b"]:
            with self.subTest(name=name):
                with self.assertRaises(InvalidFilenameError):
                    sanitize_filename(name)

    def test_rejects_empty_and_directory_names(self):
        for name in ["", None, ".", "..", "bad\x00name.png"]:
            with self.subTest(name=name):
                with self.assertRaises(InvalidFilenameError):
                    sanitize_filename(name)


class AssetStoreTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name) / "content"
        self.store = AssetStore(self.root)
        self.store.ensure_root()

    def tearDown(self):
        self.tmp.cleanup()

    def test_write_returns_bytes_written(self):
        name = sanitize_filename("cat.png")
        self.assertEqual(self.store.write(name, b"12345"), 5)
        self.assertEqual((self.root / "cat.png").read_bytes(), b"12345")
        self.assertTrue(self.store.exists(name))

    def test_write_overwrites_existing_asset(self):
        name = sanitize_filename("cat.png")
        self.store.write(name, b"first version")
        self.store.write(name, b"second")
        self.assertEqual((self.root / "cat.png").read_bytes(), b"second")

    def test_raw_strings_cannot_reach_the_filesystem(self):
        with self.assertRaises(TypeError):
            self.store.path_for("../escape.png")

    def test_remove_missing_asset_raises_not_found(self):
        with self.assertRaises(AssetNotFoundError):
            self.store.remove(sanitize_filename("missing.png"))

    def test_remove_deletes_file(self):
        name = sanitize_filename("dog.png")
        self.store.write(name, b"woof")
        self.store.remove(name)
        self.assertFalse(self.store.exists(name))

    def test_failed_write_leaves_no_temp_file(self):
        name = sanitize_filename("cat.png")
        with mock.patch.object(Path, "replace", side_effect=OSError("disk full")):
            with self.assertRaises(OSError):
                self.store.write(name, b"data")
        self.assertEqual(list(self.root.iterdir()), [])

    def test_list_names_skips_temp_files_and_directories(self):
        self.store.write(sanitize_filename("a.png"), b"a")
        (self.root / f".a.png.{'ab' * 16}.tmp").write_bytes(b"partial")
        (self.root / "subdir").mkdir()
        self.assertEqual(self.store.list_names(), {"a.png"})

    def test_list_names_keeps_uploaded_dot_tmp_names(self):
        for name in [".x.tmp", ".a.png.deadbeef.tmp"]:
            self.store.write(sanitize_filename(name), b"client data")
        self.assertEqual(self.store.list_names(), {".x.tmp", ".a.png.deadbeef.tmp"})


class AssetRecordTests(unittest.TestCase):
    def test_title_omitted_when_absent(self):
        payload = make_record("cat.png", 5).to_dict()
        self.assertNotIn("title", payload)
        self.assertEqual(
            set(payload), {"file", "size_bytes", "creation_date", "last_modified"}
        )

    def test_from_dict_reads_persisted_fields(self):
        record = AssetRecord.from_dict(
            {
                "file": "cat.png",
                "size_bytes": 5,
                "title": "Cat",
                "creation_date": "2024-01-01T00:00:00+00:00",
                "last_modified": "2024-01-02T00:00:00+00:00",
            }
        )
        self.assertEqual(record.title, "Cat")
        self.assertEqual(record.size_bytes, 5)


class MetadataJournalTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "data" / "image-metadata.json"
        self.journal = MetadataJournal(self.path)
        self.journal.initialize()

    def tearDown(self):
        self.tmp.cleanup()

    def test_initialize_creates_empty_document(self):
        self.assertEqual(json.loads(self.path.read_text(encoding="utf-8")), [])
        self.assertEqual(self.journal.load(), [])

    def test_initialize_keeps_existing_records(self):
        self.journal.append(make_record("cat.png"))
        MetadataJournal(self.path).initialize()
        self.assertEqual([r.file for r in self.journal.load()], ["cat.png"])

    def test_append_preserves_insertion_order(self):
        for name in ["zebra.png", "apple.png", "mango.png"]:
            self.journal.append(make_record(name))
        self.assertEqual(
            [r.file for r in self.journal.load()],
            ["zebra.png", "apple.png", "mango.png"],
        )

    def test_remove_where_drops_every_match(self):
        self.journal.append(make_record("cat.png", 1))
        self.journal.append(make_record("dog.png", 2))
        self.journal.append(make_record("cat.png", 3))
        removed = self.journal.remove_where(lambda record: record.file == "cat.png")
        self.assertEqual(removed, 2)
        self.assertEqual([r.file for r in self.journal.load()], ["dog.png"])

    def test_unreadable_document_raises_and_is_not_rewritten(self):
        self.path.write_text("{not json", encoding="utf-8")
        with self.assertRaises(JournalError):
            self.journal.load()
        with self.assertRaises(JournalError):
            self.journal.append(make_record("cat.png"))
        self.assertEqual(self.path.read_text(encoding="utf-8"), "{not json")

    def test_missing_document_raises(self):
        self.path.unlink()
        with self.assertRaises(JournalError):
            self.journal.load()

    def test_non_array_document_raises(self):
        self.path.write_text('{"file": "cat.png"}', encoding="utf-8")
        with self.assertRaises(JournalError):
            self.journal.load()

    def test_record_missing_fields_raises(self):
        self.path.write_text('[{"file": "cat.png"}]', encoding="utf-8")
        with self.assertRaises(JournalError):
            self.journal.load()

    def test_concurrent_appends_do_not_lose_updates(self):
        names = [f"image-{index}.png" for index in range(40)]
        barrier = threading.Barrier(len(names))

        def worker(name):
            barrier.wait()
            self.journal.append(make_record(name))

        threads = [threading.Thread(target=worker, args=(name,)) for name in names]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(sorted(r.file for r in self.journal.load()), sorted(names))


class InitStorageTests(unittest.TestCase):
    def test_creates_content_dir_and_journal(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            with mock.patch.multiple(
                storage,
                CONTENT_DIR=root / "content",
                DATA_DIR=root / "data",
                LOGS_DIR=root / "logs",
            ):
                store, journal = storage.init_storage(
                    root / "content", root / "data" / "image-metadata.json"
                )
            self.assertTrue(store.root.is_dir())
            self.assertEqual(journal.load(), [])


if __name__ == "__main__":
    unittest.main()
