import tempfile
import unittest
from pathlib import Path

from msg_gateway.errors import InvalidRequest
from msg_gateway.storage import LocalBlobStore, safe_name


class LocalBlobStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.store = LocalBlobStore(self.tmpdir.name, max_bytes=16, now_func=lambda: 1234)

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def test_put_writes_file_and_returns_public_url(self):
        url = self.store.put(b"\x89PNG", "image/png", "my cat (1).png")

        self.assertTrue(url.startswith("/uploads/messages/1234-"))
        self.assertTrue(url.endswith("-my_cat_1.png"))
        stored = Path(self.tmpdir.name) / "messages" / url.rsplit("/", 1)[1]
        self.assertEqual(stored.read_bytes(), b"\x89PNG")

    def test_rejects_non_images_empty_and_oversize(self):
        with self.assertRaises(InvalidRequest):
            self.store.put(b"%PDF", "application/pdf", "doc.pdf")
        with self.assertRaises(InvalidRequest):
            self.store.put(b"", "image/png", "empty.png")
        with self.assertRaises(InvalidRequest):
            self.store.put(b"x" * 17, "image/png", "big.png")
        with self.assertRaises(InvalidRequest):
            self.store.put(b"x", None, "unknown")

    def test_safe_name(self):
        self.assertEqual(safe_name("../../etc/passwd"), "....etcpasswd")
        self.assertEqual(safe_name(""), "upload")
        self.assertEqual(safe_name("a b.jpg"), "a_b.jpg")


if __name__ == "__main__":
    unittest.main()
