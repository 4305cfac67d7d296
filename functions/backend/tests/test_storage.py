import io
import os
import tempfile
import unittest
from unittest import mock

from botocore.exceptions import EndpointConnectionError
from botocore.stub import ANY, Stubber
from PIL import Image

from backend.storage import (
    AssetStore,
    InMemoryBlobBackend,
    LocalBlobBackend,
    S3BlobBackend,
)
from shared.errors import ProcessingError, StorageError


def _jpeg(size):
    buffer = io.BytesIO()
    Image.new("RGB", size, (200, 150, 100)).save(buffer, format="JPEG")
    return buffer.getvalue()


class LocalAssetStoreTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.base_dir = self._tmp.name
        self.backend = LocalBlobBackend(self.base_dir)
        self.store = AssetStore(backend=self.backend, url_prefix="/uploads")

    def tearDown(self):
        self._tmp.cleanup()

    def test_save_writes_both_renditions(self):
        asset = self.store.save(_jpeg((2400, 1600)), "coffees", "c1", "big.jpg")

        self.assertEqual(asset.url, f"/uploads/coffees/c1/{asset.filename}")
        self.assertEqual(
            asset.thumbnail_url, f"/uploads/coffees/c1/thumbnails/{asset.filename}"
        )
        self.assertEqual(asset.original_name, "big.jpg")

        full_path = os.path.join(self.base_dir, "coffees", "c1", asset.filename)
        thumb_path = os.path.join(
            self.base_dir, "coffees", "c1", "thumbnails", asset.filename
        )
        with Image.open(full_path) as full:
            self.assertEqual(full.format, "WEBP")
            self.assertLessEqual(max(full.size), 1200)
            self.assertEqual(full.size, (1200, 800))
        with Image.open(thumb_path) as thumb:
            self.assertEqual(thumb.size, (300, 300))

        leftovers = [
            name
            for _, _, files in os.walk(self.base_dir)
            for name in files
            if name.endswith(".part")
        ]
        self.assertEqual(leftovers, [])

    def test_undecodable_buffer_writes_nothing(self):
        with self.assertRaises(ProcessingError):
            self.store.save(b"not an image", "brews", "b1", "x.jpg")
        self.assertEqual(self.backend.list_keys("brews"), [])

    def test_remove_is_idempotent(self):
        asset = self.store.save(_jpeg((640, 480)), "brews", "b1", "a.jpg")
        self.store.remove("brews", "b1", asset.filename)
        self.store.remove("brews", "b1", asset.filename)
        self.assertEqual(self.store.list_filenames("brews", "b1"), [])

    def test_remove_all_and_listing(self):
        self.store.save(_jpeg((640, 480)), "coffees", "c1", "a.jpg")
        self.store.save(_jpeg((640, 480)), "coffees", "c2", "b.jpg")
        self.assertEqual(self.store.list_entity_ids("coffees"), ["c1", "c2"])

        self.store.remove_all("coffees", "c1")
        self.assertFalse(os.path.exists(os.path.join(self.base_dir, "coffees", "c1")))
        self.assertEqual(self.store.list_entity_ids("coffees"), ["c2"])
        self.store.remove_all("coffees", "c1")

    def test_ensure_entity_dirs_creates_both_directories(self):
        self.store.ensure_entity_dirs("brews", "b9")
        entity_dir = os.path.join(self.base_dir, "brews", "b9")
        self.assertTrue(os.path.isdir(entity_dir))
        self.assertTrue(os.path.isdir(os.path.join(entity_dir, "thumbnails")))
        self.assertEqual(self.backend.list_keys("brews"), [])

        self.store.ensure_entity_dirs("brews", "b9")
        self.assertTrue(os.path.isdir(os.path.join(entity_dir, "thumbnails")))

    def test_key_outside_base_dir_rejected(self):
        with self.assertRaises(StorageError):
            self.backend.put("../escape.webp", b"x", "image/webp")


class InMemoryAssetStoreTests(unittest.TestCase):
    def test_thumbnail_failure_removes_full_rendition(self):
        class FailingBackend(InMemoryBlobBackend):
            def put(self, key, data, content_type):
                if "/thumbnails/" in key:
                    raise StorageError("write failed")
                super().put(key, data, content_type)

        backend = FailingBackend()
        store = AssetStore(backend=backend)
        with self.assertRaises(StorageError):
            store.save(_jpeg((640, 480)), "coffees", "c1", "a.jpg")
        self.assertEqual(backend.objects, {})


class S3BlobBackendTests(unittest.TestCase):
    def setUp(self):
        self.backend = S3BlobBackend(
            bucket="assets",
            region="us-east-1",
            endpoint="",
            access_key_id="test",
            secret_access_key="test",
        )
        self.stubber = Stubber(self.backend._client)
        self.stubber.activate()

    def tearDown(self):
        self.stubber.deactivate()

    def test_put_sends_content_type(self):
        self.stubber.add_response(
            "put_object",
            {},
            {
                "Bucket": "assets",
                "Key": "coffees/c1/a.webp",
                "Body": ANY,
                "ContentType": "image/webp",
            },
        )
        self.backend.put("coffees/c1/a.webp", b"data", "image/webp")
        self.stubber.assert_no_pending_responses()

    def test_list_keys_follows_pagination(self):
        self.stubber.add_response(
            "list_objects_v2",
            {
                "Contents": [{"Key": "coffees/c1/b.webp"}],
                "IsTruncated": True,
                "NextContinuationToken": "page-2",
            },
            {"Bucket": "assets", "Prefix": "coffees/c1/"},
        )
        self.stubber.add_response(
            "list_objects_v2",
            {"Contents": [{"Key": "coffees/c1/a.webp"}], "IsTruncated": False},
            {"Bucket": "assets", "Prefix": "coffees/c1/", "ContinuationToken": "page-2"},
        )
        self.assertEqual(
            self.backend.list_keys("coffees/c1"),
            ["coffees/c1/a.webp", "coffees/c1/b.webp"],
        )
        self.stubber.assert_no_pending_responses()

    def test_delete_prefix_batches_by_thousand(self):
        keys = [f"brews/b1/{i:04d}.webp" for i in range(1500)]
        self.stubber.add_response(
            "list_objects_v2",
            {"Contents": [{"Key": key} for key in keys], "IsTruncated": False},
            {"Bucket": "assets", "Prefix": "brews/b1/"},
        )
        for batch in (keys[:1000], keys[1000:]):
            self.stubber.add_response(
                "delete_objects",
                {},
                {
                    "Bucket": "assets",
                    "Delete": {"Objects": [{"Key": key} for key in batch], "Quiet": True},
                },
            )
        self.backend.delete_prefix("brews/b1")
        self.stubber.assert_no_pending_responses()

    def test_client_error_becomes_storage_error(self):
        self.stubber.add_client_error(
            "put_object", service_error_code="AccessDenied", http_status_code=403
        )
        with self.assertRaises(StorageError) as ctx:
            self.backend.put("coffees/c1/a.webp", b"data", "image/webp")
        self.assertEqual(ctx.exception.details, {"key": "coffees/c1/a.webp"})

        self.stubber.add_client_error("list_objects_v2", service_error_code="NoSuchBucket")
        with self.assertRaises(StorageError):
            self.backend.list_keys("coffees")

    def test_connection_error_becomes_storage_error(self):
        error = EndpointConnectionError(endpoint_url="https://assets.example.com")
        with mock.patch.object(self.backend._client, "delete_object", side_effect=error):
            with self.assertRaises(StorageError):
                self.backend.delete("coffees/c1/a.webp")



if __name__ == "__main__":
    unittest.main()
