import tempfile
from unittest.mock import Mock, patch

from botocore.exceptions import ClientError
from django.test import SimpleTestCase

from generation_jobs.errors import StorageError
from generation_jobs.storage.providers.local import LocalStorageProvider, safe_key
from generation_jobs.storage.providers.s3 import S3StorageProvider
from generation_jobs.storage.registry import BlobStore, absolute_url


class LocalStorageTests(SimpleTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)

    def test_put_get_delete(self):
        provider = LocalStorageProvider({"base_path": self.tmp.name})
        url = provider.put("projects/p1/scene.png", b"png-bytes", "image/png")

        self.assertEqual(url, "/blobs/projects/p1/scene.png")
        self.assertEqual(provider.get("projects/p1/scene.png"), b"png-bytes")
        provider.delete("projects/p1/scene.png")
        with self.assertRaises(StorageError):
            provider.get("projects/p1/scene.png")

    def test_keys_cannot_escape_the_base_path(self):
        self.assertEqual(safe_key("../../etc/passwd"), "etc/passwd")
        self.assertEqual(safe_key("projects/a b/c.png"), "projects/a-b/c.png")
        with self.assertRaises(StorageError):
            safe_key("../..")

    def test_blob_store_uses_the_primary_provider(self):
        store = BlobStore(
            {
                "storage": {
                    "primary": {"name": "disk"},
                    "providers": [
                        {
                            "name": "disk",
                            "type": "local",
                            "local": {"base_path": self.tmp.name, "public_base_url": "https://cdn.example.test/"},
                        }
                    ],
                }
            }
        )
        self.assertEqual(store.put("a/b.json", b"{}", "application/json"), "https://cdn.example.test/a/b.json")
        self.assertEqual(store.get("a/b.json"), b"{}")

    def test_absolute_url(self):
        self.assertEqual(absolute_url("/blobs/x.png", "https://studio.example.test/"), "https://studio.example.test/blobs/x.png")
        self.assertEqual(absolute_url("https://cdn.example.test/x.png", "https://studio.example.test"), "https://cdn.example.test/x.png")
        self.assertEqual(absolute_url("/blobs/x.png", ""), "/blobs/x.png")
        self.assertEqual(absolute_url(None, "https://studio.example.test"), "")


class S3StorageTests(SimpleTestCase):
    @patch("generation_jobs.storage.providers.s3.boto3.client")
    def test_put_writes_prefixed_key_and_returns_bucket_url(self, client_factory):
        client = Mock()
        client_factory.return_value = client
        provider = S3StorageProvider({"bucket": "studio-assets", "region": "us-east-1", "kms_key_id": "kms-1"})

        url = provider.put("projects/p1/scene.png", b"data", "image/png")

        self.assertEqual(url, "https://studio-assets.s3.us-east-1.amazonaws.com/studio/projects/p1/scene.png")
        kwargs = client.put_object.call_args.kwargs
        self.assertEqual(kwargs["Key"], "studio/projects/p1/scene.png")
        self.assertEqual(kwargs["ContentType"], "image/png")
        self.assertEqual(kwargs["ServerSideEncryption"], "aws:kms")

    @patch("generation_jobs.storage.providers.s3.boto3.client")
    def test_client_errors_become_storage_errors(self, client_factory):
        client = Mock()
        client.put_object.side_effect = ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject")
        client_factory.return_value = client
        provider = S3StorageProvider({"bucket": "studio-assets", "region": "us-east-1"})

        with self.assertRaises(StorageError):
            provider.put("projects/p1/scene.png", b"data", "image/png")
