"""
GCS bucket access for persisted emergency cases.

The client connects on first use, so importing this module (or building
the manager at startup) never touches the network.
"""

import os
import logging
from google.cloud import storage
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("gcs-manager")


class GCSBucketManager:
    # HTTP timeout for individual GCS operations (seconds)
    TIMEOUT = 30

    def __init__(self, bucket_name, service_account_json_path=None):
        """
        :param bucket_name: Bucket holding the case documents.
        :param service_account_json_path: Service account key.  If None,
                                          GOOGLE_APPLICATION_CREDENTIALS or
                                          default environment auth is used.
        """
        self.bucket_name = bucket_name
        self.service_account_json_path = service_account_json_path
        self._client = None
        self._bucket = None

    def _ensure_initialized(self):
        if self._client is not None:
            return
        project_id = os.getenv("PROJECT_ID")
        try:
            if self.service_account_json_path:
                self._client = storage.Client.from_service_account_json(
                    self.service_account_json_path, project=project_id
                )
            else:
                self._client = storage.Client(project=project_id)
            self._bucket = self._client.bucket(self.bucket_name)
        except Exception as e:
            logger.error("Error initializing GCS client for %s: %s", self.bucket_name, e)
            raise
        logger.info("GCS client ready for bucket %s", self.bucket_name)

    @property
    def client(self):
        self._ensure_initialized()
        return self._client

    @property
    def bucket(self):
        self._ensure_initialized()
        return self._bucket

    def download_text(self, blob_name):
        """Return ``(content, generation)`` for a blob.  Missing blobs raise NotFound."""
        blob = self.bucket.blob(blob_name)
        content = blob.download_as_text(timeout=self.TIMEOUT)
        return content, blob.generation or 0

    def upload_json(self, blob_name, content, if_generation_match):
        """
        Write ``content`` only if the blob is still at ``if_generation_match``
        (0 = must not exist).  Returns the new generation.
        """
        blob = self.bucket.blob(blob_name)
        blob.upload_from_string(
            content,
            content_type="application/json",
            if_generation_match=if_generation_match,
            timeout=self.TIMEOUT,
        )
        blob.reload(timeout=self.TIMEOUT)
        return blob.generation or 0

    def exists(self, blob_name):
        return self.bucket.blob(blob_name).exists(timeout=self.TIMEOUT)

    def list_files(self, folder_path=None):
        """Blob names directly under ``folder_path``, relative to it."""
        prefix = folder_path or ""
        if prefix and not prefix.endswith('/'):
            prefix += '/'

        names = []
        for blob in self.client.list_blobs(self.bucket_name, prefix=prefix, delimiter='/'):
            relative = blob.name[len(prefix):]
            if relative:
                names.append(relative)
        return names
