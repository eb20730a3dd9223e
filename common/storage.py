import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional

# STORAGE_BACKEND determines which backend create_storage() builds.
from common.config import AZURE_CONN_STR, GCP_PROJECT, LOCAL_STORAGE_DIR, STORAGE_BACKEND
from common.errors import StorageError

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------------------
# CONDITIONAL IMPORTS
# Cloud SDKs are only needed by the backend that is actually selected.
# ------------------------------------------------------------------------------

# 1. Google Cloud Storage SDK
try:
    from google.api_core import exceptions as gcs_exceptions
    from google.cloud import storage as gcs
except ImportError:
    gcs = None
    gcs_exceptions = None

# 2. Azure Blob Storage SDK
try:
    from azure.core import exceptions as azure_exceptions
    from azure.storage.blob import BlobServiceClient, ContentSettings
except ImportError:
    BlobServiceClient = None
    ContentSettings = None
    azure_exceptions = None

# ------------------------------------------------------------------------------
# CONSTANTS
# ------------------------------------------------------------------------------
CONTENT_TYPES = {"webp": "image/webp", "jpeg": "image/jpeg"}
META_SUFFIX = ".meta.json"  # local backend sidecar holding content type + metadata


def content_type_for(fmt: str) -> str:
    """MIME type for an output format."""
    return CONTENT_TYPES[fmt]


class ObjectStorage:
    """get/put contract over a bucket + key namespace.

    Every failure surfaces as StorageError with one of the OBJECT_NOT_FOUND,
    ACCESS_DENIED, BUCKET_NOT_FOUND or STORAGE_ERROR codes.
    Metadata keys should be lowercase with underscores so every backend
    accepts them.
    """

    name = "abstract"

    def get(self, bucket: str, key: str) -> bytes:
        raise NotImplementedError

    def put(
        self,
        bucket: str,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        metadata: Optional[Dict[str, str]] = None,
    ) -> None:
        raise NotImplementedError

    def exists(self, bucket: str, key: str) -> bool:
        raise NotImplementedError

    def metadata(self, bucket: str, key: str) -> Optional[Dict[str, str]]:
        """User metadata stored with the object, or None if it does not exist."""
        raise NotImplementedError


# ------------------------------------------------------------------------------
# LOCAL FILESYSTEM BACKEND
# Used when STORAGE_BACKEND="local". A bucket is a directory under the root.
# ------------------------------------------------------------------------------

class LocalObjectStorage(ObjectStorage):
    name = "local"

    def __init__(self, root: Path = LOCAL_STORAGE_DIR):
        self.root = Path(root)

    def _bucket_dir(self, bucket: str) -> Path:
        bucket_dir = self.root / bucket
        if not bucket_dir.is_dir():
            raise StorageError.bucket_not_found(bucket)
        return bucket_dir

    def _object_path(self, bucket: str, key: str) -> Path:
        bucket_dir = self._bucket_dir(bucket).resolve()
        path = (bucket_dir / key).resolve()
        # keys must not escape their bucket (e.g. "../other/secret.png")
        if bucket_dir not in path.parents:
            raise StorageError.access_denied(bucket, key)
        return path

    def get(self, bucket: str, key: str) -> bytes:
        path = self._object_path(bucket, key)
        if not path.is_file():
            raise StorageError.not_found(bucket, key)
        try:
            return path.read_bytes()
        except PermissionError as e:
            raise StorageError.access_denied(bucket, key) from e
        except OSError as e:
            raise StorageError(f"Failed to read {bucket}/{key}: {e}") from e

    def put(self, bucket, key, data, content_type="application/octet-stream", metadata=None):
        path = self._object_path(bucket, key)
        sidecar = path.with_name(path.name + META_SUFFIX)
        partial = path.with_name(path.name + ".part")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # metadata lands before the object appears under its key
            sidecar.write_text(json.dumps({"content_type": content_type, "metadata": metadata or {}}))
            partial.write_bytes(data)
            os.replace(partial, path)
        except PermissionError as e:
            raise StorageError.access_denied(bucket, key) from e
        except OSError as e:
            raise StorageError(f"Failed to write {bucket}/{key}: {e}") from e

    def exists(self, bucket: str, key: str) -> bool:
        path = self._object_path(bucket, key)
        try:
            return path.is_file()
        except PermissionError as e:
            raise StorageError.access_denied(bucket, key) from e
        except OSError as e:
            raise StorageError(f"Failed to stat {bucket}/{key}: {e}") from e

    def metadata(self, bucket: str, key: str) -> Optional[Dict[str, str]]:
        if not self.exists(bucket, key):
            return None
        path = self._object_path(bucket, key)
        sidecar = path.with_name(path.name + META_SUFFIX)
        try:
            if not sidecar.is_file():
                return {}
            stored = json.loads(sidecar.read_text())
        except PermissionError as e:
            raise StorageError.access_denied(bucket, key) from e
        except (OSError, ValueError) as e:
            raise StorageError(f"Failed to read metadata of {bucket}/{key}: {e}") from e
        if not isinstance(stored, dict) or not isinstance(stored.get("metadata", {}), dict):
            raise StorageError(f"Malformed metadata for {bucket}/{key}")
        return stored.get("metadata", {})


# ------------------------------------------------------------------------------
# GOOGLE CLOUD STORAGE (GCS) BACKEND
# Used when STORAGE_BACKEND="gcp".
# ------------------------------------------------------------------------------

def _get_gcs_client(project: Optional[str] = None):
    """Returns an authenticated GCS client."""
    if not gcs:
        raise RuntimeError("google-cloud-storage library is not installed.")
    return gcs.Client(project=project)


class GCSObjectStorage(ObjectStorage):
    name = "gcp"

    def __init__(self, client=None, project: Optional[str] = GCP_PROJECT):
        self._client = client or _get_gcs_client(project)

    def _translate(self, e: Exception, bucket: str, key: str, action: str) -> StorageError:
        if gcs_exceptions and isinstance(e, gcs_exceptions.NotFound):
            # GCS answers 404 for a missing bucket and for a missing object alike
            if not self._client.bucket(bucket).exists():
                return StorageError.bucket_not_found(bucket)
            return StorageError.not_found(bucket, key)
        if gcs_exceptions and isinstance(e, gcs_exceptions.Forbidden):
            return StorageError.access_denied(bucket, key)
        return StorageError(f"Failed to {action} gs://{bucket}/{key}: {e}")

    def get(self, bucket: str, key: str) -> bytes:
        blob = self._client.bucket(bucket).blob(key)
        try:
            return blob.download_as_bytes()
        except Exception as e:
            raise self._translate(e, bucket, key, "download") from e

    def put(self, bucket, key, data, content_type="application/octet-stream", metadata=None):
        blob = self._client.bucket(bucket).blob(key)
        blob.metadata = metadata or None
        try:
            # upload_from_string handles the creation/overwrite of the object
            blob.upload_from_string(data, content_type=content_type)
        except Exception as e:
            raise self._translate(e, bucket, key, "upload") from e

    def exists(self, bucket: str, key: str) -> bool:
        try:
            return self._client.bucket(bucket).blob(key).exists()
        except Exception as e:
            raise self._translate(e, bucket, key, "stat") from e

    def metadata(self, bucket: str, key: str) -> Optional[Dict[str, str]]:
        try:
            blob = self._client.bucket(bucket).get_blob(key)
        except Exception as e:
            raise self._translate(e, bucket, key, "stat") from e
        if blob is None:
            return None
        return dict(blob.metadata or {})


# ------------------------------------------------------------------------------
# AZURE BLOB STORAGE BACKEND
# Used when STORAGE_BACKEND="azure". A bucket is a container.
# ------------------------------------------------------------------------------

def _get_azure_client(conn_str: Optional[str] = None):
    """Creates a BlobServiceClient using the connection string."""
    if not BlobServiceClient:
        raise RuntimeError("azure-storage-blob library is not installed.")
    if not conn_str:
        raise ValueError("AZURE_STORAGE_CONNECTION_STRING env var is missing.")
    return BlobServiceClient.from_connection_string(conn_str)


class AzureObjectStorage(ObjectStorage):
    name = "azure"

    def __init__(self, client=None, conn_str: Optional[str] = AZURE_CONN_STR):
        self._client = client or _get_azure_client(conn_str)

    def _blob(self, bucket: str, key: str):
        return self._client.get_container_client(bucket).get_blob_client(key)

    @staticmethod
    def _translate(e: Exception, bucket: str, key: str, action: str) -> StorageError:
        if azure_exceptions and isinstance(e, azure_exceptions.ResourceNotFoundError):
            if getattr(e, "error_code", None) == "ContainerNotFound":
                return StorageError.bucket_not_found(bucket)
            return StorageError.not_found(bucket, key)
        if azure_exceptions and isinstance(e, azure_exceptions.ClientAuthenticationError):
            return StorageError.access_denied(bucket, key)
        if azure_exceptions and isinstance(e, azure_exceptions.HttpResponseError) and e.status_code == 403:
            return StorageError.access_denied(bucket, key)
        return StorageError(f"Failed to {action} az://{bucket}/{key}: {e}")

    def get(self, bucket: str, key: str) -> bytes:
        try:
            return self._blob(bucket, key).download_blob().readall()
        except Exception as e:
            raise self._translate(e, bucket, key, "download") from e

    def put(self, bucket, key, data, content_type="application/octet-stream", metadata=None):
        try:
            # Upload, overwriting if it exists
            self._blob(bucket, key).upload_blob(
                data,
                overwrite=True,
                content_settings=ContentSettings(content_type=content_type),
                metadata=metadata or None,
            )
        except Exception as e:
            raise self._translate(e, bucket, key, "upload") from e

    def exists(self, bucket: str, key: str) -> bool:
        try:
            return self._blob(bucket, key).exists()
        except Exception as e:
            raise self._translate(e, bucket, key, "stat") from e

    def metadata(self, bucket: str, key: str) -> Optional[Dict[str, str]]:
        try:
            properties = self._blob(bucket, key).get_blob_properties()
        except Exception as e:
            error = self._translate(e, bucket, key, "stat")
            if error.code == StorageError.OBJECT_NOT_FOUND:
                return None
            raise error from e
        return dict(properties.metadata or {})


# ------------------------------------------------------------------------------
# PUBLIC API
# ------------------------------------------------------------------------------

def create_storage(backend: str = STORAGE_BACKEND) -> ObjectStorage:
    """Build the object storage backend selected by STORAGE_BACKEND."""
    if backend == "local":
        storage = LocalObjectStorage()
    elif backend == "gcp":
        storage = GCSObjectStorage()
    elif backend == "azure":
        storage = AzureObjectStorage()
    else:
        raise RuntimeError(f"Unsupported STORAGE_BACKEND: {backend}")

    logger.info("Object storage ready", extra={"backend": storage.name})
    return storage
