"""
Storage for uploaded import files.

Validation and execution always re-read the original bytes, so the upload is
kept either in a local directory or in an S3-compatible bucket (AWS S3,
MinIO, Backblaze B2, ...) depending on ``settings.storage_provider``.
"""
import hashlib
import logging
import os
from pathlib import Path
from typing import Any, Dict

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from lims_import.core.config import settings
from lims_import.core.exceptions import StorageError

logger = logging.getLogger(__name__)


class StorageUploadError(StorageError):
    """Raised when file upload fails."""
    pass


class StorageDownloadError(StorageError):
    """Raised when file download fails."""
    pass


class StorageIntegrityError(StorageError):
    """Raised when stored bytes no longer match the hash recorded at upload."""
    pass


def compute_file_hash(file_content: bytes) -> str:
    return hashlib.sha256(file_content).hexdigest()


def _use_s3() -> bool:
    return settings.storage_provider.lower() == "s3"


def get_storage_client():
    """
    Get an S3-compatible storage client.

    Raises:
        StorageError: If the S3 configuration is incomplete or the client cannot be built
    """
    if not all([settings.storage_access_key_id, settings.storage_secret_access_key, settings.storage_bucket_name]):
        raise StorageError(
            "Storage configuration is incomplete. Please set STORAGE_ACCESS_KEY_ID, "
            "STORAGE_SECRET_ACCESS_KEY, and STORAGE_BUCKET_NAME in your environment."
        )

    config = Config(
        signature_version='s3v4',
        retries={'max_attempts': 3, 'mode': 'standard'}
    )

    client_kwargs = {
        'service_name': 's3',
        'aws_access_key_id': settings.storage_access_key_id,
        'aws_secret_access_key': settings.storage_secret_access_key,
        'config': config,
    }
    if settings.storage_endpoint_url:
        client_kwargs['endpoint_url'] = settings.storage_endpoint_url
    if settings.storage_region:
        client_kwargs['region_name'] = settings.storage_region

    try:
        return boto3.client(**client_kwargs)
    except (BotoCoreError, ValueError) as e:
        logger.error("Failed to create storage client: %s", e)
        raise StorageError(f"Failed to connect to storage: {e}")


def _local_path(file_path: str) -> Path:
    root = Path(settings.import_storage_dir).resolve()
    target = (root / file_path).resolve()
    if root not in target.parents:
        raise StorageError(f"Invalid storage path: {file_path}")
    return target


def upload_file(file_content: bytes, file_name: str, folder: str = "imports") -> Dict[str, Any]:
    """
    Store uploaded bytes.

    Args:
        file_content: The file content as bytes
        file_name: Name to store the file under (callers make it unique)
        folder: Folder/prefix inside the storage root

    Returns:
        Dictionary with ``file_path``, ``file_name``, ``size`` and ``file_hash``

    Raises:
        StorageUploadError: If the bytes cannot be written
    """
    file_path = f"{folder}/{file_name}"
    file_hash = compute_file_hash(file_content)

    if _use_s3():
        try:
            client = get_storage_client()
            client.put_object(
                Bucket=settings.storage_bucket_name,
                Key=file_path,
                Body=file_content,
                Metadata={'sha256': file_hash},
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            logger.error("Storage upload failed: %s - %s", error_code, e)
            raise StorageUploadError(f"Upload failed: {e}")
        except BotoCoreError as e:
            logger.error("Unexpected error during upload: %s", e)
            raise StorageUploadError(f"Upload failed: {e}")
    else:
        target = _local_path(file_path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(file_content)
        except OSError as e:
            logger.error("Local storage write failed for %s: %s", target, e)
            raise StorageUploadError(f"Upload failed: {e}")

    logger.info("Stored %s (%d bytes, sha256=%s)", file_path, len(file_content), file_hash[:12])
    return {
        "file_path": file_path,
        "file_name": file_name,
        "size": len(file_content),
        "file_hash": file_hash,
    }


def download_file(file_path: str, expected_hash: str = None) -> bytes:
    """
    Fetch stored bytes, optionally verifying them against the upload hash.

    Raises:
        StorageDownloadError: If the file is missing or unreadable
        StorageIntegrityError: If ``expected_hash`` does not match
    """
    if _use_s3():
        try:
            client = get_storage_client()
            response = client.get_object(Bucket=settings.storage_bucket_name, Key=file_path)
            content = response['Body'].read()
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == 'NoSuchKey':
                raise StorageDownloadError(f"File not found: {file_path}")
            logger.error("Storage download failed: %s - %s", error_code, e)
            raise StorageDownloadError(f"Download failed: {e}")
        except BotoCoreError as e:
            logger.error("Unexpected error during download: %s", e)
            raise StorageDownloadError(f"Download failed: {e}")
    else:
        target = _local_path(file_path)
        if not target.exists():
            raise StorageDownloadError(f"File not found: {file_path}")
        try:
            content = target.read_bytes()
        except OSError as e:
            raise StorageDownloadError(f"Download failed: {e}")

    if expected_hash and compute_file_hash(content) != expected_hash:
        logger.error("Hash mismatch for stored import file %s", file_path)
        raise StorageIntegrityError(f"Stored file {file_path} does not match its upload hash")
    return content


def delete_file(file_path: str) -> bool:
    """
    Delete a stored file.

    Returns:
        True if deletion was successful, False otherwise
    """
    try:
        if _use_s3():
            client = get_storage_client()
            client.delete_object(Bucket=settings.storage_bucket_name, Key=file_path)
        else:
            target = _local_path(file_path)
            if target.exists():
                os.remove(target)
        return True
    except (StorageError, ClientError, BotoCoreError, OSError) as e:
        logger.error("Error deleting file from storage: %s", e)
        return False
