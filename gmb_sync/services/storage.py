"""
Storage des exports de données (disconnect "export")
Supporte le filesystem local et R2/S3

Clés: tenants/{tenant_id}/exports/{connection_id}/{timestamp}.json
"""
from pathlib import Path
import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..config import settings
from ..errors import StorageError

# Lazy-init S3 client (only if R2 mode)
_s3_client = None


def _get_s3_client():
    global _s3_client
    if _s3_client is None:
        _s3_client = boto3.client(
            "s3",
            endpoint_url=settings.STORAGE_ENDPOINT or None,
            aws_access_key_id=settings.STORAGE_ACCESS_KEY,
            aws_secret_access_key=settings.STORAGE_SECRET_KEY,
            region_name=settings.STORAGE_REGION
        )
    return _s3_client


def _local_path(key: str) -> Path:
    """
    Résout la clé sous LOCAL_DATA_ROOT

    Raises:
        StorageError: tentative de directory traversal
    """
    base = Path(settings.LOCAL_DATA_ROOT).resolve()
    file_path = (base / key).resolve()
    if not file_path.is_relative_to(base):
        raise StorageError(f"Invalid storage key (directory traversal attempt): {key}")
    return file_path


def _local_read(key: str) -> bytes:
    file_path = _local_path(key)
    if not file_path.is_file():
        raise StorageError(f"File not found: {key}")
    try:
        return file_path.read_bytes()
    except OSError as e:
        raise StorageError(f"Failed to read file: {e}")


def _local_write(key: str, data: bytes) -> None:
    file_path = _local_path(key)
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_bytes(data)
    except OSError as e:
        raise StorageError(f"Failed to write file: {e}")


def _r2_read(key: str) -> bytes:
    s3 = _get_s3_client()
    try:
        response = s3.get_object(Bucket=settings.STORAGE_BUCKET, Key=key)
        return response["Body"].read()
    except ClientError as e:
        if e.response.get("Error", {}).get("Code", "") == "NoSuchKey":
            raise StorageError(f"Object not found: {key}")
        raise StorageError(f"R2/S3 read error: {e}")
    except BotoCoreError as e:
        raise StorageError(f"Failed to read from R2/S3: {e}")


def _r2_write(key: str, data: bytes) -> None:
    s3 = _get_s3_client()
    try:
        s3.put_object(
            Bucket=settings.STORAGE_BUCKET,
            Key=key,
            Body=data,
            ContentType="application/json"  # Exports JSON uniquement
        )
    except (ClientError, BotoCoreError) as e:
        raise StorageError(f"Failed to write to R2/S3: {e}")


def _r2_exists(key: str) -> bool:
    s3 = _get_s3_client()
    try:
        s3.head_object(Bucket=settings.STORAGE_BUCKET, Key=key)
        return True
    except ClientError as e:
        if e.response.get("Error", {}).get("Code", "") in ("404", "NoSuchKey"):
            return False
        raise StorageError(f"R2/S3 head error: {e}")


def get_object(key: str) -> bytes:
    """
    Raises:
        StorageError: objet absent ou erreur de lecture
    """
    if settings.STORAGE_MODE == "local":
        return _local_read(key)
    elif settings.STORAGE_MODE == "r2":
        return _r2_read(key)
    raise StorageError(f"Unknown storage mode: {settings.STORAGE_MODE}")


def put_object(key: str, data: bytes) -> None:
    """
    Raises:
        StorageError: écriture impossible
    """
    if settings.STORAGE_MODE == "local":
        _local_write(key, data)
    elif settings.STORAGE_MODE == "r2":
        _r2_write(key, data)
    else:
        raise StorageError(f"Unknown storage mode: {settings.STORAGE_MODE}")


def object_exists(key: str) -> bool:
    if settings.STORAGE_MODE == "local":
        try:
            return _local_path(key).is_file()
        except StorageError:
            return False
    elif settings.STORAGE_MODE == "r2":
        return _r2_exists(key)
    return False


def export_key(tenant_id, connection_id, timestamp: str) -> str:
    safe_timestamp = timestamp.replace(":", "-")
    return f"tenants/{tenant_id}/exports/{connection_id}/{safe_timestamp}.json"
