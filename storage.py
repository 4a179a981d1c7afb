"""Archive of imported and exported CSV files, on S3 when configured, else on local disk."""

import os
from io import BytesIO
from pathlib import Path

import boto3
import pandas as pd
import structlog
from botocore.exceptions import BotoCoreError, ClientError
from dotenv import load_dotenv

load_dotenv()

logger = structlog.get_logger()

# Environment variables
S3_BUCKET = os.environ.get("S3_BUCKET")
AWS_REGION = os.environ.get("AWS_REGION", "us-east-1")
ARCHIVE_DIR = os.environ.get("ARCHIVE_DIR", "archive")


def get_s3_client():
    return boto3.client("s3", region_name=AWS_REGION)


def _local_path(file_name: str, folder: str) -> Path:
    return Path(ARCHIVE_DIR) / folder / file_name


def save_file(file_name: str, data: bytes | pd.DataFrame, folder: str = "imports") -> bool:
    """
    Saves a file to either local disk or S3.
    """
    if isinstance(data, pd.DataFrame):
        buffer = BytesIO()
        data.to_csv(buffer, index=False)
        body = buffer.getvalue()
    else:
        body = data

    if S3_BUCKET:
        key = f"{folder}/{file_name}"
        try:
            get_s3_client().put_object(Bucket=S3_BUCKET, Key=key, Body=body)
        except (BotoCoreError, ClientError) as e:
            logger.error("archive_upload_failed", key=key, error=str(e))
            return False
        logger.info("archived", backend="s3", key=key)
        return True

    local_path = _local_path(file_name, folder)
    local_path.parent.mkdir(parents=True, exist_ok=True)
    local_path.write_bytes(body)
    logger.info("archived", backend="local", path=str(local_path))
    return True


def load_file(file_name: str, folder: str = "imports") -> pd.DataFrame | None:
    """
    Loads an archived CSV file, or None when it does not exist.
    """
    if S3_BUCKET:
        s3 = get_s3_client()
        key = f"{folder}/{file_name}"
        try:
            obj = s3.get_object(Bucket=S3_BUCKET, Key=key)
            return pd.read_csv(obj["Body"])
        except s3.exceptions.NoSuchKey:
            return None
        except (BotoCoreError, ClientError) as e:
            logger.error("archive_download_failed", key=key, error=str(e))
            return None

    local_path = _local_path(file_name, folder)
    if local_path.exists():
        return pd.read_csv(local_path)
    return None


def list_files(folder: str = "imports") -> list[str]:
    if S3_BUCKET:
        try:
            response = get_s3_client().list_objects_v2(Bucket=S3_BUCKET, Prefix=f"{folder}/")
        except (BotoCoreError, ClientError) as e:
            logger.error("archive_list_failed", folder=folder, error=str(e))
            return []
        return [obj["Key"].split("/")[-1] for obj in response.get("Contents", [])]

    local_path = Path(ARCHIVE_DIR) / folder
    if local_path.exists():
        return sorted(f.name for f in local_path.glob("*") if f.is_file())
    return []
