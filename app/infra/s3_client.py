# app/infra/s3_client.py
import logging

import boto3
from botocore.config import Config

from app.core.settings import Settings

logger = logging.getLogger(__name__)


def make_s3_client(settings: Settings):
    """S3 client met standaardconfig; endpoint_url maakt MinIO mogelijk."""
    cfg = Config(
        region_name=settings.S3_REGION,
        # retries doen we zelf (StorageWriter/Verifier), boto alleen 1x
        retries={"max_attempts": 1, "mode": "standard"},
        connect_timeout=3,
        read_timeout=10,
    )
    kwargs = {"config": cfg}
    if settings.S3_ENDPOINT_URL:
        kwargs["endpoint_url"] = settings.S3_ENDPOINT_URL
    client = boto3.client("s3", **kwargs)
    logger.info(
        "S3 client initialized region=%s bucket=%s endpoint=%s",
        settings.S3_REGION, settings.S3_BUCKET, settings.S3_ENDPOINT_URL or "aws",
    )
    return client
