import io
import logging
import os
import uuid
from functools import lru_cache
from datetime import datetime, timezone
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from PIL import Image

from discrecovery.config import settings

logger = logging.getLogger(__name__)

BUCKET = settings.R2_BUCKET
FOLDER = "drop-offs"
URL = f"https://{settings.CLOUDFLARE_ACCOUNT_ID}.r2.cloudflarestorage.com"


@lru_cache(maxsize=1)
def get_client():
    # created on first use so importing never needs R2 credentials
    return boto3.client(
        service_name="s3",
        endpoint_url=URL if settings.CLOUDFLARE_ACCOUNT_ID else None,
        aws_access_key_id=settings.AWS_ACCESS_KEY_ID or None,
        aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY or None,
        region_name="auto",
    )


def compress_image(data: bytes, max_width=1400, quality=80):
    img = Image.open(io.BytesIO(data))
    img = img.convert("RGB")

    # Resize while keeping aspect ratio
    w, h = img.size
    if w > max_width:
        new_height = int(h * (max_width / w))
        img = img.resize((max_width, new_height), Image.LANCZOS)

    buffer = io.BytesIO()

    try:
        img.save(buffer, format="WEBP", quality=quality, method=6)
        ext = "webp"
    except (OSError, KeyError) as e:
        logger.warning("WebP encoding failed, falling back to JPEG: %s", e)

        buffer = io.BytesIO()
        img.save(buffer, format="JPEG", quality=quality, optimize=True)
        ext = "jpg"

    buffer.seek(0)
    return buffer, ext


def upload_to_s3(buffer: io.BytesIO, ext: str, recovery_event_id: uuid.UUID, original_name: Optional[str] = None):
    base = os.path.splitext(os.path.basename(original_name or "photo"))[0] or "photo"

    ts = int(datetime.now(timezone.utc).timestamp())
    key = f"{FOLDER}/{recovery_event_id}/{base}-{ts}.{ext}"

    get_client().upload_fileobj(buffer, BUCKET, key)
    logger.info("Uploaded drop-off photo %s", key)

    return key


def generate_signed_url(key: Optional[str], expires_in: int = settings.SIGNED_URL_EXPIRES_IN):
    if not key:
        return None

    try:
        return get_client().generate_presigned_url(
            "get_object",
            Params={"Bucket": BUCKET, "Key": key},
            ExpiresIn=expires_in,
        )
    except (BotoCoreError, ClientError) as e:
        logger.error("Error generating signed URL for %s: %s", key, e)
        return None


def delete_s3_object(key: str):
    try:
        get_client().delete_object(Bucket=BUCKET, Key=key)
    except (BotoCoreError, ClientError) as e:
        logger.error("Error deleting S3 object %s: %s", key, e)
