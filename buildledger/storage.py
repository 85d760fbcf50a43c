"""
Blob storage for generated documents.

PDFs are written to S3 and handed out as presigned URLs.  Keys are namespaced
by owner so one account's files never share a prefix with another's.
"""

from __future__ import annotations

import os
import re
from typing import Optional

import boto3
from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError, ClientError

from .errors import TransientNetworkError


def get_s3_client() -> BaseClient:
    """Return an S3 client configured using environment variables or IAM roles."""
    return boto3.client(
        "s3",
        aws_access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
        aws_secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        region_name=os.getenv("AWS_DEFAULT_REGION", "us-east-1"),
    )


def _key_part(s: Optional[str]) -> str:
    # Replace spaces, slashes and other separators with underscores
    return re.sub(r"[^A-Za-z0-9_-]+", "_", (s or "unknown")).strip("_") or "unknown"


def document_pdf_key(owner_id: str, kind: str, number: str) -> str:
    return f"pdfs/{_key_part(owner_id)}/{kind}-{_key_part(number)}.pdf"


class S3BlobStore:
    def __init__(self, bucket: str, *, client: Optional[BaseClient] = None, url_ttl: int = 7 * 24 * 3600) -> None:
        self.bucket = bucket
        self.url_ttl = url_ttl
        self._client = client

    @property
    def client(self) -> BaseClient:
        if self._client is None:
            self._client = get_s3_client()
        return self._client

    def put(self, key: str, content: bytes, *, content_type: str = "application/pdf") -> str:
        """Upload ``content`` and return a URL the recipient can open.

        Parameters
        ----------
        key : str
            The object key (path within the bucket).
        content : bytes
            The raw file bytes.
        content_type : str, optional
            MIME type of the object.  Defaults to application/pdf.
        """
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=content, ContentType=content_type)
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=self.url_ttl,
            )
        except (BotoCoreError, ClientError) as exc:
            raise TransientNetworkError(f"upload of {key} failed") from exc
