from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

_CACHE_CONTROL = "public, max-age=31536000, immutable"


@dataclass(frozen=True)
class R2Settings:
    bucket: str
    endpoint: str
    access_key_id: str
    secret_access_key: str

    @classmethod
    def from_env(cls) -> Optional[R2Settings]:
        names = ("R2_BUCKET", "R2_ENDPOINT", "R2_ACCESS_KEY_ID", "R2_SECRET_ACCESS_KEY")
        values = [os.getenv(name, "").strip() for name in names]
        if not all(values):
            return None
        return cls(*values)


class ImageStore:
    """
    Generated dish images keyed by ``gen/<session>/<name>.png``.

    Bytes always stay in memory for the lifetime of the session; when R2 is
    configured they are also written through so other instances can serve them.
    """

    def __init__(self, r2: Optional[R2Settings] = None) -> None:
        self._entries: Dict[str, Tuple[bytes, str]] = {}
        self._r2 = r2 if r2 is not None else R2Settings.from_env()
        self._s3 = None
        if self._r2 is not None:
            self._s3 = boto3.client(
                "s3",
                endpoint_url=self._r2.endpoint,
                aws_access_key_id=self._r2.access_key_id,
                aws_secret_access_key=self._r2.secret_access_key,
                region_name="auto",
            )

    @property
    def is_remote(self) -> bool:
        return self._s3 is not None

    def put(self, key: str, data: bytes, *, content_type: str) -> None:
        self._entries[key] = (data, content_type)
        if self._s3 is None:
            return
        self._s3.put_object(
            Bucket=self._r2.bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
            CacheControl=_CACHE_CONTROL,
        )

    def get(self, key: str) -> Optional[Tuple[bytes, str]]:
        entry = self._entries.get(key)
        if entry is not None or self._s3 is None:
            return entry

        try:
            obj = self._s3.get_object(Bucket=self._r2.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            logger.warning("R2 get_object failed for %s: %s", key, e)
            return None

        body = obj.get("Body")
        if body is None:
            return None
        entry = (body.read(), obj.get("ContentType") or "image/png")
        self._entries[key] = entry
        return entry

    def discard_prefix(self, prefix: str) -> int:
        """Drop in-memory entries under ``prefix``; R2 copies are kept."""
        doomed = [k for k in self._entries if k.startswith(prefix)]
        for k in doomed:
            del self._entries[k]
        return len(doomed)
