"""
Region-aware S3 access for release sharing.

Released data commonly lives in buckets spread over several regions while
templates and published manifests go to a single temp bucket. Signing a
URL or writing an object with a client bound to the wrong region yields a
redirect or a signature mismatch, so every call here is routed to a client
created for the bucket's own region.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional, cast

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

LOGGER = logging.getLogger("releaselib.s3_utils")


def normalize_bucket_name(bucket: Optional[str]) -> Optional[str]:
    """Strip an ``s3://`` prefix, trailing slashes and any key path from a bucket."""
    if not bucket:
        return None
    bucket = bucket.strip()
    if bucket.startswith("s3://"):
        bucket = bucket[len("s3://"):]
    bucket = bucket.split("/", 1)[0]
    return bucket or None


def _require_bucket(bucket: Optional[str]) -> str:
    normalized = normalize_bucket_name(bucket)
    if not normalized:
        raise ValueError("Bucket name must be non-empty")
    return normalized


class RegionAwareS3Client:
    """S3 client facade that keeps one boto3 client per region.

    Bucket regions are discovered with GetBucketLocation and cached. Both
    caches are guarded by locks since presigning fans out over a thread
    pool.
    """

    def __init__(
        self,
        default_region: str = "ap-southeast-2",
        profile: Optional[str] = None,
    ):
        self.default_region = default_region
        self.profile = profile

        self._bucket_regions: Dict[str, str] = {}
        self._bucket_regions_lock = threading.Lock()

        self._clients: Dict[str, Any] = {}
        self._clients_lock = threading.Lock()

        self._default_client = self._client_for_region(default_region)

    def _create_client(self, region: str) -> Any:
        session_kwargs = {"region_name": region}
        if self.profile:
            session_kwargs["profile_name"] = self.profile
        session = boto3.Session(**session_kwargs)
        return session.client("s3", config=Config(signature_version="s3v4"))

    def _client_for_region(self, region: str) -> Any:
        with self._clients_lock:
            client = self._clients.get(region)
            if client is None:
                LOGGER.debug("Creating S3 client for region %s", region)
                client = self._create_client(region)
                self._clients[region] = client
            return client

    def get_bucket_region(self, bucket: str) -> str:
        """Region of a bucket, falling back to the default region when unknown."""
        name = normalize_bucket_name(bucket)
        if not name:
            return self.default_region

        with self._bucket_regions_lock:
            cached = self._bucket_regions.get(name)
        if cached:
            return cached

        try:
            response = self._default_client.get_bucket_location(Bucket=name)
            # us-east-1 buckets report a null constraint
            region = response.get("LocationConstraint") or "us-east-1"
        except ClientError as e:
            LOGGER.warning("Could not determine region for bucket %s: %s", name, e)
            region = self.default_region

        with self._bucket_regions_lock:
            self._bucket_regions[name] = region
        return region

    def get_client_for_bucket(self, bucket: str) -> Any:
        return self._client_for_region(self.get_bucket_region(bucket))

    def put_object(self, Bucket: str, Key: str, **kwargs) -> Dict[str, Any]:
        name = _require_bucket(Bucket)
        client = self.get_client_for_bucket(name)
        return cast(Dict[str, Any], client.put_object(Bucket=name, Key=Key, **kwargs))

    def head_object(self, Bucket: str, Key: str, **kwargs) -> Dict[str, Any]:
        name = _require_bucket(Bucket)
        client = self.get_client_for_bucket(name)
        return cast(Dict[str, Any], client.head_object(Bucket=name, Key=Key, **kwargs))

