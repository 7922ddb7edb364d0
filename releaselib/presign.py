"""Location signers for presigned object URLs.

One presigner per storage protocol, selected at call time by protocol
string through ``PresignerRegistry``. Each signer returns a time limited
HTTPS URL for a single object.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, Iterable, Optional, Protocol, Set
from urllib.parse import urlencode

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError
from google.cloud import storage

from releaselib.config import Settings
from releaselib.exceptions import ExternalServiceError, UnknownProtocolError
from releaselib.object_urls import GS_PROTOCOL, R2_PROTOCOL, S3_PROTOCOL
from releaselib.s3_utils import RegionAwareS3Client

LOGGER = logging.getLogger("releaselib.presign")

SEVEN_DAYS = 60 * 60 * 24 * 7

# Google rejects v4 signatures that reach the full seven days
GCS_EXPIRY_MARGIN = 60 * 5


class Presigner(Protocol):
    protocol: str

    def presign(self, release_key: str, bucket: str, key: str, audit_id: str) -> str:
        ...


class S3Presigner:
    """Presign GetObject for S3 objects using the bucket's regional client.

    The release key and audit id travel as ``x-releaseKey`` / ``x-auditId``
    query parameters so that S3 access logs can be tied back to the release
    and to the audit event that issued the URL.
    """

    protocol = S3_PROTOCOL

    def __init__(self, s3_client: RegionAwareS3Client, expires_in: int = SEVEN_DAYS):
        self.s3_client = s3_client
        self.expires_in = expires_in
        self._hooked: Set[int] = set()
        self._hooked_lock = threading.Lock()

    def _hook(self, client: Any) -> None:
        with self._hooked_lock:
            if id(client) in self._hooked:
                return
            client.meta.events.register_first("before-sign.s3.GetObject", _add_release_query_params)
            self._hooked.add(id(client))

    def presign(self, release_key: str, bucket: str, key: str, audit_id: str) -> str:
        client = self.s3_client.get_client_for_bucket(bucket)
        self._hook(client)
        _signing_context.params = {"x-releaseKey": release_key, "x-auditId": audit_id}
        try:
            return client.generate_presigned_url(
                ClientMethod="get_object",
                Params={"Bucket": bucket, "Key": key},
                ExpiresIn=self.expires_in,
            )
        except ClientError as e:
            LOGGER.error("Failed to presign s3://%s/%s: %s", bucket, key, str(e))
            raise ExternalServiceError(f"Failed to presign s3://{bucket}/{key}") from e
        finally:
            _signing_context.params = None


# Signing runs synchronously on the calling thread, so the hook reads the
# parameters set by that thread's presign call.
_signing_context = threading.local()


def _add_release_query_params(request: Any, **kwargs) -> None:
    params = getattr(_signing_context, "params", None)
    if not params:
        return
    extra = urlencode({k: v for k, v in params.items() if v})
    if extra:
        request.url += ("&" if "?" in request.url else "?") + extra


class GcsPresigner:
    """Presign reads of GCS objects with v4 signed URLs."""

    protocol = GS_PROTOCOL

    def __init__(self, storage_client: Any = None, expires_in: int = SEVEN_DAYS - GCS_EXPIRY_MARGIN):
        self._storage_client = storage_client
        self.expires_in = expires_in

    @property
    def storage_client(self) -> Any:
        if self._storage_client is None:
            self._storage_client = storage.Client()
        return self._storage_client

    def presign(self, release_key: str, bucket: str, key: str, audit_id: str) -> str:
        blob = self.storage_client.bucket(bucket).blob(key)
        LOGGER.debug("Signing gs://%s/%s for release %s", bucket, key, release_key)
        return blob.generate_signed_url(
            version="v4",
            method="GET",
            expiration=int(time.time() + self.expires_in),
        )


class R2Presigner:
    """Presign reads of Cloudflare R2 objects through its S3-compatible API."""

    protocol = R2_PROTOCOL

    def __init__(
        self,
        endpoint_url: str,
        access_key_id: str,
        secret_access_key: str,
        expires_in: int = SEVEN_DAYS,
    ):
        config = Config(
            signature_version="s3v4",
            request_checksum_calculation="when_required",
            response_checksum_validation="when_required",
        )
        self.client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name="auto",
            config=config,
        )
        self.expires_in = expires_in

    def presign(self, release_key: str, bucket: str, key: str, audit_id: str) -> str:
        LOGGER.debug("Signing r2://%s/%s for release %s", bucket, key, release_key)
        try:
            return self.client.generate_presigned_url(
                ClientMethod="get_object",
                Params={"Bucket": bucket, "Key": key},
                ExpiresIn=self.expires_in,
            )
        except ClientError as e:
            LOGGER.error("Failed to presign r2://%s/%s: %s", bucket, key, str(e))
            raise ExternalServiceError(f"Failed to presign r2://{bucket}/{key}") from e


class PresignerRegistry:
    """Protocol → presigner lookup used by the flat row transformer."""

    def __init__(self, presigners: Iterable[Presigner] = ()):
        self._presigners: Dict[str, Presigner] = {}
        for p in presigners:
            self.register(p)

    def register(self, presigner: Presigner) -> None:
        self._presigners[presigner.protocol] = presigner

    @property
    def protocols(self):
        return sorted(self._presigners)

    def presign(self, release_key: str, protocol: str, bucket: str, key: str, audit_id: str) -> str:
        """Presign with the signer registered for protocol.

        Raises:
            UnknownProtocolError: No signer is registered for the protocol.
        """
        presigner = self._presigners.get(protocol)
        if presigner is None:
            raise UnknownProtocolError(f"Unhandled protocol {protocol}", details={"protocol": protocol})
        return presigner.presign(release_key, bucket, key, audit_id)


def build_presigner_registry(
    settings: Settings,
    s3_client: Optional[RegionAwareS3Client] = None,
    include_gcs: bool = True,
) -> PresignerRegistry:
    """Registry with every signer the settings allow.

    S3 is always available; R2 only when its endpoint and keys are set.
    """
    s3_client = s3_client or RegionAwareS3Client(
        default_region=settings.aws_default_region,
        profile=settings.aws_profile,
    )
    registry = PresignerRegistry([S3Presigner(s3_client, settings.presign_expiry_seconds)])
    if include_gcs:
        registry.register(
            GcsPresigner(expires_in=min(settings.presign_expiry_seconds, SEVEN_DAYS - GCS_EXPIRY_MARGIN))
        )
    if settings.r2_configured:
        registry.register(
            R2Presigner(
                endpoint_url=settings.r2_endpoint_url,
                access_key_id=settings.r2_access_key_id,
                secret_access_key=settings.r2_secret_access_key,
                expires_in=settings.presign_expiry_seconds,
            )
        )
    LOGGER.debug("Presigner registry protocols: %s", registry.protocols)
    return registry
