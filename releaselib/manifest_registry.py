"""DynamoDB-backed storage for activated master manifest snapshots.

One item per release. The manifest dict is stored gzip+base64 alongside its
sha256 entity tag and a few counts for listing. Later sharing operations
read this snapshot back verbatim instead of reloading the specimen tree.
"""

from __future__ import annotations

import base64
import datetime as dt
import gzip
import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import ClientError

from releaselib.exceptions import ExternalServiceError
from releaselib.models import MANIFEST_SCHEMA_VERSION, MasterManifest

LOGGER = logging.getLogger("releaselib.manifest_registry")

# DynamoDB items are capped at 400KB
MAX_MANIFEST_PAYLOAD_BYTES = 350_000


class ManifestTooLargeError(ValueError):
    """Raised when the encoded manifest cannot fit into a DynamoDB item."""


@dataclass(frozen=True)
class ActivatedManifest:
    release_key: str
    activation_id: str
    activated_at: str
    manifest_etag: str
    case_count: int
    specimen_count: int
    artifact_count: int
    manifest_gzip_b64: str

    @property
    def manifest(self) -> MasterManifest:
        return MasterManifest.from_dict(json.loads(_gzip_b64_decode(self.manifest_gzip_b64)))

    def to_metadata_dict(self) -> Dict[str, Any]:
        return {
            "release_key": self.release_key,
            "activation_id": self.activation_id,
            "activated_at": self.activated_at,
            "manifest_etag": self.manifest_etag,
            "case_count": self.case_count,
            "specimen_count": self.specimen_count,
            "artifact_count": self.artifact_count,
        }


def _utc_now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat().replace("+00:00", "Z")


def _gzip_b64_encode(text: str) -> str:
    return base64.b64encode(gzip.compress(text.encode("utf-8"))).decode("ascii")


def _gzip_b64_decode(b64: str) -> str:
    return gzip.decompress(base64.b64decode(b64.encode("ascii"))).decode("utf-8")


def manifest_json(manifest: MasterManifest) -> str:
    """Canonical JSON of a manifest; identical manifests give identical text."""
    return json.dumps(manifest.to_dict(), sort_keys=True, separators=(",", ":"))


def manifest_etag(manifest: MasterManifest) -> str:
    return hashlib.sha256(manifest_json(manifest).encode("utf-8")).hexdigest()


class ManifestRegistry:
    """DynamoDB-backed manifest snapshot registry keyed by release key."""

    def __init__(
        self,
        table_name: str = "release-share-manifests",
        region: str = "ap-southeast-2",
        profile: Optional[str] = None,
    ):
        session_kwargs = {"region_name": region}
        if profile:
            session_kwargs["profile_name"] = profile
        session = boto3.Session(**session_kwargs)
        self.dynamodb = session.resource("dynamodb")
        self.table_name = table_name
        self.table = self.dynamodb.Table(table_name)

        LOGGER.info("ManifestRegistry bound to table: %s", table_name)

    def create_table_if_not_exists(self) -> None:
        try:
            self.table.load()
            LOGGER.info("Manifest table %s already exists", self.table_name)
            return
        except ClientError as e:
            if e.response["Error"]["Code"] != "ResourceNotFoundException":
                raise

        LOGGER.info("Creating manifest table %s", self.table_name)
        table = self.dynamodb.create_table(
            TableName=self.table_name,
            KeySchema=[{"AttributeName": "release_key", "KeyType": "HASH"}],
            AttributeDefinitions=[{"AttributeName": "release_key", "AttributeType": "S"}],
            BillingMode="PAY_PER_REQUEST",
        )
        table.wait_until_exists()
        LOGGER.info("Manifest table %s created successfully", self.table_name)

    def save_manifest(self, manifest: MasterManifest) -> ActivatedManifest:
        """Store a manifest as the active snapshot for its release, replacing any other."""
        text = manifest_json(manifest)
        payload = _gzip_b64_encode(text)
        if len(payload.encode("utf-8")) > MAX_MANIFEST_PAYLOAD_BYTES:
            raise ManifestTooLargeError(
                f"Manifest for release {manifest.release_key} is too large to store in DynamoDB"
            )

        activated = ActivatedManifest(
            release_key=manifest.release_key,
            activation_id=uuid.uuid4().hex,
            activated_at=_utc_now_iso(),
            manifest_etag=hashlib.sha256(text.encode("utf-8")).hexdigest(),
            case_count=len(manifest.case_tree),
            specimen_count=len(manifest.specimen_list),
            artifact_count=manifest.artifact_count,
            manifest_gzip_b64=payload,
        )

        item = dict(activated.to_metadata_dict())
        item["manifest_gzip_b64"] = payload
        item["schema_version"] = MANIFEST_SCHEMA_VERSION

        try:
            self.table.put_item(Item=item)
        except ClientError as e:
            LOGGER.error("Failed to save manifest for release %s: %s", manifest.release_key, str(e))
            raise ExternalServiceError(f"Failed to save manifest for release {manifest.release_key}") from e

        LOGGER.info(
            "Saved manifest for release %s (etag=%s, specimens=%d, artifacts=%d)",
            activated.release_key,
            activated.manifest_etag[:12],
            activated.specimen_count,
            activated.artifact_count,
        )
        return activated

    def get_manifest(self, release_key: str) -> Optional[ActivatedManifest]:
        """The active snapshot for a release, or None if it is not activated."""
        try:
            resp = self.table.get_item(Key={"release_key": release_key})
        except ClientError as e:
            LOGGER.error("Failed to get manifest for release %s: %s", release_key, str(e))
            raise ExternalServiceError(f"Failed to get manifest for release {release_key}") from e

        item = resp.get("Item")
        if not item:
            return None

        return ActivatedManifest(
            release_key=item["release_key"],
            activation_id=item.get("activation_id") or "",
            activated_at=item.get("activated_at") or "",
            manifest_etag=item.get("manifest_etag") or "",
            case_count=int(item.get("case_count") or 0),
            specimen_count=int(item.get("specimen_count") or 0),
            artifact_count=int(item.get("artifact_count") or 0),
            manifest_gzip_b64=item.get("manifest_gzip_b64") or "",
        )

    def delete_manifest(self, release_key: str) -> bool:
        """Remove the active snapshot. Returns False if there was none."""
        try:
            resp = self.table.delete_item(Key={"release_key": release_key}, ReturnValues="ALL_OLD")
        except ClientError as e:
            LOGGER.error("Failed to delete manifest for release %s: %s", release_key, str(e))
            raise ExternalServiceError(f"Failed to delete manifest for release {release_key}") from e
        deleted = bool(resp.get("Attributes"))
        if deleted:
            LOGGER.info("Deleted manifest for release %s", release_key)
        return deleted
