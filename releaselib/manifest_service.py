"""Release activation and the active-manifest views built from its snapshot."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from releaselib.authorization import filter_master_manifest, manifest_statistics
from releaselib.bucket_key import ALL_PROTOCOLS, transform_master_manifest_to_bucket_key_manifest
from releaselib.config import Settings
from releaselib.exceptions import FeatureNotConfiguredError, ReleaseNotActivatedError
from releaselib.htsget import (
    READS_ENDPOINT,
    VARIANTS_ENDPOINT,
    HtsgetPublisher,
    RestrictionTable,
    create_htsget_rows,
    transform_master_manifest_to_htsget_manifest,
)
from releaselib.manifest_registry import ActivatedManifest, ManifestRegistry
from releaselib.manifest_tsv import (
    DEFAULT_TSV_COLUMNS,
    ManifestRow,
    create_tsv,
    transform_master_manifest_to_rows,
)
from releaselib.models import MasterManifest
from releaselib.presign import PresignerRegistry
from releaselib.s3_utils import RegionAwareS3Client
from releaselib.tree_loader import DynamoSpecimenTreeSource, SpecimenTreeSource, load_master_manifest

LOGGER = logging.getLogger("releaselib.manifest_service")


class ManifestService:
    """Activates releases and serves the manifests of activated releases.

    Activation is the only point where the specimen tree is read; every
    other call works from the stored snapshot so that what a release shares
    only changes when it is re-activated.
    """

    def __init__(
        self,
        tree_source: SpecimenTreeSource,
        registry: ManifestRegistry,
        settings: Settings,
        restriction_table: Optional[RestrictionTable] = None,
        s3_client: Optional[RegionAwareS3Client] = None,
    ):
        self.tree_source = tree_source
        self.registry = registry
        self.settings = settings
        self.restriction_table = restriction_table
        self._s3_client = s3_client

    @classmethod
    def from_settings(cls, settings: Settings) -> "ManifestService":
        """Service wired to the DynamoDB tables and buckets named in settings."""
        tree_source = DynamoSpecimenTreeSource(
            releases_table_name=settings.releases_table_name,
            dataset_cases_table_name=settings.dataset_cases_table_name,
            region=settings.aws_default_region,
            profile=settings.aws_profile,
        )
        registry = ManifestRegistry(
            table_name=settings.manifests_table_name,
            region=settings.aws_default_region,
            profile=settings.aws_profile,
        )
        restriction_table = None
        if settings.htsget_restrictions_file:
            restriction_table = RestrictionTable.from_yaml(settings.htsget_restrictions_file)
        return cls(tree_source, registry, settings, restriction_table=restriction_table)

    @property
    def s3_client(self) -> RegionAwareS3Client:
        if self._s3_client is None:
            self._s3_client = RegionAwareS3Client(
                default_region=self.settings.aws_default_region,
                profile=self.settings.aws_profile,
            )
        return self._s3_client

    # ========== Activation ==========

    def activate_release(self, release_key: str) -> ActivatedManifest:
        """Load, filter and snapshot the manifest for a release.

        Raises:
            NoReleaseFoundError: Unknown release key.
            ReleaseActivatedNothingError: Nothing would be shared.
            ReleaseActivatedMismatchedExpectationsError: Enabled data types
                have no backing artifacts.
        """
        unfiltered = load_master_manifest(self.tree_source, release_key)
        filtered = filter_master_manifest(unfiltered, validate=True)
        activated = self.registry.save_manifest(filtered)

        stats = manifest_statistics(filtered)
        LOGGER.info(
            "Activated release %s (etag=%s, cases=%d, specimens=%d, artifacts=%d)",
            release_key,
            activated.manifest_etag[:12],
            stats["manifest_cases"],
            stats["manifest_specimens"],
            stats["manifest_artifacts"],
        )
        return activated

    def deactivate_release(self, release_key: str) -> bool:
        return self.registry.delete_manifest(release_key)

    def get_active_manifest(self, release_key: str) -> Optional[MasterManifest]:
        """The snapshot taken at activation, or None for an inactive release."""
        activated = self.registry.get_manifest(release_key)
        if activated is None:
            return None
        return activated.manifest

    def require_active_manifest(self, release_key: str) -> MasterManifest:
        manifest = self.get_active_manifest(release_key)
        if manifest is None:
            raise ReleaseNotActivatedError(release_key)
        return manifest

    # ========== Derived manifests ==========

    def get_active_bucket_key_manifest(
        self,
        release_key: str,
        protocols: Union[str, Iterable[str]] = ALL_PROTOCOLS,
    ) -> Dict[str, Any]:
        return transform_master_manifest_to_bucket_key_manifest(
            self.require_active_manifest(release_key), protocols
        )

    def get_active_htsget_manifest(self, release_key: str) -> Dict[str, Any]:
        return transform_master_manifest_to_htsget_manifest(
            self.require_active_manifest(release_key), self.restriction_table
        )

    def get_active_tsv_rows(
        self,
        release_key: str,
        signers: Optional[PresignerRegistry] = None,
        audit_id: Optional[str] = None,
    ) -> List[ManifestRow]:
        """Flat rows for the active manifest, presigned when signers are given.

        A fresh audit id is generated when presigning without one so the
        issued URLs can be traced back to this request.
        """
        manifest = self.require_active_manifest(release_key)
        if signers is not None and not audit_id:
            audit_id = uuid.uuid4().hex
        rows = transform_master_manifest_to_rows(
            manifest,
            signers=signers,
            audit_id=audit_id or "",
            max_workers=self.settings.presign_max_workers,
        )
        if signers is not None:
            LOGGER.info("Issued presigned manifest for release %s (audit id %s)", release_key, audit_id)
        return rows

    def get_active_tsv(
        self,
        release_key: str,
        columns: Sequence[str] = DEFAULT_TSV_COLUMNS,
        signers: Optional[PresignerRegistry] = None,
        audit_id: Optional[str] = None,
    ) -> str:
        return create_tsv(self.get_active_tsv_rows(release_key, signers, audit_id), columns)

    # ========== Htsget ==========

    def get_active_htsget_tsv(
        self,
        release_key: str,
        columns: Sequence[str] = DEFAULT_TSV_COLUMNS,
    ) -> str:
        """TSV of htsget URLs (variants then reads) for researchers."""
        if not self.settings.htsget_url:
            raise FeatureNotConfiguredError("No htsget URL is configured (HTSGET_URL)")
        manifest = self.require_active_manifest(release_key)
        htsget_manifest = transform_master_manifest_to_htsget_manifest(manifest, self.restriction_table)
        rows = create_htsget_rows(manifest, htsget_manifest, VARIANTS_ENDPOINT, self.settings.htsget_url)
        rows += create_htsget_rows(manifest, htsget_manifest, READS_ENDPOINT, self.settings.htsget_url)
        return create_tsv(rows, columns)

    def publish_htsget_manifest(self, release_key: str) -> Dict[str, Any]:
        """Publish the htsget manifest to the temp bucket for the htsget endpoint."""
        if not self.settings.temp_bucket:
            raise FeatureNotConfiguredError("No temp bucket is configured (TEMP_BUCKET)")
        publisher = HtsgetPublisher(
            self.s3_client,
            self.settings.temp_bucket,
            self.settings.htsget_max_age_seconds,
        )
        return publisher.publish(release_key, self.get_active_htsget_manifest(release_key))
