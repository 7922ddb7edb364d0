"""
Access point sharing for activated releases.

Generates and saves the CloudFormation templates for a release, finds the
installed stack (installation itself is done by an external job) and
rewrites the bucket-key manifest so researchers fetch objects through the
access point alias instead of the private bucket.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, Optional, Sequence

import boto3
from botocore.exceptions import ClientError

from releaselib.access_point_resolver import resolve_access_point_urls
from releaselib.access_point_templates import AccessPointEntry, create_access_point_templates
from releaselib.config import Settings
from releaselib.exceptions import (
    ExternalServiceError,
    FeatureNotConfiguredError,
    GenerationUsageError,
    InstalledStackNotFoundError,
)
from releaselib.manifest_service import ManifestService
from releaselib.manifest_tsv import DEFAULT_TSV_COLUMNS, create_tsv
from releaselib.object_urls import S3_PROTOCOL
from releaselib.s3_utils import RegionAwareS3Client

LOGGER = logging.getLogger("releaselib.access_point_service")


def release_stack_name(release_key: str) -> str:
    """CloudFormation stack name an installed access point share uses for a release."""
    return f"release-share-{release_key}"


class AccessPointService:
    """Create, locate and resolve access point shares of a release."""

    def __init__(
        self,
        manifest_service: ManifestService,
        settings: Settings,
        s3_client: Optional[RegionAwareS3Client] = None,
        cloudformation_client: Any = None,
        s3control_client: Any = None,
    ):
        self.manifest_service = manifest_service
        self.settings = settings
        self.s3_client = s3_client or manifest_service.s3_client

        if cloudformation_client is None or s3control_client is None:
            session_kwargs = {"region_name": settings.aws_default_region}
            if settings.aws_profile:
                session_kwargs["profile_name"] = settings.aws_profile
            session = boto3.Session(**session_kwargs)
            cloudformation_client = cloudformation_client or session.client("cloudformation")
            s3control_client = s3control_client or session.client("s3control")
        self.cloudformation = cloudformation_client
        self.s3control = s3control_client

    def create_access_point_templates(
        self,
        release_key: str,
        account_id: str,
        vpc_id: Optional[str] = None,
    ) -> str:
        """Generate templates sharing the release's S3 objects and save them.

        Existing access points are untouched; installing the returned root
        template is left to the job runner.

        Returns:
            HTTPS URL of the root template.

        Raises:
            FeatureNotConfiguredError: No temp bucket to save templates to.
            GenerationUsageError: The release shares no S3 objects.
        """
        if not self.settings.temp_bucket:
            raise FeatureNotConfiguredError("No temp bucket is configured (TEMP_BUCKET)")

        bucket_key = self.manifest_service.get_active_bucket_key_manifest(release_key, [S3_PROTOCOL])
        if not bucket_key["objects"]:
            raise GenerationUsageError(
                f"Release {release_key} has no S3 objects so no access point can be created"
            )

        templates = create_access_point_templates(
            template_bucket=self.settings.temp_bucket,
            template_region=self.settings.aws_default_region,
            release_key=release_key,
            objects=bucket_key["objects"],
            share_to_account_ids=[account_id],
            share_to_vpc_id=vpc_id,
            objects_per_access_point=self.settings.objects_per_access_point,
            access_points_per_stack=self.settings.access_points_per_stack,
        )

        root_https = None
        for t in templates:
            try:
                self.s3_client.put_object(
                    Bucket=t.template_bucket,
                    Key=t.template_key,
                    ContentType="application/json",
                    Body=t.content.encode("utf-8"),
                )
            except ClientError as e:
                LOGGER.error("Failed to save template s3://%s/%s: %s", t.template_bucket, t.template_key, str(e))
                raise ExternalServiceError(f"Failed to save template {t.template_key}") from e
            LOGGER.debug("Saved template s3://%s/%s", t.template_bucket, t.template_key)
            if t.root:
                root_https = t.template_https

        if root_https is None:
            raise GenerationUsageError("Template generation produced no root template")

        LOGGER.info("Saved %d access point templates for release %s", len(templates), release_key)
        return root_https

    def get_installed_stack(self, release_key: str) -> Optional[Dict[str, Any]]:
        """The installed root stack for a release, or None if there is none."""
        stack_name = release_stack_name(release_key)
        try:
            resp = self.cloudformation.describe_stacks(StackName=stack_name)
        except ClientError as e:
            error = e.response.get("Error", {})
            if error.get("Code") == "ValidationError" and "does not exist" in (error.get("Message") or ""):
                return None
            LOGGER.error("Failed to describe stack %s: %s", stack_name, str(e))
            raise ExternalServiceError(f"Failed to describe stack {stack_name}") from e

        stacks = resp.get("Stacks") or []
        if len(stacks) != 1:
            return None
        return stacks[0]

    def get_installed_object_map(self, release_key: str) -> Dict[str, AccessPointEntry]:
        """Map of original ``s3://bucket/key`` to access point URLs.

        Raises:
            InstalledStackNotFoundError: No access point stack is installed.
            FeatureNotConfiguredError: The installing account id is not set.
        """
        if not self.settings.aws_account_id:
            raise FeatureNotConfiguredError("No AWS account id is configured (AWS_ACCOUNT_ID)")

        stack = self.get_installed_stack(release_key)
        if stack is None:
            raise InstalledStackNotFoundError(
                f"Release {release_key} does not have an installed access point stack",
                details={"release_key": release_key},
            )
        return resolve_access_point_urls(stack, self.settings.aws_account_id, self.s3control)

    def get_access_point_bucket_key_tsv(
        self,
        release_key: str,
        columns: Sequence[str] = DEFAULT_TSV_COLUMNS,
    ) -> str:
        """Bucket-key TSV with S3 objects rewritten to go through the access point."""
        bucket_key = self.manifest_service.get_active_bucket_key_manifest(release_key, [S3_PROTOCOL])
        object_map = self.get_installed_object_map(release_key)

        rows = []
        missing = 0
        for row in bucket_key["objects"]:
            entry = object_map.get(row.object_store_url)
            if entry is None:
                missing += 1
                rows.append(row)
                continue
            rows.append(
                replace(
                    row,
                    object_store_url=entry.object_store_url,
                    object_store_bucket=entry.object_store_bucket,
                )
            )
        if missing:
            LOGGER.warning(
                "%d objects of release %s are not covered by its installed access point",
                missing,
                release_key,
            )
        return create_tsv(rows, columns)
