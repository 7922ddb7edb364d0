"""Redact a master manifest according to release permissions.

An artifact survives only when its data type is enabled for the release and
every one of its files lives in an enabled location. Artifacts are kept or
dropped whole; a BAM is never shared without its index.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from releaselib.exceptions import (
    ReleaseActivatedMismatchedExpectationsError,
    ReleaseActivatedNothingError,
)
from releaselib.models import (
    READ_DATA,
    VARIANT_DATA,
    Artifact,
    ManifestSpecimen,
    MasterManifest,
    ReleasePermissions,
)

LOGGER = logging.getLogger("releaselib.authorization")


def artifact_allowed(artifact: Artifact, permissions: ReleasePermissions) -> bool:
    """Whether an artifact may be shared in full under the permissions."""
    if not permissions.data_kind_allowed(artifact.data_kind):
        return False
    return all(permissions.location_allowed(f.url) for f in artifact.files())


def _has_data_kind(specimens: List[ManifestSpecimen], data_kind: str) -> bool:
    return any(a.data_kind == data_kind for s in specimens for a in s.artifacts)


def _validate_inputs(manifest: MasterManifest, permissions: ReleasePermissions) -> None:
    if not manifest.specimen_list:
        raise ReleaseActivatedNothingError("No cases/patients/specimens selected")
    if not manifest.case_tree:
        raise ReleaseActivatedNothingError("No cases/patients/specimens selected")
    if not permissions.any_data_type_enabled:
        raise ReleaseActivatedNothingError("No data types enabled")
    if not permissions.any_location_enabled:
        raise ReleaseActivatedNothingError("No data locations enabled")


def _validate_outputs(specimens: List[ManifestSpecimen], permissions: ReleasePermissions) -> None:
    if not any(s.artifacts for s in specimens):
        raise ReleaseActivatedNothingError("No artifacts remain after applying release permissions")
    if permissions.is_allowed_read_data and not _has_data_kind(specimens, READ_DATA):
        raise ReleaseActivatedMismatchedExpectationsError(
            "Read data is enabled but there are no read data artifacts"
        )
    if permissions.is_allowed_variant_data and not _has_data_kind(specimens, VARIANT_DATA):
        raise ReleaseActivatedMismatchedExpectationsError(
            "Variant data is enabled but there are no variant data artifacts"
        )


def filter_master_manifest(
    manifest: MasterManifest,
    permissions: Optional[ReleasePermissions] = None,
    validate: bool = True,
) -> MasterManifest:
    """Return a new manifest holding only the artifacts the release may share.

    Args:
        manifest: Unfiltered manifest from the tree loader (not modified)
        permissions: Release permissions; defaults to those on the manifest
        validate: When False the activation checks are skipped, for callers
            that only want statistics

    Raises:
        ReleaseActivatedNothingError: Nothing selected, nothing enabled, or
            nothing left after filtering.
        ReleaseActivatedMismatchedExpectationsError: A data type is enabled
            but no artifacts of that type exist.
    """
    permissions = permissions or manifest.permissions

    if validate:
        _validate_inputs(manifest, permissions)

    filtered: List[ManifestSpecimen] = []
    dropped = 0
    for specimen in manifest.specimen_list:
        kept = tuple(a for a in specimen.artifacts if artifact_allowed(a, permissions))
        dropped += len(specimen.artifacts) - len(kept)
        filtered.append(
            ManifestSpecimen(
                id=specimen.id,
                external_identifiers=specimen.external_identifiers,
                case_=specimen.case_,
                patient=specimen.patient,
                dataset=specimen.dataset,
                artifacts=kept,
            )
        )

    if validate:
        _validate_outputs(filtered, permissions)

    LOGGER.debug(
        "Filtered release %s manifest: %d artifacts dropped",
        manifest.release_key,
        dropped,
    )

    return MasterManifest(
        release_key=manifest.release_key,
        specimen_list=tuple(filtered),
        case_tree=manifest.case_tree,
        permissions=permissions,
    )


def manifest_statistics(manifest: MasterManifest) -> Dict[str, int]:
    """Counts recorded against a release activation."""
    return {
        "manifest_cases": len(manifest.case_tree),
        "manifest_specimens": len(manifest.specimen_list),
        "manifest_artifacts": manifest.artifact_count,
    }
