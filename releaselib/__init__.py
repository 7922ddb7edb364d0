"""
Release sharing - manifest authorization and sharing-resource generation.

This package turns the specimens selected for a data release into what each
sharing mechanism needs:
- Tree loading and permission-based redaction into a master manifest
- Flat (optionally presigned) TSV manifests
- Htsget manifests with region restrictions
- S3 access point CloudFormation templates and installed-URL resolution
"""

__version__ = "0.1.0"

from releaselib.authorization import filter_master_manifest
from releaselib.manifest_service import ManifestService
from releaselib.models import MasterManifest, ReleasePermissions

__all__ = [
    "__version__",
    "filter_master_manifest",
    "ManifestService",
    "MasterManifest",
    "ReleasePermissions",
]
