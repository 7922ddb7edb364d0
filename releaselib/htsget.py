"""
Htsget manifest generation and publishing.

The htsget manifest tells an htsget endpoint which backing file serves each
specimen and under which genomic region restrictions. Specimens are keyed
by an htsget id derived from the specimen id; external identifiers are not
guaranteed unique across a release so they are only carried as linkage in
the case tree.

Shape::

    {
        "id": "<release key>",
        "reads": {"<htsget id>": {"url": "s3://...", "restrictions": [...]}},
        "variants": {"<htsget id>": {"url": "...", "variantSampleId": "", "restrictions": [...]}},
        "cases": [{"ids": {...}, "patients": [{"ids": {...}, "specimens": [{"htsgetId": "...", "ids": {...}}]}]}]
    }
"""

from __future__ import annotations

import datetime as dt
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import urlencode, urlsplit, urlunsplit

import yaml
from botocore.exceptions import ClientError

from releaselib.exceptions import ExternalServiceError, GenerationUsageError
from releaselib.manifest_tsv import ManifestRow
from releaselib.models import (
    ArtifactBam,
    ArtifactVcf,
    MasterManifest,
    collapse_external_ids,
    first_external_id,
)
from releaselib.object_urls import KNOWN_PROTOCOLS, decompose_url, url_protocol
from releaselib.s3_utils import RegionAwareS3Client

LOGGER = logging.getLogger("releaselib.htsget")

HTSGET_PROTOCOL = "htsget"
HTSGET_MANIFESTS_FOLDER = "htsget-manifests"

READS_ENDPOINT = "reads"
VARIANTS_ENDPOINT = "variants"


@dataclass(frozen=True, order=True)
class GenomicRegion:
    chromosome: int
    start: Optional[int] = None
    end: Optional[int] = None

    def to_dict(self) -> Dict[str, int]:
        result = {"chromosome": self.chromosome}
        if self.start is not None:
            result["start"] = self.start
        if self.end is not None:
            result["end"] = self.end
        return result


# Illustrative regions only; deployments supply their own table via
# the htsget_restrictions_file setting.
DEFAULT_RESTRICTIONS: Dict[str, Tuple[GenomicRegion, ...]] = {
    "CongenitalHeartDefect": (
        GenomicRegion(chromosome=22, start=18900000, end=21500000),
        GenomicRegion(chromosome=7, start=72700000, end=74300000),
    ),
    "Autism": (
        GenomicRegion(chromosome=15, start=22800000, end=28500000),
        GenomicRegion(chromosome=16, start=29500000, end=30300000),
    ),
    "Achromatopsia": (
        GenomicRegion(chromosome=8, start=86500000, end=86700000),
        GenomicRegion(chromosome=2, start=98300000, end=98400000),
    ),
}


class RestrictionTable:
    """Maps restriction labels to the genomic regions they allow."""

    def __init__(self, regions: Optional[Mapping[str, Iterable[GenomicRegion]]] = None):
        source = DEFAULT_RESTRICTIONS if regions is None else regions
        self._regions: Dict[str, Tuple[GenomicRegion, ...]] = {
            label: tuple(r) for label, r in source.items()
        }

    @property
    def labels(self) -> List[str]:
        return sorted(self._regions)

    def regions_for(self, labels: Iterable[str]) -> List[GenomicRegion]:
        """Union of the regions of every label, sorted and de-duplicated.

        Labels not in the table are logged and contribute nothing.
        """
        result = set()
        for label in labels:
            regions = self._regions.get(label)
            if regions is None:
                LOGGER.warning("Unknown htsget restriction label %s", label)
                continue
            result.update(regions)
        return sorted(result)

    @classmethod
    def from_yaml(cls, path: str) -> "RestrictionTable":
        """Load a table from YAML of the form ``{label: [{chromosome, start, end}]}``."""
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Restriction file {path} must contain a mapping of labels")
        regions = {
            str(label): [
                GenomicRegion(
                    chromosome=int(r["chromosome"]),
                    start=int(r["start"]) if r.get("start") is not None else None,
                    end=int(r["end"]) if r.get("end") is not None else None,
                )
                for r in entries or []
            ]
            for label, entries in data.items()
        }
        LOGGER.info("Loaded %d htsget restriction labels from %s", len(regions), path)
        return cls(regions)


def htsget_id(specimen_id: str) -> str:
    """Specimen id tidied so it reads less like a uuid."""
    return specimen_id.replace("-", "").upper()


def _preferred(candidates: Dict[str, str]) -> Optional[str]:
    # s3 over gs over r2
    for protocol in KNOWN_PROTOCOLS:
        if protocol in candidates:
            return candidates[protocol]
    return None


def transform_master_manifest_to_htsget_manifest(
    manifest: MasterManifest,
    restriction_table: Optional[RestrictionTable] = None,
) -> Dict[str, Any]:
    """Build the htsget manifest for a filtered master manifest.

    Reads come from BAM artifacts and variants from VCF artifacts. Where a
    specimen has the same kind of artifact in several locations the S3 copy
    wins, then GS, then R2. Specimens with neither reads nor variants are
    left out of the case tree.
    """
    table = restriction_table or RestrictionTable()
    restrictions = [
        r.to_dict() for r in table.regions_for(sorted(manifest.permissions.htsget_restrictions))
    ]

    reads: Dict[str, Dict[str, Any]] = {}
    variants: Dict[str, Dict[str, Any]] = {}

    for specimen in manifest.specimen_list:
        hid = htsget_id(specimen.id)
        read_urls: Dict[str, str] = {}
        variant_urls: Dict[str, str] = {}
        for artifact in specimen.artifacts:
            if isinstance(artifact, ArtifactBam):
                url = artifact.bam_file.url
                protocol = url_protocol(url)
                if protocol:
                    read_urls.setdefault(protocol, url)
            elif isinstance(artifact, ArtifactVcf):
                url = artifact.vcf_file.url
                protocol = url_protocol(url)
                if protocol:
                    variant_urls.setdefault(protocol, url)

        read_url = _preferred(read_urls)
        if read_url:
            reads[hid] = {"url": read_url, "restrictions": list(restrictions)}
        variant_url = _preferred(variant_urls)
        if variant_url:
            variants[hid] = {"url": variant_url, "variantSampleId": "", "restrictions": list(restrictions)}

    cases = []
    for case in manifest.case_tree:
        cases.append(
            {
                "ids": collapse_external_ids(case.external_identifiers),
                "patients": [
                    {
                        "ids": collapse_external_ids(patient.external_identifiers),
                        "specimens": [
                            {
                                "htsgetId": htsget_id(s.id),
                                "ids": collapse_external_ids(s.external_identifiers),
                            }
                            for s in patient.specimens
                            if htsget_id(s.id) in reads or htsget_id(s.id) in variants
                        ],
                    }
                    for patient in case.patients
                ],
            }
        )

    return {
        "id": manifest.release_key,
        "reads": reads,
        "variants": variants,
        "cases": cases,
    }


def _htsget_url(base_url: str, endpoint: str, release_key: str, key: str, query: Dict[str, Any]) -> str:
    parts = urlsplit(base_url)
    path = f"/{endpoint}/{release_key}/{key}"
    return urlunsplit((parts.scheme, parts.netloc, path, urlencode(query), ""))


def create_htsget_rows(
    manifest: MasterManifest,
    htsget_manifest: Dict[str, Any],
    endpoint: str,
    htsget_url: str,
) -> List[ManifestRow]:
    """Flat rows pointing researchers at the htsget endpoint.

    One row per restriction region (or a single unrestricted row) for each
    entry of the reads or variants dictionary. Size, checksum and signed
    URL are unknown ahead of an htsget request and left empty.
    """
    if endpoint not in (READS_ENDPOINT, VARIANTS_ENDPOINT):
        raise GenerationUsageError(f"Unknown htsget endpoint {endpoint!r}")
    if not htsget_url:
        raise GenerationUsageError("No htsget URL is configured")

    specimens = {htsget_id(s.id): s for s in manifest.specimen_list}
    object_type = "VCF" if endpoint == VARIANTS_ENDPOINT else "BAM"
    release_key = htsget_manifest["id"]

    rows: List[ManifestRow] = []
    for key, data in (htsget_manifest.get(endpoint) or {}).items():
        specimen = specimens.get(key)
        if specimen is None:
            LOGGER.warning("Htsget id %s has no specimen in release %s", key, release_key)
            continue
        parts = decompose_url(data["url"])

        queries: List[Dict[str, Any]] = []
        for restriction in data.get("restrictions") or []:
            query: Dict[str, Any] = {"referenceName": restriction["chromosome"]}
            if restriction.get("start") is not None:
                query["start"] = restriction["start"]
            if restriction.get("end") is not None:
                query["end"] = restriction["end"]
            queries.append(query)
        if not queries:
            queries.append({})

        for query in queries:
            rows.append(
                ManifestRow(
                    case_id=first_external_id(specimen.case_.external_identifiers),
                    patient_id=first_external_id(specimen.patient.external_identifiers),
                    specimen_id=first_external_id(specimen.external_identifiers),
                    artifact_id=key,
                    object_type=object_type,
                    object_store_url=_htsget_url(htsget_url, endpoint, release_key, key, query),
                    object_store_protocol=HTSGET_PROTOCOL,
                    object_store_bucket=parts.bucket,
                    object_store_key=parts.key,
                    object_store_name=parts.base_name,
                    object_size=None,
                )
            )
    return rows


class HtsgetPublisher:
    """Writes htsget manifests where the htsget endpoint can read them.

    A published manifest is reused until it is ``max_age_seconds`` old.
    """

    def __init__(self, s3_client: RegionAwareS3Client, bucket: str, max_age_seconds: int = 86400):
        self.s3_client = s3_client
        self.bucket = bucket
        self.max_age_seconds = max_age_seconds

    @staticmethod
    def manifest_key(release_key: str) -> str:
        return f"{HTSGET_MANIFESTS_FOLDER}/{release_key}"

    def _remaining_age(self, key: str) -> int:
        try:
            head = self.s3_client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response["Error"]["Code"] in ("404", "NoSuchKey", "NotFound"):
                LOGGER.debug("No published htsget manifest at s3://%s/%s", self.bucket, key)
                return 0
            LOGGER.error("Failed to read s3://%s/%s: %s", self.bucket, key, str(e))
            raise ExternalServiceError(f"Failed to read s3://{self.bucket}/{key}") from e

        last_modified = head.get("LastModified")
        if last_modified is None:
            return 0
        expires = last_modified + dt.timedelta(seconds=self.max_age_seconds)
        return int((expires - dt.datetime.now(dt.timezone.utc)).total_seconds())

    def publish(self, release_key: str, htsget_manifest: Dict[str, Any]) -> Dict[str, Any]:
        """Publish the manifest unless a fresh copy is already in place."""
        key = self.manifest_key(release_key)
        remaining = self._remaining_age(key)

        if remaining <= 0 or remaining > self.max_age_seconds:
            try:
                self.s3_client.put_object(
                    Bucket=self.bucket,
                    Key=key,
                    Body=json.dumps(htsget_manifest).encode("utf-8"),
                    ContentType="application/json",
                )
            except ClientError as e:
                LOGGER.error("Failed to publish htsget manifest %s: %s", key, str(e))
                raise ExternalServiceError(f"Failed to publish htsget manifest for {release_key}") from e
            LOGGER.info("Published htsget manifest for release %s to s3://%s/%s", release_key, self.bucket, key)
            remaining = self.max_age_seconds

        return {
            "location": {"bucket": self.bucket, "key": key},
            "maxAge": remaining,
        }
