"""Flat row manifest: one row per shared file, optionally presigned."""

from __future__ import annotations

import csv
import io
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional, Sequence

from releaselib.models import MasterManifest, first_external_id
from releaselib.object_urls import decompose_url
from releaselib.presign import PresignerRegistry

LOGGER = logging.getLogger("releaselib.manifest_tsv")

DEFAULT_TSV_COLUMNS = (
    "caseId",
    "patientId",
    "specimenId",
    "artifactId",
    "objectType",
    "objectStoreProtocol",
    "objectStoreUrl",
    "objectStoreBucket",
    "objectStoreKey",
    "objectSize",
    "md5",
)


@dataclass(frozen=True)
class ManifestRow:
    """A single file of a shared artifact, flattened with its ancestry."""
    case_id: str
    patient_id: str
    specimen_id: str
    artifact_id: str
    object_type: str
    object_store_url: str
    object_store_protocol: str
    object_store_bucket: str
    object_store_key: str
    object_store_name: str
    object_size: Optional[int]
    md5: str = ""
    object_store_signed: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Row keyed by the camelCase column names used in TSV headers."""
        result: Dict[str, Any] = {
            "caseId": self.case_id,
            "patientId": self.patient_id,
            "specimenId": self.specimen_id,
            "artifactId": self.artifact_id,
            "objectType": self.object_type,
            "objectStoreUrl": self.object_store_url,
            "objectStoreProtocol": self.object_store_protocol,
            "objectStoreBucket": self.object_store_bucket,
            "objectStoreKey": self.object_store_key,
            "objectStoreName": self.object_store_name,
            "objectSize": self.object_size,
            "md5": self.md5,
        }
        if self.object_store_signed is not None:
            result["objectStoreSigned"] = self.object_store_signed
        return result


def _unsigned_rows(manifest: MasterManifest) -> List[ManifestRow]:
    rows: List[ManifestRow] = []
    for specimen in manifest.specimen_list:
        case_id = first_external_id(specimen.case_.external_identifiers)
        patient_id = first_external_id(specimen.patient.external_identifiers)
        specimen_id = first_external_id(specimen.external_identifiers)
        for artifact in specimen.artifacts:
            for f in artifact.files():
                parts = decompose_url(f.url)
                rows.append(
                    ManifestRow(
                        case_id=case_id,
                        patient_id=patient_id,
                        specimen_id=specimen_id,
                        artifact_id=artifact.id,
                        object_type=artifact.object_type,
                        object_store_url=f.url,
                        object_store_protocol=parts.protocol,
                        object_store_bucket=parts.bucket,
                        object_store_key=parts.key,
                        object_store_name=parts.base_name,
                        object_size=f.size,
                        md5=f.md5,
                    )
                )
    return rows


def transform_master_manifest_to_rows(
    manifest: MasterManifest,
    signers: Optional[PresignerRegistry] = None,
    audit_id: str = "",
    max_workers: int = 16,
) -> List[ManifestRow]:
    """Flatten a filtered manifest into one row per artifact file.

    When ``signers`` is given every file is presigned concurrently and the
    rows are returned in manifest order once all signatures are in. Any
    signing failure propagates and no rows are returned.

    Raises:
        MalformedObjectUrlError: A stored file URL does not parse.
        UnknownProtocolError: A file's protocol has no registered signer.
    """
    rows = _unsigned_rows(manifest)
    if signers is None or not rows:
        return rows

    signed: Dict[int, str] = {}
    with ThreadPoolExecutor(max_workers=min(max_workers, len(rows))) as executor:
        futures = {
            executor.submit(
                signers.presign,
                manifest.release_key,
                row.object_store_protocol,
                row.object_store_bucket,
                row.object_store_key,
                audit_id,
            ): index
            for index, row in enumerate(rows)
        }
        for future in as_completed(futures):
            signed[futures[future]] = future.result()

    LOGGER.info("Presigned %d files for release %s", len(signed), manifest.release_key)
    return [replace(row, object_store_signed=signed[i]) for i, row in enumerate(rows)]


def create_tsv(rows: Iterable[ManifestRow], columns: Sequence[str] = DEFAULT_TSV_COLUMNS) -> str:
    """Render rows as TSV with an upper-cased header in the given column order.

    Unknown column names render as empty cells.
    """
    buf = io.StringIO()
    writer = csv.writer(buf, delimiter="\t", lineterminator="\n")
    writer.writerow([c.upper() for c in columns])
    for row in rows:
        values = row.to_dict()
        writer.writerow(["" if values.get(c) is None else values.get(c) for c in columns])
    return buf.getvalue()
