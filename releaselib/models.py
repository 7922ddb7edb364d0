"""
Master manifest data model.

The master manifest is the canonical, filtered description of everything a
release may expose. It is built from the specimen tree at activation time,
snapshotted to storage, and then read back verbatim by every downstream
transformer (flat TSV rows, htsget, bucket-key / access points).

Hierarchy:
    Case
      └── Patient
           └── Specimen
                └── Artifact (Bcl | FastqPair | Bam | Cram | Vcf)
                     └── ManifestFile (url, size, checksums)

All classes here are frozen dataclasses; redaction builds new instances
rather than mutating existing ones.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, FrozenSet, List, Optional, Tuple, Type, Union

from releaselib.object_urls import GS_PROTOCOL, R2_PROTOCOL, S3_PROTOCOL, url_protocol

# Bumped when the snapshot dictionary shape changes
MANIFEST_SCHEMA_VERSION = 1

READ_DATA = "read"
VARIANT_DATA = "variant"


# =============================================================================
# Files and identifiers
# =============================================================================

@dataclass(frozen=True)
class Checksum:
    type: str  # MD5, AWS_ETAG, ...
    value: str


@dataclass(frozen=True)
class ManifestFile:
    """A single stored object. Immutable once recorded."""
    url: str
    size: int = 0
    checksums: Tuple[Checksum, ...] = ()

    @property
    def md5(self) -> str:
        for c in self.checksums:
            if c.type.upper() == "MD5":
                return c.value
        return ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "size": self.size,
            "checksums": [{"type": c.type, "value": c.value} for c in self.checksums],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManifestFile":
        return cls(
            url=data["url"],
            size=int(data.get("size") or 0),
            checksums=tuple(
                Checksum(type=c["type"], value=c["value"]) for c in data.get("checksums") or []
            ),
        )


@dataclass(frozen=True)
class ExternalIdentifier:
    """An identifier from an external system. An empty system means unscoped."""
    system: str
    value: str


IdentifierMap = Dict[str, Union[str, List[str]]]


def collapse_external_ids(ids: Tuple[ExternalIdentifier, ...]) -> IdentifierMap:
    """Collapse identifiers into a dict keyed by system.

    A system with several values maps to a list. Empty values are skipped
    (an empty system is valid and common).
    """
    result: IdentifierMap = {}
    for identifier in ids or ():
        if not identifier.value:
            continue
        current = result.get(identifier.system)
        if current is None:
            result[identifier.system] = identifier.value
        elif isinstance(current, str):
            result[identifier.system] = [current, identifier.value]
        else:
            current.append(identifier.value)
    return result


def first_external_id(ids: Tuple[ExternalIdentifier, ...]) -> str:
    """Human facing id used in flat manifests."""
    if not ids:
        return "<empty ids>"
    return ids[0].value or "<empty id value>"


def external_ids_to_list(ids: Tuple[ExternalIdentifier, ...]) -> List[Dict[str, str]]:
    return [{"system": i.system, "value": i.value} for i in ids]


def external_ids_from_list(data: Optional[List[Dict[str, Any]]]) -> Tuple[ExternalIdentifier, ...]:
    return tuple(
        ExternalIdentifier(system=i.get("system") or "", value=i.get("value") or "")
        for i in data or []
    )


# =============================================================================
# Artifacts
# =============================================================================

@dataclass(frozen=True)
class Artifact:
    """Base of the artifact tagged union.

    Subclasses declare which attributes hold files; every one of them must be
    present for the artifact to be shared.
    """
    id: str

    type_name: ClassVar[str] = ""
    object_type: ClassVar[str] = ""
    data_kind: ClassVar[str] = READ_DATA
    file_fields: ClassVar[Tuple[str, ...]] = ()

    def files(self) -> List[ManifestFile]:
        return [getattr(self, name) for name in self.file_fields]

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"type": self.type_name, "id": self.id}
        for name in self.file_fields:
            result[_camel(name)] = getattr(self, name).to_dict()
        return result


@dataclass(frozen=True)
class ArtifactBcl(Artifact):
    bcl_file: ManifestFile

    type_name: ClassVar[str] = "bcl"
    object_type: ClassVar[str] = "BCL"
    file_fields: ClassVar[Tuple[str, ...]] = ("bcl_file",)


@dataclass(frozen=True)
class ArtifactFastqPair(Artifact):
    forward_file: ManifestFile
    reverse_file: ManifestFile

    type_name: ClassVar[str] = "fastq_pair"
    object_type: ClassVar[str] = "FASTQ"
    file_fields: ClassVar[Tuple[str, ...]] = ("forward_file", "reverse_file")


@dataclass(frozen=True)
class ArtifactBam(Artifact):
    bam_file: ManifestFile
    bai_file: ManifestFile

    type_name: ClassVar[str] = "bam"
    object_type: ClassVar[str] = "BAM"
    file_fields: ClassVar[Tuple[str, ...]] = ("bam_file", "bai_file")


@dataclass(frozen=True)
class ArtifactCram(Artifact):
    cram_file: ManifestFile
    crai_file: ManifestFile

    type_name: ClassVar[str] = "cram"
    object_type: ClassVar[str] = "CRAM"
    file_fields: ClassVar[Tuple[str, ...]] = ("cram_file", "crai_file")


@dataclass(frozen=True)
class ArtifactVcf(Artifact):
    vcf_file: ManifestFile
    tbi_file: ManifestFile

    type_name: ClassVar[str] = "vcf"
    object_type: ClassVar[str] = "VCF"
    data_kind: ClassVar[str] = VARIANT_DATA
    file_fields: ClassVar[Tuple[str, ...]] = ("vcf_file", "tbi_file")


ARTIFACT_TYPES: Dict[str, Type[Artifact]] = {
    cls.type_name: cls
    for cls in (ArtifactBcl, ArtifactFastqPair, ArtifactBam, ArtifactCram, ArtifactVcf)
}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p.title() for p in rest)


def artifact_from_dict(data: Dict[str, Any]) -> Optional[Artifact]:
    """Build an artifact from its dict form.

    Returns None when any of the artifact's files is missing - a partial
    artifact is never constructed.
    """
    cls = ARTIFACT_TYPES.get(data.get("type", ""))
    if cls is None:
        raise ValueError(f"Unknown artifact type: {data.get('type')!r}")
    files: Dict[str, ManifestFile] = {}
    for name in cls.file_fields:
        raw = data.get(_camel(name))
        if not raw or not raw.get("url"):
            return None
        files[name] = ManifestFile.from_dict(raw)
    return cls(id=str(data["id"]), **files)


# =============================================================================
# Specimens and the case tree
# =============================================================================

@dataclass(frozen=True)
class EntityRef:
    """Reference to a case, patient or dataset from a specimen."""
    id: str
    external_identifiers: Tuple[ExternalIdentifier, ...] = ()
    uri: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "id": self.id,
            "externalIdentifiers": external_ids_to_list(self.external_identifiers),
        }
        if self.uri is not None:
            result["uri"] = self.uri
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntityRef":
        return cls(
            id=str(data["id"]),
            external_identifiers=external_ids_from_list(data.get("externalIdentifiers")),
            uri=data.get("uri"),
        )


@dataclass(frozen=True)
class ManifestSpecimen:
    id: str
    external_identifiers: Tuple[ExternalIdentifier, ...]
    case_: EntityRef
    patient: EntityRef
    dataset: EntityRef
    artifacts: Tuple[Artifact, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "externalIdentifiers": external_ids_to_list(self.external_identifiers),
            "case_": self.case_.to_dict(),
            "patient": self.patient.to_dict(),
            "dataset": self.dataset.to_dict(),
            "artifacts": [a.to_dict() for a in self.artifacts],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManifestSpecimen":
        artifacts = [artifact_from_dict(a) for a in data.get("artifacts") or []]
        return cls(
            id=str(data["id"]),
            external_identifiers=external_ids_from_list(data.get("externalIdentifiers")),
            case_=EntityRef.from_dict(data["case_"]),
            patient=EntityRef.from_dict(data["patient"]),
            dataset=EntityRef.from_dict(data["dataset"]),
            artifacts=tuple(a for a in artifacts if a is not None),
        )


@dataclass(frozen=True)
class SpecimenRef:
    id: str
    external_identifiers: Tuple[ExternalIdentifier, ...] = ()


@dataclass(frozen=True)
class ManifestPatient:
    id: str
    external_identifiers: Tuple[ExternalIdentifier, ...] = ()
    specimens: Tuple[SpecimenRef, ...] = ()


@dataclass(frozen=True)
class ManifestCase:
    id: str
    dataset_uri: str
    external_identifiers: Tuple[ExternalIdentifier, ...] = ()
    patients: Tuple[ManifestPatient, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "datasetUri": self.dataset_uri,
            "externalIdentifiers": external_ids_to_list(self.external_identifiers),
            "patients": [
                {
                    "id": p.id,
                    "externalIdentifiers": external_ids_to_list(p.external_identifiers),
                    "specimens": [
                        {"id": s.id, "externalIdentifiers": external_ids_to_list(s.external_identifiers)}
                        for s in p.specimens
                    ],
                }
                for p in self.patients
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManifestCase":
        return cls(
            id=str(data["id"]),
            dataset_uri=data.get("datasetUri") or "",
            external_identifiers=external_ids_from_list(data.get("externalIdentifiers")),
            patients=tuple(
                ManifestPatient(
                    id=str(p["id"]),
                    external_identifiers=external_ids_from_list(p.get("externalIdentifiers")),
                    specimens=tuple(
                        SpecimenRef(
                            id=str(s["id"]),
                            external_identifiers=external_ids_from_list(s.get("externalIdentifiers")),
                        )
                        for s in p.get("specimens") or []
                    ),
                )
                for p in data.get("patients") or []
            ),
        )


# =============================================================================
# Release permissions
# =============================================================================

@dataclass(frozen=True)
class ReleasePermissions:
    """Per-release data type and location sharing flags."""
    is_allowed_read_data: bool = False
    is_allowed_variant_data: bool = False
    is_allowed_s3_data: bool = False
    is_allowed_gs_data: bool = False
    is_allowed_r2_data: bool = False
    htsget_restrictions: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def any_data_type_enabled(self) -> bool:
        return self.is_allowed_read_data or self.is_allowed_variant_data

    @property
    def any_location_enabled(self) -> bool:
        return self.is_allowed_s3_data or self.is_allowed_gs_data or self.is_allowed_r2_data

    def data_kind_allowed(self, data_kind: str) -> bool:
        if data_kind == READ_DATA:
            return self.is_allowed_read_data
        if data_kind == VARIANT_DATA:
            return self.is_allowed_variant_data
        return False

    def location_allowed(self, url: Optional[str]) -> bool:
        """Whether the URL's storage location is enabled for the release."""
        protocol = url_protocol(url)
        if protocol == S3_PROTOCOL:
            return self.is_allowed_s3_data
        if protocol == GS_PROTOCOL:
            return self.is_allowed_gs_data
        if protocol == R2_PROTOCOL:
            return self.is_allowed_r2_data
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isAllowedReadData": self.is_allowed_read_data,
            "isAllowedVariantData": self.is_allowed_variant_data,
            "isAllowedS3Data": self.is_allowed_s3_data,
            "isAllowedGSData": self.is_allowed_gs_data,
            "isAllowedR2Data": self.is_allowed_r2_data,
            "htsgetRestrictions": sorted(self.htsget_restrictions),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReleasePermissions":
        return cls(
            is_allowed_read_data=bool(data.get("isAllowedReadData", False)),
            is_allowed_variant_data=bool(data.get("isAllowedVariantData", False)),
            is_allowed_s3_data=bool(data.get("isAllowedS3Data", False)),
            is_allowed_gs_data=bool(data.get("isAllowedGSData", False)),
            is_allowed_r2_data=bool(data.get("isAllowedR2Data", False)),
            htsget_restrictions=frozenset(data.get("htsgetRestrictions") or ()),
        )


# =============================================================================
# Master manifest
# =============================================================================

@dataclass(frozen=True)
class MasterManifest:
    """Everything a release exposes, consumed by all manifest transformers."""
    release_key: str
    specimen_list: Tuple[ManifestSpecimen, ...] = ()
    case_tree: Tuple[ManifestCase, ...] = ()
    permissions: ReleasePermissions = field(default_factory=ReleasePermissions)

    @property
    def artifact_count(self) -> int:
        return sum(len(s.artifacts) for s in self.specimen_list)

    def specimen(self, specimen_id: str) -> Optional[ManifestSpecimen]:
        for s in self.specimen_list:
            if s.id == specimen_id:
                return s
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schemaVersion": MANIFEST_SCHEMA_VERSION,
            "releaseKey": self.release_key,
            "permissions": self.permissions.to_dict(),
            "specimenList": [s.to_dict() for s in self.specimen_list],
            "caseTree": [c.to_dict() for c in self.case_tree],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MasterManifest":
        version = data.get("schemaVersion", MANIFEST_SCHEMA_VERSION)
        if version != MANIFEST_SCHEMA_VERSION:
            raise ValueError(f"Unsupported manifest schema version: {version}")
        return cls(
            release_key=data["releaseKey"],
            specimen_list=tuple(ManifestSpecimen.from_dict(s) for s in data.get("specimenList") or []),
            case_tree=tuple(ManifestCase.from_dict(c) for c in data.get("caseTree") or []),
            permissions=ReleasePermissions.from_dict(data.get("permissions") or {}),
        )
