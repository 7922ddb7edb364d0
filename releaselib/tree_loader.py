"""Load the case → patient → specimen → artifact tree behind a release.

The tree store is an external collaborator: anything implementing
``SpecimenTreeSource`` can feed the loader. A DynamoDB-backed source is
provided for deployments that keep release selections and dataset documents
in DynamoDB.

Raw tree shape returned by a source::

    {
        "releaseKey": "R001",
        "permissions": {"isAllowedReadData": true, ...},
        "selectedSpecimenIds": ["..."],
        "cases": [
            {
                "id": "...",
                "externalIdentifiers": [{"system": "", "value": "CASE1"}],
                "dataset": {"id": "...", "uri": "urn:ds:10g", "externalIdentifiers": []},
                "patients": [
                    {
                        "id": "...",
                        "externalIdentifiers": [...],
                        "specimens": [
                            {"id": "...", "externalIdentifiers": [...], "artifacts": [...]}
                        ]
                    }
                ]
            }
        ]
    }
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Protocol

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from releaselib.exceptions import ExternalServiceError, NoReleaseFoundError
from releaselib.models import (
    EntityRef,
    ManifestCase,
    ManifestPatient,
    ManifestSpecimen,
    MasterManifest,
    ReleasePermissions,
    SpecimenRef,
    external_ids_from_list,
    artifact_from_dict,
)

LOGGER = logging.getLogger("releaselib.tree_loader")


class SpecimenTreeSource(Protocol):
    """Answers the single tree query the loader needs."""

    def load_specimen_tree(self, release_key: str) -> Dict[str, Any]:
        """Return the raw tree for a release or raise NoReleaseFoundError."""
        ...


class DynamoSpecimenTreeSource:
    """DynamoDB-backed specimen tree source.

    Tables:
        releases: partition key ``release_key``; holds ``permissions``,
            ``selected_specimen_ids`` and ``dataset_uris``.
        dataset cases: partition key ``dataset_uri``, sort key ``case_id``;
            ``case_json`` holds one case document (patients, specimens and
            artifacts).
    """

    def __init__(
        self,
        releases_table_name: str = "release-share-releases",
        dataset_cases_table_name: str = "release-share-dataset-cases",
        region: str = "ap-southeast-2",
        profile: Optional[str] = None,
    ):
        session_kwargs = {"region_name": region}
        if profile:
            session_kwargs["profile_name"] = profile
        session = boto3.Session(**session_kwargs)
        self.dynamodb = session.resource("dynamodb")
        self.releases_table = self.dynamodb.Table(releases_table_name)
        self.dataset_cases_table = self.dynamodb.Table(dataset_cases_table_name)

    def load_specimen_tree(self, release_key: str) -> Dict[str, Any]:
        try:
            resp = self.releases_table.get_item(Key={"release_key": release_key})
        except ClientError as e:
            LOGGER.error("Failed to read release %s: %s", release_key, str(e))
            raise ExternalServiceError(f"Failed to read release {release_key}") from e

        item = resp.get("Item")
        if not item:
            raise NoReleaseFoundError(release_key)

        cases: List[Dict[str, Any]] = []
        for dataset_uri in item.get("dataset_uris") or []:
            cases.extend(self._query_cases(dataset_uri))

        return {
            "releaseKey": release_key,
            "permissions": item.get("permissions") or {},
            "selectedSpecimenIds": list(item.get("selected_specimen_ids") or []),
            "cases": cases,
        }

    def _query_cases(self, dataset_uri: str) -> List[Dict[str, Any]]:
        cases = []
        kwargs: Dict[str, Any] = {"KeyConditionExpression": Key("dataset_uri").eq(dataset_uri)}
        while True:
            try:
                resp = self.dataset_cases_table.query(**kwargs)
            except ClientError as e:
                LOGGER.error("Failed to query cases for dataset %s: %s", dataset_uri, str(e))
                raise ExternalServiceError(f"Failed to query cases for dataset {dataset_uri}") from e
            for it in resp.get("Items", []):
                cases.append(json.loads(it["case_json"]))
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                return cases
            kwargs["ExclusiveStartKey"] = last_key


def _build_specimen(
    raw: Dict[str, Any],
    case_ref: EntityRef,
    patient_ref: EntityRef,
    dataset_ref: EntityRef,
) -> ManifestSpecimen:
    artifacts = []
    for raw_artifact in raw.get("artifacts") or []:
        artifact = artifact_from_dict(raw_artifact)
        if artifact is None:
            LOGGER.warning(
                "Specimen %s has an incomplete %s artifact %s; skipping",
                raw["id"],
                raw_artifact.get("type"),
                raw_artifact.get("id"),
            )
            continue
        artifacts.append(artifact)
    return ManifestSpecimen(
        id=str(raw["id"]),
        external_identifiers=external_ids_from_list(raw.get("externalIdentifiers")),
        case_=case_ref,
        patient=patient_ref,
        dataset=dataset_ref,
        artifacts=tuple(artifacts),
    )


def build_master_manifest(tree: Dict[str, Any]) -> MasterManifest:
    """Turn a raw tree into an unfiltered master manifest.

    Only selected specimens are kept; patients and cases left with no
    selected specimens are dropped. Cases are sorted by (dataset uri, case
    id) so regenerated manifests diff cleanly.
    """
    selected = set(tree.get("selectedSpecimenIds") or [])

    raw_cases = sorted(
        tree.get("cases") or [],
        key=lambda c: ((c.get("dataset") or {}).get("uri") or "", str(c["id"])),
    )

    case_tree: List[ManifestCase] = []
    specimens: List[ManifestSpecimen] = []

    for raw_case in raw_cases:
        raw_dataset = raw_case.get("dataset") or {}
        dataset_ref = EntityRef(
            id=str(raw_dataset.get("id") or ""),
            external_identifiers=external_ids_from_list(raw_dataset.get("externalIdentifiers")),
            uri=raw_dataset.get("uri") or "",
        )
        case_ref = EntityRef(
            id=str(raw_case["id"]),
            external_identifiers=external_ids_from_list(raw_case.get("externalIdentifiers")),
        )

        patients: List[ManifestPatient] = []
        for raw_patient in raw_case.get("patients") or []:
            patient_ref = EntityRef(
                id=str(raw_patient["id"]),
                external_identifiers=external_ids_from_list(raw_patient.get("externalIdentifiers")),
            )
            refs: List[SpecimenRef] = []
            for raw_specimen in raw_patient.get("specimens") or []:
                if str(raw_specimen["id"]) not in selected:
                    continue
                specimen = _build_specimen(raw_specimen, case_ref, patient_ref, dataset_ref)
                specimens.append(specimen)
                refs.append(SpecimenRef(id=specimen.id, external_identifiers=specimen.external_identifiers))

            if refs:
                patients.append(
                    ManifestPatient(
                        id=patient_ref.id,
                        external_identifiers=patient_ref.external_identifiers,
                        specimens=tuple(refs),
                    )
                )

        if patients:
            case_tree.append(
                ManifestCase(
                    id=case_ref.id,
                    dataset_uri=dataset_ref.uri or "",
                    external_identifiers=case_ref.external_identifiers,
                    patients=tuple(patients),
                )
            )

    return MasterManifest(
        release_key=tree["releaseKey"],
        specimen_list=tuple(specimens),
        case_tree=tuple(case_tree),
        permissions=ReleasePermissions.from_dict(tree.get("permissions") or {}),
    )


def load_master_manifest(source: SpecimenTreeSource, release_key: str) -> MasterManifest:
    """Fetch the release tree and build the unfiltered master manifest.

    Raises:
        NoReleaseFoundError: If the release key does not resolve.
    """
    tree = source.load_specimen_tree(release_key)
    manifest = build_master_manifest(tree)
    LOGGER.info(
        "Loaded tree for release %s (cases=%d, specimens=%d, artifacts=%d)",
        release_key,
        len(manifest.case_tree),
        len(manifest.specimen_list),
        manifest.artifact_count,
    )
    return manifest
