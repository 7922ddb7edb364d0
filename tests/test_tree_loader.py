"""Tests for releaselib.tree_loader."""

import json
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from releaselib.exceptions import ExternalServiceError, NoReleaseFoundError
from releaselib.models import ArtifactBam
from releaselib.tree_loader import DynamoSpecimenTreeSource, build_master_manifest, load_master_manifest


class TestBuildMasterManifest:
    def test_keeps_only_selected_specimens(self, raw_tree):
        manifest = build_master_manifest(raw_tree)
        assert [s.id for s in manifest.specimen_list] == ["spec-0001", "spec-0002", "spec-0004"]
        assert manifest.artifact_count == 6

    def test_case_tree_sorted_by_dataset_then_case(self, raw_tree):
        manifest = build_master_manifest(raw_tree)
        assert [c.id for c in manifest.case_tree] == ["case-1", "case-2"]
        assert manifest.case_tree[0].dataset_uri == "urn:ds:a"
        assert [s.id for s in manifest.case_tree[0].patients[0].specimens] == ["spec-0001", "spec-0002"]

    def test_specimens_carry_ancestry(self, raw_tree):
        specimen = build_master_manifest(raw_tree).specimen("spec-0004")
        assert specimen.case_.id == "case-2"
        assert specimen.patient.id == "pat-2"
        assert specimen.dataset.uri == "urn:ds:b"

    def test_drops_cases_without_selected_specimens(self, raw_tree):
        raw_tree["selectedSpecimenIds"] = ["spec-0004"]
        manifest = build_master_manifest(raw_tree)
        assert [c.id for c in manifest.case_tree] == ["case-2"]

    def test_incomplete_artifacts_skipped(self, raw_tree):
        bam = raw_tree["cases"][1]["patients"][0]["specimens"][0]["artifacts"][0]
        del bam["baiFile"]
        specimen = build_master_manifest(raw_tree).specimen("spec-0001")
        assert not any(isinstance(a, ArtifactBam) for a in specimen.artifacts)

    def test_permissions_read_from_tree(self, raw_tree):
        raw_tree["permissions"] = {"isAllowedReadData": True, "htsgetRestrictions": ["Autism"]}
        manifest = build_master_manifest(raw_tree)
        assert manifest.permissions.is_allowed_read_data
        assert not manifest.permissions.is_allowed_variant_data
        assert manifest.permissions.htsget_restrictions == frozenset({"Autism"})


class TestLoadMasterManifest:
    def test_uses_source(self, raw_tree):
        source = MagicMock()
        source.load_specimen_tree.return_value = raw_tree
        manifest = load_master_manifest(source, "R001")
        source.load_specimen_tree.assert_called_once_with("R001")
        assert manifest.release_key == "R001"

    def test_unknown_release_propagates(self):
        source = MagicMock()
        source.load_specimen_tree.side_effect = NoReleaseFoundError("R404")
        with pytest.raises(NoReleaseFoundError):
            load_master_manifest(source, "R404")


@pytest.fixture
def dynamo_source():
    with patch("releaselib.tree_loader.boto3.Session"):
        source = DynamoSpecimenTreeSource()
    source.releases_table = MagicMock()
    source.dataset_cases_table = MagicMock()
    return source


class TestDynamoSpecimenTreeSource:
    def test_missing_release(self, dynamo_source):
        dynamo_source.releases_table.get_item.return_value = {}
        with pytest.raises(NoReleaseFoundError):
            dynamo_source.load_specimen_tree("R404")

    def test_pages_through_cases(self, dynamo_source, raw_tree):
        dynamo_source.releases_table.get_item.return_value = {
            "Item": {
                "release_key": "R001",
                "permissions": raw_tree["permissions"],
                "selected_specimen_ids": raw_tree["selectedSpecimenIds"],
                "dataset_uris": ["urn:ds:a"],
            }
        }
        case_1, case_2 = raw_tree["cases"][1], raw_tree["cases"][0]
        dynamo_source.dataset_cases_table.query.side_effect = [
            {"Items": [{"case_json": json.dumps(case_1)}], "LastEvaluatedKey": {"k": 1}},
            {"Items": [{"case_json": json.dumps(case_2)}]},
        ]

        tree = dynamo_source.load_specimen_tree("R001")

        assert [c["id"] for c in tree["cases"]] == ["case-1", "case-2"]
        second_call = dynamo_source.dataset_cases_table.query.call_args_list[1]
        assert second_call.kwargs["ExclusiveStartKey"] == {"k": 1}

    def test_client_error_wrapped(self, dynamo_source):
        dynamo_source.releases_table.get_item.side_effect = ClientError(
            {"Error": {"Code": "AccessDeniedException", "Message": "no"}}, "GetItem"
        )
        with pytest.raises(ExternalServiceError):
            dynamo_source.load_specimen_tree("R001")
