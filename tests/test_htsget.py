"""Tests for releaselib.htsget - htsget manifests, researcher rows and publishing."""

import datetime as dt
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from releaselib.exceptions import ExternalServiceError, GenerationUsageError
from releaselib.htsget import (
    GenomicRegion,
    HtsgetPublisher,
    RestrictionTable,
    create_htsget_rows,
    htsget_id,
    transform_master_manifest_to_htsget_manifest,
)
from releaselib.tree_loader import build_master_manifest


def _manifest_with_restrictions(tree_factory, *labels):
    tree = tree_factory()
    tree["permissions"]["htsgetRestrictions"] = list(labels)
    return build_master_manifest(tree)


class TestHtsgetId:
    def test_strips_dashes_and_uppercases(self):
        assert htsget_id("ab12-cd34-ef") == "AB12CD34EF"


class TestRestrictionTable:
    def test_union_sorted_and_deduplicated(self):
        table = RestrictionTable(
            {
                "a": [GenomicRegion(2, 10, 20), GenomicRegion(1, 5, 6)],
                "b": [GenomicRegion(1, 5, 6)],
            }
        )
        assert table.regions_for(["a", "b"]) == [GenomicRegion(1, 5, 6), GenomicRegion(2, 10, 20)]

    def test_unknown_label_contributes_nothing(self):
        assert RestrictionTable({"a": [GenomicRegion(1)]}).regions_for(["zzz"]) == []

    def test_default_labels(self):
        assert RestrictionTable().labels == ["Achromatopsia", "Autism", "CongenitalHeartDefect"]

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "restrictions.yaml"
        path.write_text(
            "Custom:\n"
            "  - chromosome: 3\n"
            "    start: 100\n"
            "    end: 200\n"
            "  - chromosome: 4\n"
        )
        table = RestrictionTable.from_yaml(str(path))
        assert table.regions_for(["Custom"]) == [GenomicRegion(3, 100, 200), GenomicRegion(4)]

    def test_from_yaml_rejects_lists(self, tmp_path):
        path = tmp_path / "restrictions.yaml"
        path.write_text("- 1\n- 2\n")
        with pytest.raises(ValueError):
            RestrictionTable.from_yaml(str(path))


class TestTransformToHtsgetManifest:
    def test_reads_and_variants(self, manifest):
        result = transform_master_manifest_to_htsget_manifest(manifest)
        assert result["id"] == "R001"
        assert result["reads"] == {
            "SPEC0001": {"url": "s3://bucket-a/spec1/s1.bam", "restrictions": []},
            "SPEC0002": {"url": "gs://bucket-g/spec2/s2.bam", "restrictions": []},
        }
        assert result["variants"] == {
            "SPEC0001": {"url": "s3://bucket-a/spec1/s1.vcf.gz", "variantSampleId": "", "restrictions": []},
            "SPEC0004": {"url": "r2://bucket-r2/spec4/s4.vcf.gz", "variantSampleId": "", "restrictions": []},
        }

    def test_prefers_s3_copy(self, tree_factory):
        tree = tree_factory()
        spec2 = tree["cases"][1]["patients"][0]["specimens"][1]
        spec2["artifacts"].append(
            {
                "type": "bam",
                "id": "a-bam-s3-copy",
                "bamFile": {"url": "s3://bucket-a/spec2/s2.bam"},
                "baiFile": {"url": "s3://bucket-a/spec2/s2.bam.bai"},
            }
        )
        result = transform_master_manifest_to_htsget_manifest(build_master_manifest(tree))
        assert result["reads"]["SPEC0002"]["url"] == "s3://bucket-a/spec2/s2.bam"

    def test_variants_prefer_s3_then_gs(self, tree_factory):
        tree = tree_factory()
        spec4 = tree["cases"][0]["patients"][0]["specimens"][0]
        spec4["artifacts"].append(
            {
                "type": "vcf",
                "id": "a-vcf-gs-4",
                "vcfFile": {"url": "gs://bucket-g/spec4/s4.vcf.gz"},
                "tbiFile": {"url": "gs://bucket-g/spec4/s4.vcf.gz.tbi"},
            }
        )
        spec1 = tree["cases"][1]["patients"][0]["specimens"][0]
        spec1["artifacts"].insert(
            0,
            {
                "type": "vcf",
                "id": "a-vcf-gs-1",
                "vcfFile": {"url": "gs://bucket-g/spec1/s1.vcf.gz"},
                "tbiFile": {"url": "gs://bucket-g/spec1/s1.vcf.gz.tbi"},
            },
        )
        result = transform_master_manifest_to_htsget_manifest(build_master_manifest(tree))
        assert result["variants"]["SPEC0001"]["url"] == "s3://bucket-a/spec1/s1.vcf.gz"
        assert result["variants"]["SPEC0004"]["url"] == "gs://bucket-g/spec4/s4.vcf.gz"

    def test_restrictions_from_permissions(self, tree_factory):
        manifest = _manifest_with_restrictions(tree_factory, "Autism")
        result = transform_master_manifest_to_htsget_manifest(manifest)
        assert [r["chromosome"] for r in result["reads"]["SPEC0001"]["restrictions"]] == [15, 16]

    def test_case_tree_linkage(self, manifest):
        cases = transform_master_manifest_to_htsget_manifest(manifest)["cases"]
        assert cases[0]["ids"] == {"": "CASE1", "urn:hospital": "C-001"}
        assert cases[0]["patients"][0]["specimens"] == [
            {"htsgetId": "SPEC0001", "ids": {"": "SPEC1"}},
            {"htsgetId": "SPEC0002", "ids": {"": "SPEC2"}},
        ]
        assert cases[1]["patients"][0]["specimens"] == [{"htsgetId": "SPEC0004", "ids": {"": "SPEC4"}}]


class TestCreateHtsgetRows:
    def test_unrestricted_rows(self, manifest):
        htsget = transform_master_manifest_to_htsget_manifest(manifest)
        rows = create_htsget_rows(manifest, htsget, "reads", "https://htsget.example.org")
        assert [r.object_store_url for r in rows] == [
            "https://htsget.example.org/reads/R001/SPEC0001",
            "https://htsget.example.org/reads/R001/SPEC0002",
        ]
        assert rows[0].object_store_protocol == "htsget"
        assert rows[0].object_type == "BAM"
        assert rows[0].object_size is None
        assert rows[0].specimen_id == "SPEC1"
        assert rows[0].object_store_bucket == "bucket-a"

    def test_one_row_per_restriction(self, tree_factory):
        manifest = _manifest_with_restrictions(tree_factory, "Autism")
        htsget = transform_master_manifest_to_htsget_manifest(manifest)
        rows = create_htsget_rows(manifest, htsget, "variants", "https://htsget.example.org")
        assert len(rows) == 4
        assert rows[0].object_type == "VCF"
        assert rows[0].object_store_url == (
            "https://htsget.example.org/variants/R001/SPEC0001?referenceName=15&start=22800000&end=28500000"
        )

    def test_zero_coordinates_kept_in_query(self, tree_factory):
        manifest = _manifest_with_restrictions(tree_factory, "Edge")
        table = RestrictionTable({"Edge": [GenomicRegion(1, 0, 0)]})
        htsget = transform_master_manifest_to_htsget_manifest(manifest, table)
        rows = create_htsget_rows(manifest, htsget, "reads", "https://htsget.example.org")
        assert rows[0].object_store_url == (
            "https://htsget.example.org/reads/R001/SPEC0001?referenceName=1&start=0&end=0"
        )

    def test_bad_endpoint(self, manifest):
        htsget = transform_master_manifest_to_htsget_manifest(manifest)
        with pytest.raises(GenerationUsageError):
            create_htsget_rows(manifest, htsget, "files", "https://htsget.example.org")

    def test_missing_url(self, manifest):
        htsget = transform_master_manifest_to_htsget_manifest(manifest)
        with pytest.raises(GenerationUsageError):
            create_htsget_rows(manifest, htsget, "reads", "")


def _not_found():
    return ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject")


class TestHtsgetPublisher:
    def test_publishes_when_missing(self):
        s3 = MagicMock()
        s3.head_object.side_effect = _not_found()
        result = HtsgetPublisher(s3, "temp-bucket", max_age_seconds=600).publish("R001", {"id": "R001"})

        s3.put_object.assert_called_once()
        kwargs = s3.put_object.call_args.kwargs
        assert kwargs["Bucket"] == "temp-bucket"
        assert kwargs["Key"] == "htsget-manifests/R001"
        assert kwargs["ContentType"] == "application/json"
        assert result == {"location": {"bucket": "temp-bucket", "key": "htsget-manifests/R001"}, "maxAge": 600}

    def test_reuses_fresh_manifest(self):
        s3 = MagicMock()
        s3.head_object.return_value = {
            "LastModified": dt.datetime.now(dt.timezone.utc) - dt.timedelta(seconds=100)
        }
        result = HtsgetPublisher(s3, "temp-bucket", max_age_seconds=600).publish("R001", {"id": "R001"})

        s3.put_object.assert_not_called()
        assert 480 <= result["maxAge"] <= 500

    def test_rewrites_stale_manifest(self):
        s3 = MagicMock()
        s3.head_object.return_value = {"LastModified": dt.datetime.now(dt.timezone.utc) - dt.timedelta(days=2)}
        result = HtsgetPublisher(s3, "temp-bucket", max_age_seconds=600).publish("R001", {"id": "R001"})

        s3.put_object.assert_called_once()
        assert result["maxAge"] == 600

    def test_other_errors_raise(self):
        s3 = MagicMock()
        s3.head_object.side_effect = ClientError({"Error": {"Code": "AccessDenied", "Message": "no"}}, "HeadObject")
        with pytest.raises(ExternalServiceError):
            HtsgetPublisher(s3, "temp-bucket").publish("R001", {"id": "R001"})
