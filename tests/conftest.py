"""Pytest configuration and shared fixtures."""

import os

import pytest

# Keep tests away from any real AWS profile
os.environ.setdefault("AWS_DEFAULT_REGION", "ap-southeast-2")
os.environ.pop("AWS_PROFILE", None)

from releaselib.config import clear_settings_cache, get_settings_for_testing  # noqa: E402
from releaselib.models import ReleasePermissions  # noqa: E402
from releaselib.tree_loader import build_master_manifest  # noqa: E402


def _file(url, size=100, md5=None):
    f = {"url": url, "size": size, "checksums": []}
    if md5:
        f["checksums"].append({"type": "MD5", "value": md5})
    return f


def _ids(value, system=""):
    return [{"system": system, "value": value}]


ALL_PERMISSIONS = {
    "isAllowedReadData": True,
    "isAllowedVariantData": True,
    "isAllowedS3Data": True,
    "isAllowedGSData": True,
    "isAllowedR2Data": True,
    "htsgetRestrictions": [],
}


def make_tree(permissions=None):
    """Two datasets worth of cases, one specimen left unselected."""
    return {
        "releaseKey": "R001",
        "permissions": dict(permissions or ALL_PERMISSIONS),
        "selectedSpecimenIds": ["spec-0001", "spec-0002", "spec-0004"],
        "cases": [
            {
                "id": "case-2",
                "externalIdentifiers": _ids("CASE2"),
                "dataset": {"id": "ds-b", "uri": "urn:ds:b", "externalIdentifiers": []},
                "patients": [
                    {
                        "id": "pat-2",
                        "externalIdentifiers": _ids("PAT2"),
                        "specimens": [
                            {
                                "id": "spec-0004",
                                "externalIdentifiers": _ids("SPEC4"),
                                "artifacts": [
                                    {
                                        "type": "vcf",
                                        "id": "a-vcf-r2",
                                        "vcfFile": _file("r2://bucket-r2/spec4/s4.vcf.gz"),
                                        "tbiFile": _file("r2://bucket-r2/spec4/s4.vcf.gz.tbi"),
                                    },
                                    {
                                        "type": "cram",
                                        "id": "a-cram",
                                        "cramFile": _file("s3://bucket-b/spec4/s4.cram", 5000),
                                        "craiFile": _file("s3://bucket-b/spec4/s4.cram.crai", 50),
                                    },
                                ],
                            }
                        ],
                    }
                ],
            },
            {
                "id": "case-1",
                "externalIdentifiers": _ids("CASE1") + _ids("C-001", "urn:hospital"),
                "dataset": {"id": "ds-a", "uri": "urn:ds:a", "externalIdentifiers": []},
                "patients": [
                    {
                        "id": "pat-1",
                        "externalIdentifiers": _ids("PAT1"),
                        "specimens": [
                            {
                                "id": "spec-0001",
                                "externalIdentifiers": _ids("SPEC1"),
                                "artifacts": [
                                    {
                                        "type": "bam",
                                        "id": "a-bam-s3",
                                        "bamFile": _file("s3://bucket-a/spec1/s1.bam", 1000, "abc123"),
                                        "baiFile": _file("s3://bucket-a/spec1/s1.bam.bai", 10),
                                    },
                                    {
                                        "type": "vcf",
                                        "id": "a-vcf-s3",
                                        "vcfFile": _file("s3://bucket-a/spec1/s1.vcf.gz", 200),
                                        "tbiFile": _file("s3://bucket-a/spec1/s1.vcf.gz.tbi", 20),
                                    },
                                ],
                            },
                            {
                                "id": "spec-0002",
                                "externalIdentifiers": _ids("SPEC2"),
                                "artifacts": [
                                    {
                                        "type": "fastq_pair",
                                        "id": "a-fastq",
                                        "forwardFile": _file("gs://bucket-g/spec2/r1.fastq.gz"),
                                        "reverseFile": _file("gs://bucket-g/spec2/r2.fastq.gz"),
                                    },
                                    {
                                        "type": "bam",
                                        "id": "a-bam-gs",
                                        "bamFile": _file("gs://bucket-g/spec2/s2.bam"),
                                        "baiFile": _file("gs://bucket-g/spec2/s2.bam.bai"),
                                    },
                                ],
                            },
                            {
                                "id": "spec-0003",
                                "externalIdentifiers": _ids("SPEC3"),
                                "artifacts": [
                                    {
                                        "type": "bcl",
                                        "id": "a-bcl",
                                        "bclFile": _file("s3://bucket-a/spec3/run.tar"),
                                    }
                                ],
                            },
                        ],
                    }
                ],
            },
        ],
    }


@pytest.fixture(autouse=True)
def _fresh_settings():
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def raw_tree():
    return make_tree()


@pytest.fixture
def manifest(raw_tree):
    """Unfiltered master manifest with every permission enabled."""
    return build_master_manifest(raw_tree)


@pytest.fixture
def all_permissions():
    return ReleasePermissions.from_dict(ALL_PERMISSIONS)


@pytest.fixture
def settings():
    return get_settings_for_testing(
        aws_default_region="ap-southeast-2",
        aws_account_id="123456789012",
        temp_bucket="temp-bucket",
        htsget_url="https://htsget.example.org",
    )


@pytest.fixture
def tree_factory():
    return make_tree
