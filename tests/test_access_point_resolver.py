"""Tests for releaselib.access_point_resolver."""

import json
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from releaselib.access_point_resolver import resolve_access_point_urls
from releaselib.exceptions import AccessPointPolicyError, ExternalServiceError


def _policy(*keys, group="ap1", action=("s3:GetObject",)):
    return json.dumps(
        {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Action": list(action),
                    "Effect": "Allow",
                    "Resource": [
                        f"arn:aws:s3:ap-southeast-2:123456789012:accesspoint/{group}/object/{k}*" for k in keys
                    ],
                },
                {
                    "Action": ["s3:ListBucket"],
                    "Effect": "Allow",
                    "Resource": f"arn:aws:s3:ap-southeast-2:123456789012:accesspoint/{group}",
                },
            ],
        }
    )


def _stack(*outputs):
    return {
        "StackName": "release-share-R001",
        "Outputs": [{"OutputKey": k, "OutputValue": v} for k, v in outputs],
    }


class TestResolveAccessPointUrls:
    def test_maps_original_to_alias(self):
        s3control = MagicMock()
        s3control.get_access_point_policy.return_value = {"Policy": _policy("dir/a.bam", "dir/a.bam.bai")}
        stack = _stack(
            ("ap1", "ap1:ap1-alias-s3alias:bucket-a"),
            ("AccountIds", "111111111111"),
            ("VpcId", "vpc-1"),
        )

        result = resolve_access_point_urls(stack, "123456789012", s3control)

        s3control.get_access_point_policy.assert_called_once_with(AccountId="123456789012", Name="ap1")
        entry = result["s3://bucket-a/dir/a.bam"]
        assert entry.object_store_url == "s3://ap1-alias-s3alias/dir/a.bam"
        assert entry.object_store_bucket == "ap1-alias-s3alias"
        assert entry.object_store_key == "dir/a.bam"
        assert entry.access_point_group_id == "ap1"
        assert set(result) == {"s3://bucket-a/dir/a.bam", "s3://bucket-a/dir/a.bam.bai"}

    def test_string_action_accepted(self):
        s3control = MagicMock()
        policy = json.loads(_policy("k"))
        policy["Statement"][0]["Action"] = "s3:GetObject"
        s3control.get_access_point_policy.return_value = {"Policy": json.dumps(policy)}
        result = resolve_access_point_urls(_stack(("ap1", "ap1:alias:b")), "1", s3control)
        assert "s3://b/k" in result

    def test_bad_output_value(self):
        with pytest.raises(AccessPointPolicyError):
            resolve_access_point_urls(_stack(("ap1", "no-colons")), "1", MagicMock())

    def test_missing_policy(self):
        s3control = MagicMock()
        s3control.get_access_point_policy.return_value = {}
        with pytest.raises(AccessPointPolicyError):
            resolve_access_point_urls(_stack(("ap1", "ap1:alias:b")), "1", s3control)

    def test_two_get_object_statements(self):
        policy = json.loads(_policy("k"))
        policy["Statement"][1]["Action"] = ["s3:GetObject"]
        s3control = MagicMock()
        s3control.get_access_point_policy.return_value = {"Policy": json.dumps(policy)}
        with pytest.raises(AccessPointPolicyError):
            resolve_access_point_urls(_stack(("ap1", "ap1:alias:b")), "1", s3control)

    def test_resource_not_an_object_arn(self):
        policy = json.loads(_policy("k"))
        policy["Statement"][0]["Resource"] = ["arn:aws:s3:::bucket/k"]
        s3control = MagicMock()
        s3control.get_access_point_policy.return_value = {"Policy": json.dumps(policy)}
        with pytest.raises(AccessPointPolicyError):
            resolve_access_point_urls(_stack(("ap1", "ap1:alias:b")), "1", s3control)

    def test_policy_fetch_error(self):
        s3control = MagicMock()
        s3control.get_access_point_policy.side_effect = ClientError(
            {"Error": {"Code": "NoSuchAccessPoint", "Message": "gone"}}, "GetAccessPointPolicy"
        )
        with pytest.raises(ExternalServiceError):
            resolve_access_point_urls(_stack(("ap1", "ap1:alias:b")), "1", s3control)

    def test_no_outputs(self):
        assert resolve_access_point_urls({"Outputs": []}, "1", MagicMock()) == {}
