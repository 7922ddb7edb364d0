"""Map original object URLs to their access point URLs for an installed stack."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List

from botocore.exceptions import ClientError

from releaselib.access_point_templates import ACCOUNT_IDS_OUTPUT, VPC_ID_OUTPUT, AccessPointEntry
from releaselib.exceptions import AccessPointPolicyError, ExternalServiceError
from releaselib.object_urls import s3_url

LOGGER = logging.getLogger("releaselib.access_point_resolver")

# name:alias:bucket as joined by the root template outputs
STACK_OUTPUT_VALUE_REGEX = re.compile(r"^([^:]+):([^:]+):(.+)$")

# arn:aws:s3:{region}:{account}:accesspoint/{group}/object/{key}*
POLICY_RESOURCE_REGEX = re.compile(
    r"^([^:]+):([^:]+):([^:]+):([^:]+):([^:]+):accesspoint/([^/]+)/object/(.*)\*$"
)

HELPER_OUTPUTS = (ACCOUNT_IDS_OUTPUT, VPC_ID_OUTPUT)


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _get_object_resources(policy: Dict[str, Any], access_point_name: str) -> List[str]:
    statements = [
        s for s in _as_list(policy.get("Statement"))
        if "s3:GetObject" in _as_list(s.get("Action"))
    ]
    if len(statements) != 1:
        raise AccessPointPolicyError(
            f"Access point {access_point_name} policy has {len(statements)} s3:GetObject statements, expected 1",
            details={"access_point": access_point_name},
        )
    return [str(r) for r in _as_list(statements[0].get("Resource"))]


def resolve_access_point_urls(
    stack: Dict[str, Any],
    account_id: str,
    s3control_client: Any,
) -> Dict[str, AccessPointEntry]:
    """Read each access point's policy and map ``s3://bucket/key`` to ``s3://alias/key``.

    Args:
        stack: Installed root stack as returned by CloudFormation describe_stacks
        account_id: Account the access points are installed in
        s3control_client: boto3 ``s3control`` client

    Raises:
        AccessPointPolicyError: An output or policy is not in the shape the
            generated templates produce.
        ExternalServiceError: Fetching a policy failed.
    """
    results: Dict[str, AccessPointEntry] = {}

    for output in stack.get("Outputs") or []:
        if output.get("OutputKey") in HELPER_OUTPUTS:
            continue

        value = output.get("OutputValue") or ""
        match = STACK_OUTPUT_VALUE_REGEX.match(value)
        if not match:
            raise AccessPointPolicyError(
                f"Stack output {output.get('OutputKey')} value {value!r} is not name:alias:bucket",
                details={"output_key": output.get("OutputKey")},
            )
        name, alias, bucket = match.group(1), match.group(2), match.group(3)

        try:
            resp = s3control_client.get_access_point_policy(AccountId=account_id, Name=name)
        except ClientError as e:
            LOGGER.error("Failed to get policy for access point %s: %s", name, str(e))
            raise ExternalServiceError(f"Failed to get policy for access point {name}") from e

        policy_text = resp.get("Policy")
        if not policy_text:
            raise AccessPointPolicyError(
                f"Access point {name} has no policy", details={"access_point": name}
            )
        try:
            policy = json.loads(policy_text)
        except ValueError as e:
            raise AccessPointPolicyError(
                f"Access point {name} policy is not valid JSON", details={"access_point": name}
            ) from e

        for resource in _get_object_resources(policy, name):
            res_match = POLICY_RESOURCE_REGEX.match(resource)
            if not res_match:
                raise AccessPointPolicyError(
                    f"Access point {name} resource {resource!r} is not an object ARN",
                    details={"access_point": name, "resource": resource},
                )
            key = res_match.group(7)
            results[s3_url(bucket, key)] = AccessPointEntry(
                object_store_url=s3_url(alias, key),
                object_store_bucket=alias,
                object_store_key=key,
                access_point_group_id=res_match.group(6),
            )

    LOGGER.debug("Resolved %d access point URLs", len(results))
    return results
