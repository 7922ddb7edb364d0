"""
CloudFormation templates sharing release objects through S3 access points.

Objects are grouped so that each access point wraps one bucket and keeps
its policy well below the 20KB access point policy ceiling. Groups are then
packed into nested stacks, and a root template installs the nested stacks
and re-exports every access point as ``name:alias:bucket`` so that installed
URLs can be resolved later.

Template layout (all keys under one random stack id per generation)::

    {stack_id}/install.template          root, one AWS::CloudFormation::Stack per nested template
    {stack_id}/{nested_stack}.template   up to access_points_per_stack AWS::S3::AccessPoint resources
"""

from __future__ import annotations

import json
import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from releaselib.exceptions import GenerationUsageError

LOGGER = logging.getLogger("releaselib.access_point_templates")

NAME_SUFFIX = "Name"
ALIAS_SUFFIX = "Alias"
BUCKET_SUFFIX = "Bucket"

ACCOUNT_IDS_OUTPUT = "AccountIds"
VPC_ID_OUTPUT = "VpcId"

ROOT_TEMPLATE_NAME = "install.template"

# Approximations, not platform guarantees: 20 worst-case (1024 char) keys per
# policy and about 30KB of template per access point.
OBJECTS_PER_ACCESS_POINT = 20
ACCESS_POINTS_PER_STACK = 30

# CloudFormation allows 200 outputs per template; the root needs one per
# access point plus AccountIds and VpcId.
MAX_ROOT_OUTPUTS = 200

TEMPLATE_FORMAT_VERSION = "2010-09-09"


def random_id() -> str:
    """8 random bytes as hex, used for group and stack ids."""
    return secrets.token_hex(8)


@dataclass
class AccessPointEntry:
    object_store_url: str
    object_store_bucket: str
    object_store_key: str
    access_point_group_id: Optional[str] = None


@dataclass
class AccessPointGroup:
    """Objects from one bucket that share one access point."""
    group_id: str
    bucket: str
    entries: List[AccessPointEntry] = field(default_factory=list)


@dataclass
class ResourceStack:
    """Access point groups installed together by one nested template."""
    stack_name: str
    groups: List[AccessPointGroup] = field(default_factory=list)


@dataclass(frozen=True)
class AccessPointTemplateToSave:
    root: bool
    template_bucket: str
    template_key: str
    template_https: str
    content: str


def dedupe_entries(objects: Iterable[Any]) -> List[AccessPointEntry]:
    """Distinct entries by URL, in first-seen order.

    Objects are anything carrying ``object_store_url``, ``object_store_bucket``
    and ``object_store_key`` (bucket-key manifest rows or entries); those
    missing any of them are skipped.
    """
    unique: Dict[str, AccessPointEntry] = {}
    for o in objects:
        url = getattr(o, "object_store_url", None)
        bucket = getattr(o, "object_store_bucket", None)
        key = getattr(o, "object_store_key", None)
        if not (url and bucket and key):
            continue
        if url not in unique:
            unique[url] = AccessPointEntry(object_store_url=url, object_store_bucket=bucket, object_store_key=key)
    return list(unique.values())


def partition_into_groups(
    entries: Sequence[AccessPointEntry],
    objects_per_access_point: int = OBJECTS_PER_ACCESS_POINT,
    id_factory: Callable[[], str] = random_id,
) -> List[AccessPointGroup]:
    """Split entries by bucket, then into chunks of at most objects_per_access_point.

    Each chunk gets a fresh group id which is also recorded on its entries.
    """
    if objects_per_access_point < 1:
        raise GenerationUsageError("objects_per_access_point must be at least 1")

    by_bucket: Dict[str, List[AccessPointEntry]] = {}
    for e in entries:
        by_bucket.setdefault(e.object_store_bucket, []).append(e)

    groups: List[AccessPointGroup] = []
    used_ids = set()
    for bucket, bucket_entries in by_bucket.items():
        for start in range(0, len(bucket_entries), objects_per_access_point):
            group_id = id_factory()
            if group_id in used_ids:
                raise GenerationUsageError(f"Generated a duplicate access point group id {group_id}")
            used_ids.add(group_id)
            chunk = bucket_entries[start:start + objects_per_access_point]
            for e in chunk:
                e.access_point_group_id = group_id
            groups.append(AccessPointGroup(group_id=group_id, bucket=bucket, entries=chunk))
    return groups


def pack_groups_into_stacks(
    groups: Sequence[AccessPointGroup],
    access_points_per_stack: int = ACCESS_POINTS_PER_STACK,
    id_factory: Callable[[], str] = random_id,
) -> List[ResourceStack]:
    """Fill nested stacks in order, closing each at access_points_per_stack groups."""
    if access_points_per_stack < 1:
        raise GenerationUsageError("access_points_per_stack must be at least 1")

    stacks: List[ResourceStack] = []
    current: Optional[ResourceStack] = None
    for g in groups:
        if current is None or len(current.groups) >= access_points_per_stack:
            current = ResourceStack(stack_name=id_factory())
            stacks.append(current)
        current.groups.append(g)
    return stacks


def _principals(share_to_account_ids: Sequence[str]) -> Dict[str, List[str]]:
    return {"AWS": [f"arn:aws:iam::{account}:root" for account in share_to_account_ids]}


def access_point_resource(
    group: AccessPointGroup,
    share_to_account_ids: Sequence[str],
    share_to_vpc_id: Optional[str] = None,
) -> Dict[str, Any]:
    """An AWS::S3::AccessPoint granting GetObject on the group's keys and ListBucket."""
    if not group.entries:
        raise GenerationUsageError("Can't create an access point with no objects")

    # ${AWS::...} are CloudFormation substitutions
    arn_prefix = f"arn:aws:s3:${{AWS::Region}}:${{AWS::AccountId}}:accesspoint/{group.group_id}"
    resource: Dict[str, Any] = {
        "Type": "AWS::S3::AccessPoint",
        "Properties": {
            "Bucket": group.bucket,
            "Name": group.group_id,
            "Policy": {
                "Version": "2012-10-17",
                "Statement": [
                    {
                        "Action": ["s3:GetObject"],
                        "Effect": "Allow",
                        "Resource": [
                            {"Fn::Sub": f"{arn_prefix}/object/{e.object_store_key}*"} for e in group.entries
                        ],
                        "Principal": _principals(share_to_account_ids),
                    },
                    {
                        "Action": ["s3:ListBucket"],
                        "Effect": "Allow",
                        "Resource": {"Fn::Sub": arn_prefix},
                        "Principal": _principals(share_to_account_ids),
                    },
                ],
            },
        },
    }
    if share_to_vpc_id:
        resource["Properties"]["VpcConfiguration"] = {"VpcId": share_to_vpc_id}
    return resource


def nested_template(stack: ResourceStack, release_key: str, share_to_account_ids: Sequence[str],
                    share_to_vpc_id: Optional[str] = None) -> Dict[str, Any]:
    resources: Dict[str, Any] = {}
    outputs: Dict[str, Any] = {}
    for g in stack.groups:
        resources[g.group_id] = access_point_resource(g, share_to_account_ids, share_to_vpc_id)
        outputs[g.group_id + NAME_SUFFIX] = {"Value": {"Fn::GetAtt": [g.group_id, "Name"]}}
        outputs[g.group_id + ALIAS_SUFFIX] = {"Value": {"Fn::GetAtt": [g.group_id, "Alias"]}}
        outputs[g.group_id + BUCKET_SUFFIX] = {"Value": g.bucket}
    return {
        "AWSTemplateFormatVersion": TEMPLATE_FORMAT_VERSION,
        "Description": f"nested template for release {release_key}",
        "Resources": resources,
        "Outputs": outputs,
    }


def _root_group_output(stack_name: str, group_id: str) -> Dict[str, Any]:
    return {
        "Value": {
            "Fn::Join": [
                ":",
                [
                    {"Fn::GetAtt": [stack_name, f"Outputs.{group_id}{suffix}"]}
                    for suffix in (NAME_SUFFIX, ALIAS_SUFFIX, BUCKET_SUFFIX)
                ],
            ]
        }
    }


def template_https(template_bucket: str, template_region: str, template_key: str) -> str:
    return f"https://{template_bucket}.s3.{template_region}.amazonaws.com/{template_key}"


def create_access_point_templates(
    template_bucket: str,
    template_region: str,
    release_key: str,
    objects: Iterable[Any],
    share_to_account_ids: Sequence[str],
    share_to_vpc_id: Optional[str] = None,
    objects_per_access_point: int = OBJECTS_PER_ACCESS_POINT,
    access_points_per_stack: int = ACCESS_POINTS_PER_STACK,
) -> List[AccessPointTemplateToSave]:
    """Generate nested and root templates sharing objects to the given accounts.

    Returns the nested templates followed by the root template (the one
    flagged ``root``), ready to be written to ``template_bucket``.

    Raises:
        GenerationUsageError: No objects, no accounts, or more access points
            than the root template can export.
    """
    if not share_to_account_ids:
        raise GenerationUsageError("Access points must be shared to at least one account")

    entries = dedupe_entries(objects)
    if not entries:
        raise GenerationUsageError("No objects to share through access points")

    groups = partition_into_groups(entries, objects_per_access_point)
    if len(groups) + 2 > MAX_ROOT_OUTPUTS:
        raise GenerationUsageError(
            f"{len(groups)} access points exceed the {MAX_ROOT_OUTPUTS} outputs of a root template",
            details={"access_points": len(groups)},
        )
    stacks = pack_groups_into_stacks(groups, access_points_per_stack)

    stack_id = random_id()
    results: List[AccessPointTemplateToSave] = []
    root_resources: Dict[str, Any] = {}
    root_outputs: Dict[str, Any] = {}

    for stack in stacks:
        key = f"{stack_id}/{stack.stack_name}.template"
        https = template_https(template_bucket, template_region, key)
        root_resources[stack.stack_name] = {
            "Type": "AWS::CloudFormation::Stack",
            "Properties": {"TemplateURL": https},
        }
        for g in stack.groups:
            root_outputs[g.group_id] = _root_group_output(stack.stack_name, g.group_id)
        results.append(
            AccessPointTemplateToSave(
                root=False,
                template_bucket=template_bucket,
                template_key=key,
                template_https=https,
                content=json.dumps(nested_template(stack, release_key, share_to_account_ids, share_to_vpc_id)),
            )
        )

    if share_to_vpc_id:
        root_outputs[VPC_ID_OUTPUT] = {"Value": share_to_vpc_id}
    root_outputs[ACCOUNT_IDS_OUTPUT] = {"Value": ",".join(share_to_account_ids)}

    root_key = f"{stack_id}/{ROOT_TEMPLATE_NAME}"
    root_template = {
        "AWSTemplateFormatVersion": TEMPLATE_FORMAT_VERSION,
        "Description": f"access point sharing for release {release_key}",
        "Resources": root_resources,
        "Outputs": root_outputs,
    }
    results.append(
        AccessPointTemplateToSave(
            root=True,
            template_bucket=template_bucket,
            template_key=root_key,
            template_https=template_https(template_bucket, template_region, root_key),
            content=json.dumps(root_template),
        )
    )

    LOGGER.info(
        "Generated access point templates for release %s: %d objects, %d access points, %d nested stacks",
        release_key,
        len(entries),
        len(groups),
        len(stacks),
    )
    return results
