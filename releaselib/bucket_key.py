"""Bucket-key manifest: the distinct objects a release shares, by location."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Set, Union

from releaselib.exceptions import GenerationUsageError
from releaselib.manifest_tsv import ManifestRow, transform_master_manifest_to_rows
from releaselib.models import MasterManifest
from releaselib.object_urls import KNOWN_PROTOCOLS

LOGGER = logging.getLogger("releaselib.bucket_key")

ALL_PROTOCOLS = "all"


def _resolve_protocols(protocols: Union[str, Iterable[str]]) -> Set[str]:
    requested = [protocols] if isinstance(protocols, str) else list(protocols or [])
    if not requested:
        raise GenerationUsageError("An empty protocol filter would produce an empty bucket-key manifest")
    if ALL_PROTOCOLS in requested:
        return set(KNOWN_PROTOCOLS)
    unknown = [p for p in requested if p not in KNOWN_PROTOCOLS]
    if unknown:
        raise GenerationUsageError(
            f"Unknown object store protocols {unknown}; expected some of {list(KNOWN_PROTOCOLS)} or '{ALL_PROTOCOLS}'",
            details={"protocols": unknown},
        )
    return set(requested)


def transform_master_manifest_to_bucket_key_manifest(
    manifest: MasterManifest,
    protocols: Union[str, Iterable[str]] = ALL_PROTOCOLS,
) -> Dict[str, Any]:
    """List every shared object once, restricted to the given protocols.

    Returns ``{"id": release_key, "objects": [ManifestRow, ...]}`` with
    objects in manifest order, keeping the first row for each URL.

    Raises:
        GenerationUsageError: If the protocol filter is empty or names an
            unknown protocol.
    """
    allowed = _resolve_protocols(protocols)

    seen: Set[str] = set()
    objects: List[ManifestRow] = []
    for row in transform_master_manifest_to_rows(manifest):
        if row.object_store_protocol not in allowed:
            continue
        if row.object_store_url in seen:
            continue
        seen.add(row.object_store_url)
        objects.append(row)

    LOGGER.debug(
        "Bucket-key manifest for %s: %d objects (%s)",
        manifest.release_key,
        len(objects),
        ",".join(sorted(allowed)),
    )
    return {"id": manifest.release_key, "objects": objects}
