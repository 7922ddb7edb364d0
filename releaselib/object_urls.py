"""Object store URL helpers.

Stored file URLs have the shape ``scheme://bucket/key`` where scheme is one
of the supported object store protocols (s3, gs, r2).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from releaselib.exceptions import MalformedObjectUrlError

S3_PROTOCOL = "s3"
GS_PROTOCOL = "gs"
R2_PROTOCOL = "r2"

# In order of preference where a file exists in several locations
KNOWN_PROTOCOLS = (S3_PROTOCOL, GS_PROTOCOL, R2_PROTOCOL)

# bucket, key (must not end in /), and the final path segment of the key
OBJECT_URL_PATTERN = re.compile(r"^([a-z0-9]+)://([^/]+)/(.*?([^/]+))$")


@dataclass(frozen=True)
class DecomposedUrl:
    """The parts of an object store URL."""
    url: str
    protocol: str
    bucket: str
    key: str
    base_name: str


def url_protocol(url: Optional[str]) -> Optional[str]:
    """Return the known protocol of a URL or None if it is not one of ours."""
    if not isinstance(url, str):
        return None
    for protocol in KNOWN_PROTOCOLS:
        if url.startswith(f"{protocol}://"):
            return protocol
    return None


def decompose_url(url: str) -> DecomposedUrl:
    """Split an object URL into protocol, bucket and key.

    Raises:
        MalformedObjectUrlError: If the URL does not match scheme://bucket/key.
    """
    match = OBJECT_URL_PATTERN.match(url or "")
    if not match:
        raise MalformedObjectUrlError(url)
    return DecomposedUrl(
        url=url,
        protocol=match.group(1),
        bucket=match.group(2),
        key=match.group(3),
        base_name=match.group(4),
    )


def s3_url(bucket: str, key: str) -> str:
    return f"s3://{bucket}/{key}"
