#!/usr/bin/env python3
"""Container image reference parsing.

Accepts the usual ``[registry/]repository[:tag][@digest]`` forms:

    ghcr.io/org/demo:latest
    nginx                       -> index.docker.io/library/nginx:latest
    localhost:5000/app@sha256:<hex>

Docker Hub conventions apply: ``docker.io`` is rewritten to
``index.docker.io``, single-component Hub repositories get the ``library/``
prefix, and a reference without tag or digest means ``:latest``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import Optional

from iav_errors import InvalidReference

# =============================================================================
# Constants
# =============================================================================

DEFAULT_REGISTRY = "index.docker.io"
DEFAULT_TAG = "latest"

# Docker Hub serves the distribution API from a different host.
DOCKER_HUB_API_HOST = "registry-1.docker.io"

_DOCKER_HUB_ALIASES = {"docker.io", "registry-1.docker.io", "index.docker.io"}

# Hex lengths for supported digest algorithms
DIGEST_HEX_LENGTHS = {
    "sha256": 64,
    "sha512": 128,
}

_REGISTRY_RE = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9.-]*[a-zA-Z0-9])?(?::[0-9]+)?$")
_REPO_COMPONENT_RE = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_TAG_RE = re.compile(r"^[\w][\w.-]{0,127}$")
_DIGEST_RE = re.compile(r"^([a-z0-9]+):([a-fA-F0-9]+)$")

MAX_REPOSITORY_LENGTH = 255


# =============================================================================
# Reference type
# =============================================================================


@dataclass(frozen=True)
class ImageReference:
    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    @property
    def identifier(self) -> str:
        """Digest if pinned, otherwise the tag."""
        return self.digest or self.tag or DEFAULT_TAG

    @property
    def scheme(self) -> str:
        host = self.registry.split(":", 1)[0]
        if host == "localhost" or host.startswith("127.") or host.endswith(".local"):
            return "http"
        return "https"

    @property
    def base_url(self) -> str:
        host = DOCKER_HUB_API_HOST if self.registry == DEFAULT_REGISTRY else self.registry
        return f"{self.scheme}://{host}/v2/{self.repository}"

    def with_digest(self, digest: str) -> "ImageReference":
        return replace(self, tag=None, digest=digest)

    def __str__(self) -> str:
        name = f"{self.registry}/{self.repository}"
        if self.digest:
            return f"{name}@{self.digest}"
        return f"{name}:{self.tag or DEFAULT_TAG}"


# =============================================================================
# Parsing
# =============================================================================


def validate_digest(digest: str) -> str:
    """Validate ``<algorithm>:<hex>`` and return it with lowercase hex."""
    match = _DIGEST_RE.match(digest)
    if not match:
        raise InvalidReference(f"Invalid digest: {digest!r}")
    algorithm, hex_value = match.groups()
    expected = DIGEST_HEX_LENGTHS.get(algorithm)
    if expected is None:
        raise InvalidReference(
            f"Unsupported digest algorithm: {algorithm}",
            f"Supported: {sorted(DIGEST_HEX_LENGTHS)}",
        )
    if len(hex_value) != expected:
        raise InvalidReference(
            f"Invalid {algorithm} digest length",
            f"Got {len(hex_value)} hex characters, expected {expected}",
        )
    return f"{algorithm}:{hex_value.lower()}"


def _split_registry(name: str) -> tuple[str, str]:
    parts = name.split("/", 1)
    if len(parts) == 1:
        return DEFAULT_REGISTRY, name
    first = parts[0]
    if "." in first or ":" in first or first == "localhost":
        return first, parts[1]
    return DEFAULT_REGISTRY, name


def parse_reference(image: str) -> ImageReference:
    """Parse an image reference string.

    Raises:
        InvalidReference: on any malformed component.
    """
    if not image or image != image.strip():
        raise InvalidReference(f"failed to parse image reference: {image!r}")

    name = image
    digest: Optional[str] = None
    if "@" in name:
        name, digest_part = name.split("@", 1)
        digest = validate_digest(digest_part)

    tag: Optional[str] = None
    last_slash = name.rfind("/")
    last_colon = name.rfind(":")
    if last_colon > last_slash:
        name, tag = name[:last_colon], name[last_colon + 1 :]
        if not _TAG_RE.match(tag):
            raise InvalidReference(f"Invalid tag: {tag!r}", f"Reference: {image}")

    registry, repository = _split_registry(name)
    if registry in _DOCKER_HUB_ALIASES:
        registry = DEFAULT_REGISTRY
        if "/" not in repository:
            repository = f"library/{repository}"

    if not _REGISTRY_RE.match(registry):
        raise InvalidReference(f"Invalid registry: {registry!r}", f"Reference: {image}")

    if not repository or len(repository) > MAX_REPOSITORY_LENGTH:
        raise InvalidReference(f"Invalid repository: {repository!r}", f"Reference: {image}")
    for component in repository.split("/"):
        if not _REPO_COMPONENT_RE.match(component):
            raise InvalidReference(
                f"Invalid repository: {repository!r}",
                f"Component {component!r} must be lowercase alphanumerics and separators",
            )

    if tag is None and digest is None:
        tag = DEFAULT_TAG

    return ImageReference(registry=registry, repository=repository, tag=tag, digest=digest)
