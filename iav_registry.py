#!/usr/bin/env python3
"""Discover and download sigstore bundles attached to an OCI image.

The registry surface used here is deliberately small:

- HEAD  /v2/<repo>/manifests/<tag-or-digest>   resolve the image digest
- GET   /v2/<repo>/referrers/<digest>          list attached artifacts
- GET   /v2/<repo>/manifests/<digest>          referrer manifest
- GET   /v2/<repo>/blobs/<digest>              bundle layer

Registries without the referrers API are handled through the referrers tag
schema (``sha256-<hex>``). Anonymous bearer tokens are negotiated from
``WWW-Authenticate`` challenges; basic credentials are taken from
``IAV_REGISTRY_USERNAME``/``IAV_REGISTRY_PASSWORD`` or the Docker config file.
"""

from __future__ import annotations

import argparse
import base64
import hashlib
import json
import logging
import os
import re
import sys
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urljoin

import requests
from sigstore.models import Bundle

from iav_errors import (
    BundleDecodeError,
    InvalidReference,
    RegistryError,
    TooManyReferrers,
    UnsupportedBundleError,
)
from iav_reference import DEFAULT_REGISTRY, ImageReference, parse_reference, validate_digest

if TYPE_CHECKING:
    from iav_filter import Statement

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

OCI_INDEX_MEDIA_TYPE = "application/vnd.oci.image.index.v1+json"
OCI_MANIFEST_MEDIA_TYPE = "application/vnd.oci.image.manifest.v1+json"
DOCKER_LIST_MEDIA_TYPE = "application/vnd.docker.distribution.manifest.list.v2+json"
DOCKER_MANIFEST_MEDIA_TYPE = "application/vnd.docker.distribution.manifest.v2+json"

MANIFEST_ACCEPT = ", ".join(
    [
        OCI_INDEX_MEDIA_TYPE,
        OCI_MANIFEST_MEDIA_TYPE,
        DOCKER_LIST_MEDIA_TYPE,
        DOCKER_MANIFEST_MEDIA_TYPE,
    ]
)

BUNDLE_MEDIA_TYPE_PREFIX = "application/vnd.dev.sigstore.bundle"

DEFAULT_LIMIT = 100
DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_BUNDLE_BYTES = 16 * 1024 * 1024

_CHUNK_SIZE = 64 * 1024
_CHALLENGE_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')


# =============================================================================
# Data types
# =============================================================================


def parse_size(value: Any, what: str) -> int:
    """Byte count from a descriptor field or header; absent means 0."""
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise RegistryError(f"Malformed {what}", f"Got: {value!r}")
    try:
        size = int(value)
    except (TypeError, ValueError) as exc:
        raise RegistryError(f"Malformed {what}", f"Got: {value!r}") from exc
    if size < 0:
        raise RegistryError(f"Malformed {what}", f"Negative size: {size}")
    return size


@dataclass(frozen=True)
class Descriptor:
    """OCI content descriptor."""

    media_type: str
    digest: str
    size: int = 0
    artifact_type: Optional[str] = None
    annotations: Dict[str, str] = field(default_factory=dict)

    @property
    def algorithm(self) -> str:
        return self.digest.split(":", 1)[0]

    @property
    def hex(self) -> str:
        return self.digest.split(":", 1)[-1]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Descriptor":
        if not isinstance(data, dict):
            raise RegistryError("Malformed descriptor", f"Got: {type(data).__name__}")
        try:
            digest = validate_digest(str(data.get("digest", "")))
        except InvalidReference as exc:
            raise RegistryError("Malformed descriptor digest", exc.message) from exc
        annotations = data.get("annotations") or {}
        return cls(
            media_type=str(data.get("mediaType", "")),
            digest=digest,
            size=parse_size(data.get("size"), "descriptor size"),
            artifact_type=data.get("artifactType"),
            annotations=dict(annotations) if isinstance(annotations, dict) else {},
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "mediaType": self.media_type,
            "digest": self.digest,
            "size": self.size,
        }
        if self.artifact_type:
            data["artifactType"] = self.artifact_type
        if self.annotations:
            data["annotations"] = dict(self.annotations)
        return data


@dataclass(frozen=True)
class AttestationBundle:
    """A sigstore bundle discovered through the referrers index.

    ``document`` is the bundle JSON as downloaded, ``entity`` the decoded
    sigstore ``Bundle``. ``statement`` is only set once the predicate filter
    has parsed the envelope payload. ``unsupported`` holds the reason when
    the bundle could not be turned into a sigstore ``Bundle`` (``entity`` is
    then None).
    """

    descriptor: Descriptor
    document: Dict[str, Any]
    entity: Any
    statement: Optional["Statement"] = None
    unsupported: Optional[str] = None

    @property
    def media_type(self) -> str:
        return str(self.document.get("mediaType", ""))

    @property
    def dsse_envelope(self) -> Optional[Dict[str, Any]]:
        envelope = self.document.get("dsseEnvelope")
        return envelope if isinstance(envelope, dict) else None

    @property
    def verification_material(self) -> Dict[str, Any]:
        material = self.document.get("verificationMaterial")
        return material if isinstance(material, dict) else {}


def is_bundle_artifact(descriptor: Descriptor) -> bool:
    return (descriptor.artifact_type or "").startswith(BUNDLE_MEDIA_TYPE_PREFIX)


# =============================================================================
# Bundle decoding
# =============================================================================


def decode_bundle(data: bytes) -> Tuple[Dict[str, Any], Any]:
    """Decode a sigstore bundle layer into (document, sigstore Bundle)."""
    try:
        document = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise BundleDecodeError("failed to unmarshal bundle", str(exc)) from exc

    if not isinstance(document, dict):
        raise BundleDecodeError("failed to unmarshal bundle", "Bundle is not a JSON object")

    media_type = document.get("mediaType", "")
    if not isinstance(media_type, str) or not media_type.startswith(BUNDLE_MEDIA_TYPE_PREFIX):
        raise BundleDecodeError("Unsupported bundle mediaType", f"Got: {media_type!r}")

    # sigstore-python only models bundles with exactly one log entry, so a
    # timestamp-only bundle would otherwise fail to decode altogether.
    material = document.get("verificationMaterial")
    if isinstance(material, dict):
        entries = material.get("tlogEntries") or []
        count = len(entries) if isinstance(entries, list) else 0
        if count != 1:
            raise UnsupportedBundleError(
                f"Bundle carries {count} transparency log entries",
                "sigstore-python verifies bundles with exactly one transparency log entry",
                document,
            )

    try:
        entity = Bundle.from_json(data)
    except Exception as exc:
        raise BundleDecodeError("failed to unmarshal bundle", str(exc)) from exc
    return document, entity


def _gunzip_bounded(data: bytes, max_bytes: int) -> bytes:
    decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
    try:
        out = decompressor.decompress(data, max_bytes + 1)
    except zlib.error as exc:
        raise BundleDecodeError("failed to decompress bundle layer", str(exc)) from exc
    if len(out) > max_bytes or decompressor.unconsumed_tail:
        raise BundleDecodeError(f"Decompressed bundle exceeds {max_bytes} bytes")
    return out


# =============================================================================
# Credentials
# =============================================================================


def _docker_config_path() -> Path:
    config_dir = os.environ.get("DOCKER_CONFIG")
    if config_dir:
        return Path(config_dir) / "config.json"
    return Path.home() / ".docker" / "config.json"


def registry_credentials(
    registry: str, config_path: Optional[Path] = None
) -> Optional[Tuple[str, str]]:
    """Return (username, password) for a registry, if configured.

    Credential helpers are not consulted; only inline ``auth`` entries.
    """
    username = os.environ.get("IAV_REGISTRY_USERNAME")
    password = os.environ.get("IAV_REGISTRY_PASSWORD")
    if username and password:
        return username, password

    path = config_path or _docker_config_path()
    try:
        config = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None

    auths = config.get("auths") if isinstance(config, dict) else None
    if not isinstance(auths, dict):
        return None

    keys = [registry, f"https://{registry}", f"https://{registry}/v1/"]
    if registry == DEFAULT_REGISTRY:
        keys.extend(["docker.io", "https://index.docker.io/v1/"])
    for key in keys:
        entry = auths.get(key)
        if not isinstance(entry, dict) or not entry.get("auth"):
            continue
        try:
            decoded = base64.b64decode(entry["auth"]).decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            logger.debug("Ignoring malformed docker auth entry for %s", key)
            continue
        user, sep, secret = decoded.partition(":")
        if sep:
            return user, secret
    return None


def _parse_challenge(header: str) -> Tuple[str, Dict[str, str]]:
    scheme, _, rest = header.strip().partition(" ")
    return scheme.lower(), dict(_CHALLENGE_PARAM_RE.findall(rest))


# =============================================================================
# Registry client
# =============================================================================


class RegistryClient:
    """Minimal OCI distribution client for read-only access."""

    def __init__(
        self,
        session: Optional[Any] = None,
        timeout: float = DEFAULT_TIMEOUT,
        credentials: Optional[Callable[[str], Optional[Tuple[str, str]]]] = None,
    ):
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout
        self.credentials = credentials or registry_credentials
        self._tokens: Dict[Tuple[str, str], str] = {}

    # -- transport ---------------------------------------------------------

    def _fetch_token(self, ref: ImageReference, params: Dict[str, str]) -> Optional[str]:
        realm = params.get("realm")
        if not realm:
            return None
        query = {"scope": params.get("scope") or f"repository:{ref.repository}:pull"}
        if params.get("service"):
            query["service"] = params["service"]
        auth = self.credentials(ref.registry)
        try:
            resp = self.session.get(realm, params=query, auth=auth, timeout=self.timeout)
        except requests.RequestException as exc:
            raise RegistryError(f"Token request to {realm} failed", str(exc)) from exc
        if resp.status_code != 200:
            raise RegistryError(
                f"Token request to {realm} failed",
                f"HTTP {resp.status_code}",
            )
        try:
            body = resp.json()
        except ValueError as exc:
            raise RegistryError("Token response is not JSON", str(exc)) from exc
        return body.get("token") or body.get("access_token")

    def _request(
        self,
        method: str,
        ref: ImageReference,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        stream: bool = False,
    ) -> Any:
        headers = dict(headers or {})
        key = (ref.registry, ref.repository)
        auth = None
        if key in self._tokens:
            headers["Authorization"] = f"Bearer {self._tokens[key]}"

        for attempt in range(2):
            try:
                resp = self.session.request(
                    method,
                    url,
                    headers=headers,
                    auth=auth,
                    timeout=self.timeout,
                    stream=stream,
                    allow_redirects=True,
                )
            except requests.RequestException as exc:
                raise RegistryError(f"{method} {url} failed", str(exc)) from exc

            if resp.status_code != 401 or attempt == 1:
                return resp

            scheme, params = _parse_challenge(resp.headers.get("WWW-Authenticate", ""))
            if scheme == "bearer":
                token = self._fetch_token(ref, params)
                if not token:
                    return resp
                self._tokens[key] = token
                headers["Authorization"] = f"Bearer {token}"
            elif scheme == "basic":
                auth = self.credentials(ref.registry)
                if auth is None:
                    return resp
            else:
                return resp
        return resp

    @staticmethod
    def _check(resp: Any, what: str) -> None:
        if 200 <= resp.status_code < 300:
            return
        if resp.status_code == 404:
            raise RegistryError(f"{what}: not found", f"HTTP 404 for {resp.url}")
        if resp.status_code in (401, 403):
            raise RegistryError(f"{what}: unauthorized", f"HTTP {resp.status_code} for {resp.url}")
        raise RegistryError(f"{what}: unexpected response", f"HTTP {resp.status_code} for {resp.url}")

    # -- operations --------------------------------------------------------

    def resolve(self, ref: ImageReference) -> Descriptor:
        """Resolve a tag or digest reference to the manifest descriptor."""
        url = f"{ref.base_url}/manifests/{ref.identifier}"
        resp = self._request("HEAD", ref, url, headers={"Accept": MANIFEST_ACCEPT})
        self._check(resp, f"failed to resolve {ref}")

        media_type = resp.headers.get("Content-Type", "").split(";", 1)[0].strip()
        digest = resp.headers.get("Docker-Content-Digest")
        size = parse_size(resp.headers.get("Content-Length"), "Content-Length")

        if not digest:
            logger.debug("No Docker-Content-Digest for %s, hashing manifest", ref)
            resp = self._request("GET", ref, url, headers={"Accept": MANIFEST_ACCEPT})
            self._check(resp, f"failed to resolve {ref}")
            algorithm = ref.digest.split(":", 1)[0] if ref.digest else "sha256"
            digest = f"{algorithm}:{hashlib.new(algorithm, resp.content).hexdigest()}"
            size = len(resp.content)
            media_type = media_type or resp.headers.get("Content-Type", "").split(";", 1)[0]

        try:
            digest = validate_digest(digest)
        except InvalidReference as exc:
            raise RegistryError(f"Registry returned an invalid digest for {ref}", exc.message) from exc

        if ref.digest and digest != ref.digest:
            raise RegistryError(
                f"Resolved digest does not match reference {ref}",
                f"Resolved: {digest}",
            )
        logger.debug("Resolved %s to %s", ref, digest)
        return Descriptor(media_type=media_type, digest=digest, size=size)

    def _index_manifests(self, resp: Any) -> List[Descriptor]:
        try:
            index = resp.json()
        except ValueError as exc:
            raise RegistryError("Referrers index is not JSON", str(exc)) from exc
        if not isinstance(index, dict):
            raise RegistryError("Referrers index is not a JSON object")
        manifests = index.get("manifests") or []
        if not isinstance(manifests, list):
            raise RegistryError("Referrers index manifests is not a list")
        return [Descriptor.from_dict(m) for m in manifests]

    def _referrers_by_tag(self, ref: ImageReference, digest: str) -> List[Descriptor]:
        tag = digest.replace(":", "-")
        url = f"{ref.base_url}/manifests/{tag}"
        resp = self._request("GET", ref, url, headers={"Accept": OCI_INDEX_MEDIA_TYPE})
        if resp.status_code == 404:
            return []
        self._check(resp, f"failed to fetch referrers tag {tag}")
        return self._index_manifests(resp)

    def referrers(
        self, ref: ImageReference, digest: str, max_entries: Optional[int] = None
    ) -> List[Descriptor]:
        """List referrers of ``digest``.

        Paging stops as soon as more than ``max_entries`` entries were seen.
        """
        url: Optional[str] = f"{ref.base_url}/referrers/{digest}"
        entries: List[Descriptor] = []
        first = True
        while url:
            resp = self._request("GET", ref, url, headers={"Accept": OCI_INDEX_MEDIA_TYPE})
            if first and resp.status_code == 404:
                logger.debug("Referrers API unavailable for %s, using tag schema", ref)
                return self._referrers_by_tag(ref, digest)
            first = False
            self._check(resp, f"failed to list referrers for {digest}")
            entries.extend(self._index_manifests(resp))
            if max_entries is not None and len(entries) > max_entries:
                break
            next_url = (getattr(resp, "links", None) or {}).get("next", {}).get("url")
            url = urljoin(url, next_url) if next_url else None
        return entries

    def manifest(self, ref: ImageReference, digest: str) -> Dict[str, Any]:
        url = f"{ref.base_url}/manifests/{digest}"
        resp = self._request("GET", ref, url, headers={"Accept": OCI_MANIFEST_MEDIA_TYPE})
        self._check(resp, f"failed to fetch referrer manifest {digest}")
        _verify_content_digest(resp.content, digest)
        try:
            manifest = json.loads(resp.content)
        except ValueError as exc:
            raise RegistryError(f"Referrer manifest {digest} is not JSON", str(exc)) from exc
        if not isinstance(manifest, dict):
            raise RegistryError(f"Referrer manifest {digest} is not a JSON object")
        return manifest

    def blob(
        self, ref: ImageReference, digest: str, max_bytes: int = DEFAULT_MAX_BUNDLE_BYTES
    ) -> bytes:
        url = f"{ref.base_url}/blobs/{digest}"
        resp = self._request("GET", ref, url, stream=True)
        try:
            self._check(resp, f"failed to fetch referrer layer {digest}")
            chunks: List[bytes] = []
            total = 0
            for chunk in resp.iter_content(chunk_size=_CHUNK_SIZE):
                total += len(chunk)
                if total > max_bytes:
                    raise RegistryError(f"Referrer layer {digest} exceeds {max_bytes} bytes")
                chunks.append(chunk)
        except requests.RequestException as exc:
            raise RegistryError(f"failed to fetch referrer layer {digest}", str(exc)) from exc
        finally:
            resp.close()
        data = b"".join(chunks)
        _verify_content_digest(data, digest)
        return data


def _verify_content_digest(data: bytes, digest: str) -> None:
    algorithm, _, expected = digest.partition(":")
    actual = hashlib.new(algorithm, data).hexdigest()
    if actual != expected.lower():
        raise RegistryError(
            "Content digest mismatch",
            f"Expected: {digest}, Computed: {algorithm}:{actual}",
        )


# =============================================================================
# Bundle fetcher
# =============================================================================


class BundleFetcher:
    """Resolve an image and download the sigstore bundles attached to it."""

    def __init__(
        self,
        client: Optional[RegistryClient] = None,
        limit: int = DEFAULT_LIMIT,
        max_bundle_bytes: int = DEFAULT_MAX_BUNDLE_BYTES,
        decoder: Callable[[bytes], Tuple[Dict[str, Any], Any]] = decode_bundle,
    ):
        if limit < 0:
            raise ValueError("limit must be non-negative")
        self.client = client or RegistryClient()
        self.limit = limit
        self.max_bundle_bytes = max_bundle_bytes
        self.decoder = decoder

    def fetch(self, image: Any) -> Tuple[List[AttestationBundle], Descriptor]:
        """Return the bundles attached to ``image`` and its resolved descriptor.

        ``image`` is a reference string or an ``ImageReference``.
        """
        ref = parse_reference(image) if isinstance(image, str) else image
        descriptor = self.client.resolve(ref)
        pinned = ref.with_digest(descriptor.digest)

        referrers = self.client.referrers(pinned, descriptor.digest, max_entries=self.limit)
        if len(referrers) > self.limit:
            raise TooManyReferrers(len(referrers), self.limit)
        logger.debug("Found %d referrers for %s", len(referrers), pinned)

        bundles: List[AttestationBundle] = []
        for entry in referrers:
            if not is_bundle_artifact(entry):
                logger.debug("Skipping referrer %s (%s)", entry.digest, entry.artifact_type)
                continue
            bundles.append(self._fetch_bundle(pinned, entry))
        return bundles, descriptor

    def _fetch_bundle(self, ref: ImageReference, entry: Descriptor) -> AttestationBundle:
        manifest = self.client.manifest(ref, entry.digest)
        layers = manifest.get("layers")
        if not isinstance(layers, list) or not layers:
            raise BundleDecodeError(
                "failed to fetch referrer layer",
                f"Referrer manifest {entry.digest} has no layers",
            )
        try:
            layer = Descriptor.from_dict(layers[0])
        except RegistryError as exc:
            raise BundleDecodeError("Malformed referrer layer descriptor", exc.message) from exc

        data = self.client.blob(ref, layer.digest, max_bytes=self.max_bundle_bytes)
        if layer.media_type.endswith("+gzip") or layer.media_type.endswith(".gzip"):
            data = _gunzip_bounded(data, self.max_bundle_bytes)

        try:
            document, entity = self.decoder(data)
        except UnsupportedBundleError as exc:
            logger.warning("Bundle %s cannot be verified: %s", entry.digest, exc.message)
            return AttestationBundle(
                descriptor=entry, document=exc.document, entity=None, unsupported=exc.message
            )
        logger.debug("Decoded bundle %s (%s)", entry.digest, document.get("mediaType"))
        return AttestationBundle(descriptor=entry, document=document, entity=entity)


# =============================================================================
# CLI
# =============================================================================


# pragma: no mutate
def main(argv: Optional[List[str]] = None, prog: Optional[str] = None) -> int:
    from iav_filter import envelope_statement, filter_bundles

    parser = argparse.ArgumentParser(
        prog=prog,
        description="List the sigstore bundles attached to a container image",
    )
    parser.add_argument("image", help="Image reference (tag or digest)")
    parser.add_argument("--predicate-type", default="", help="Only list this predicate type")
    parser.add_argument("--limit", type=int, default=DEFAULT_LIMIT, help="Maximum referrers")
    parser.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT, help="Request timeout (s)")
    parser.add_argument("--json", action="store_true", help="Output as JSON")
    args = parser.parse_args(argv)
    if args.limit < 0:
        parser.error("--limit must be non-negative")

    try:
        fetcher = BundleFetcher(RegistryClient(timeout=args.timeout), limit=args.limit)
        bundles, descriptor = fetcher.fetch(args.image)
        bundles = filter_bundles(bundles, args.predicate_type)
    except (InvalidReference, RegistryError, BundleDecodeError) as e:
        print(f"Error [{e.rule_id}]: {e.message}", file=sys.stderr)
        if e.details:
            print(f"  {e.details}", file=sys.stderr)
        return e.exit_code

    rows = []
    for bundle in bundles:
        statement = bundle.statement or envelope_statement(bundle)
        rows.append(
            {
                "digest": bundle.descriptor.digest,
                "mediaType": bundle.media_type,
                "predicateType": statement.predicate_type if statement else None,
                "unsupported": bundle.unsupported,
            }
        )

    if args.json:
        print(json.dumps({"descriptor": descriptor.to_dict(), "bundles": rows}, indent=2))
    else:
        print(f"{args.image} -> {descriptor.digest}")
        for row in rows:
            note = f"  [unsupported: {row['unsupported']}]" if row["unsupported"] else ""
            print(f"  {row['digest']}  {row['predicateType'] or '-'}  ({row['mediaType']}){note}")
        if not rows:
            print("  (no bundles)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
