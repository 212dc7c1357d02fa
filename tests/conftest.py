from __future__ import annotations

import base64
import datetime
import hashlib
import json
import os
import sys
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

import pytest

if os.environ.get("IAV_MUTMUT") == "1":
    _main_module = sys.modules.get("__main__")
    _main_spec = getattr(_main_module, "__spec__", None)
    if (
        _main_module is not None
        and _main_spec
        and getattr(_main_spec, "name", None) == "mutmut.__main__"
    ):
        sys.modules.setdefault("mutmut.__main__", _main_module)


INTOTO_PAYLOAD_TYPE = "application/vnd.in-toto+json"
BUNDLE_MEDIA_TYPE = "application/vnd.dev.sigstore.bundle.v0.3+json"
SLSA_PREDICATE = "https://slsa.dev/provenance/v1"
SPDX_PREDICATE = "https://spdx.dev/Document/v2.3"
GITHUB_ISSUER = "https://token.actions.githubusercontent.com"
WORKFLOW_SUBJECT = "https://github.com/org/demo/.github/workflows/build.yaml@refs/heads/main"


# =============================================================================
# Bundle builders
# =============================================================================


def sha256_digest(data: bytes) -> str:
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def make_statement(digest: str, predicate_type: str = SLSA_PREDICATE) -> Dict[str, Any]:
    algorithm, _, hex_value = digest.partition(":")
    return {
        "_type": "https://in-toto.io/Statement/v1",
        "subject": [{"name": "ghcr.io/org/demo", "digest": {algorithm: hex_value}}],
        "predicateType": predicate_type,
        "predicate": {"buildDefinition": {"buildType": "https://actions.github.io/buildtypes/workflow/v1"}},
    }


def make_bundle_document(
    statement: Optional[Dict[str, Any]] = None,
    payload_type: str = INTOTO_PAYLOAD_TYPE,
    payload: Optional[bytes] = None,
    tlog_entries: int = 1,
    timestamps: int = 1,
) -> Dict[str, Any]:
    if payload is None:
        payload = json.dumps(statement or {}).encode("utf-8")
    return {
        "mediaType": BUNDLE_MEDIA_TYPE,
        "verificationMaterial": {
            "certificate": {"rawBytes": "MIIB"},
            "tlogEntries": [{"logIndex": str(i)} for i in range(tlog_entries)],
            "timestampVerificationData": {
                "rfc3161Timestamps": [{"signedTimestamp": "MIIC"} for _ in range(timestamps)]
            },
        },
        "dsseEnvelope": {
            "payload": base64.b64encode(payload).decode("ascii"),
            "payloadType": payload_type,
            "signatures": [{"sig": "MEUCIQ=="}],
        },
    }


def fake_decoder(data: bytes) -> Tuple[Dict[str, Any], Any]:
    """Stand-in for ``decode_bundle`` that skips sigstore's protobuf parsing."""
    document = json.loads(data.decode("utf-8"))
    return document, SimpleNamespace(document=document)


def make_bundle(document: Dict[str, Any], digest: str = "sha256:" + "ab" * 32):
    from iav_registry import AttestationBundle, Descriptor

    descriptor = Descriptor(
        media_type="application/vnd.oci.image.manifest.v1+json",
        digest=digest,
        artifact_type=BUNDLE_MEDIA_TYPE,
    )
    return AttestationBundle(
        descriptor=descriptor,
        document=document,
        entity=SimpleNamespace(document=document),
    )


class FakeTimestamps:
    """Stand-in for ``TimestampVerifier`` that accepts every timestamp present."""

    def __init__(self) -> None:
        self.calls = 0

    def count(self, bundle: Any) -> int:
        from iav_verify import encoded_timestamps

        self.calls += 1
        return len(encoded_timestamps(bundle))


class FakeBackend:
    """Mimics ``sigstore.verify.Verifier.verify_dsse`` on fake bundle entities."""

    def __init__(self, reject: Optional[str] = None):
        self.reject = reject
        self.calls: List[Tuple[Any, Any]] = []

    def verify_dsse(self, entity: Any, policy: Any) -> Tuple[str, bytes]:
        self.calls.append((entity, policy))
        if self.reject:
            raise ValueError(self.reject)
        envelope = entity.document["dsseEnvelope"]
        return envelope["payloadType"], base64.b64decode(envelope["payload"])


# =============================================================================
# Fake registry
# =============================================================================


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        content: bytes = b"",
        headers: Optional[Dict[str, str]] = None,
        url: str = "",
        links: Optional[Dict[str, Dict[str, str]]] = None,
    ):
        self.status_code = status_code
        self.content = content
        self.headers = headers or {}
        self.url = url
        self.links = links or {}
        self.closed = False

    def json(self) -> Any:
        return json.loads(self.content)

    def iter_content(self, chunk_size: int = 1):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i : i + chunk_size]

    def close(self) -> None:
        self.closed = True


class FakeRegistry:
    """In-memory OCI registry speaking just enough of the distribution API."""

    def __init__(self, host: str = "registry.example"):
        self.host = host
        self.manifests: Dict[Tuple[str, str], Tuple[str, bytes]] = {}
        self.blobs: Dict[Tuple[str, str], bytes] = {}
        self.referrer_index: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}
        self.referrers_api = True
        self.digest_header = True
        self.page_size: Optional[int] = None
        self.token: Optional[str] = None
        self.calls: List[Tuple[str, str]] = []

    # -- population ----------------------------------------------------------

    def push_image(self, repository: str, tag: str, body: bytes = b'{"schemaVersion": 2}') -> str:
        digest = sha256_digest(body + repository.encode())
        payload = body + repository.encode()
        media_type = "application/vnd.oci.image.index.v1+json"
        self.manifests[(repository, tag)] = (media_type, payload)
        self.manifests[(repository, digest)] = (media_type, payload)
        return digest

    def attach(
        self,
        repository: str,
        subject: str,
        artifact_type: str,
        layer: bytes,
        layer_media_type: str = BUNDLE_MEDIA_TYPE,
    ) -> str:
        layer_digest = sha256_digest(layer)
        self.blobs[(repository, layer_digest)] = layer
        manifest = json.dumps(
            {
                "schemaVersion": 2,
                "mediaType": "application/vnd.oci.image.manifest.v1+json",
                "artifactType": artifact_type,
                "layers": [
                    {"mediaType": layer_media_type, "digest": layer_digest, "size": len(layer)}
                ],
                "subject": {"digest": subject},
            }
        ).encode("utf-8")
        manifest_digest = sha256_digest(manifest)
        self.manifests[(repository, manifest_digest)] = (
            "application/vnd.oci.image.manifest.v1+json",
            manifest,
        )
        self.referrer_index.setdefault((repository, subject), []).append(
            {
                "mediaType": "application/vnd.oci.image.manifest.v1+json",
                "digest": manifest_digest,
                "size": len(manifest),
                "artifactType": artifact_type,
            }
        )
        return manifest_digest

    def blob_downloads(self) -> List[str]:
        return [url for method, url in self.calls if "/blobs/" in url]

    # -- transport -----------------------------------------------------------

    def _index(self, entries: List[Dict[str, Any]]) -> bytes:
        return json.dumps(
            {
                "schemaVersion": 2,
                "mediaType": "application/vnd.oci.image.index.v1+json",
                "manifests": entries,
            }
        ).encode("utf-8")

    def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        auth: Any = None,
        timeout: Any = None,
        stream: bool = False,
        allow_redirects: bool = True,
    ) -> FakeResponse:
        self.calls.append((method, url))
        headers = headers or {}
        if self.token and headers.get("Authorization") != f"Bearer {self.token}":
            return FakeResponse(
                401,
                headers={
                    "WWW-Authenticate": (
                        f'Bearer realm="https://auth.example/token",service="{self.host}"'
                    )
                },
                url=url,
            )

        parts = urlsplit(url)
        assert parts.netloc == self.host, f"unexpected host {parts.netloc}"
        path = parts.path[len("/v2/") :]

        if "/referrers/" in path:
            repository, digest = path.rsplit("/referrers/", 1)
            if not self.referrers_api:
                return FakeResponse(404, url=url)
            entries = self.referrer_index.get((repository, digest), [])
            if self.page_size is None:
                return FakeResponse(200, self._index(entries), url=url)
            page = int(parse_qs(parts.query).get("page", ["0"])[0])
            start = page * self.page_size
            chunk = entries[start : start + self.page_size]
            links = {}
            if start + self.page_size < len(entries):
                links = {"next": {"url": f"/v2/{repository}/referrers/{digest}?page={page + 1}"}}
            return FakeResponse(200, self._index(chunk), url=url, links=links)

        if "/manifests/" in path:
            repository, reference = path.rsplit("/manifests/", 1)
            if reference.startswith("sha256-") and not self.referrers_api:
                subject = reference.replace("-", ":", 1)
                entries = self.referrer_index.get((repository, subject))
                if entries is None:
                    return FakeResponse(404, url=url)
                return FakeResponse(200, self._index(entries), url=url)
            found = self.manifests.get((repository, reference))
            if found is None:
                return FakeResponse(404, url=url)
            media_type, body = found
            response_headers = {"Content-Type": media_type, "Content-Length": str(len(body))}
            if self.digest_header:
                response_headers["Docker-Content-Digest"] = sha256_digest(body)
            content = b"" if method == "HEAD" else body
            return FakeResponse(200, content, headers=response_headers, url=url)

        if "/blobs/" in path:
            repository, digest = path.rsplit("/blobs/", 1)
            blob = self.blobs.get((repository, digest))
            if blob is None:
                return FakeResponse(404, url=url)
            return FakeResponse(200, blob, url=url)

        return FakeResponse(404, url=url)

    def get(self, url: str, params: Any = None, auth: Any = None, timeout: Any = None) -> FakeResponse:
        self.calls.append(("GET", url))
        if url == "https://auth.example/token" and self.token:
            return FakeResponse(200, json.dumps({"token": self.token}).encode(), url=url)
        return FakeResponse(404, url=url)


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def make_fetcher():
    from iav_registry import BundleFetcher, RegistryClient

    def _make(session: FakeRegistry, limit: int = 100, max_bundle_bytes: int = 1024 * 1024):
        client = RegistryClient(session=session, credentials=lambda registry: None)
        return BundleFetcher(client, limit=limit, max_bundle_bytes=max_bundle_bytes, decoder=fake_decoder)

    return _make


# =============================================================================
# Certificates
# =============================================================================


FULCIO_ISSUER_V1 = "1.3.6.1.4.1.57264.1.1"
FULCIO_WORKFLOW_TRIGGER = "1.3.6.1.4.1.57264.1.2"
FULCIO_ISSUER_V2 = "1.3.6.1.4.1.57264.1.8"


def fulcio_extensions(issuer: str, trigger: Optional[str] = None) -> List[Tuple[str, bytes]]:
    """Certificate extensions the way Fulcio encodes them for GitHub Actions.

    The legacy OIDs carry raw UTF-8, the 1.8+ ones a DER UTF8String.
    """
    encoded = issuer.encode("utf-8")
    extensions = [
        (FULCIO_ISSUER_V1, encoded),
        (FULCIO_ISSUER_V2, bytes([0x0C, len(encoded)]) + encoded),
    ]
    if trigger is not None:
        extensions.append((FULCIO_WORKFLOW_TRIGGER, trigger.encode("utf-8")))
    return extensions


def make_certificate(sans: List[Any], extensions: Optional[List[Tuple[str, bytes]]] = None):
    pytest.importorskip("cryptography")
    from cryptography import x509
    from cryptography.hazmat.primitives import hashes
    from cryptography.hazmat.primitives.asymmetric import ec
    from cryptography.x509.oid import NameOID, ObjectIdentifier

    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.ORGANIZATION_NAME, "sigstore-test")])
    now = datetime.datetime.now(datetime.timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=1))
        .not_valid_after(now + datetime.timedelta(minutes=10))
    )
    if sans:
        builder = builder.add_extension(x509.SubjectAlternativeName(sans), critical=False)
    for oid, value in extensions or []:
        builder = builder.add_extension(
            x509.UnrecognizedExtension(ObjectIdentifier(oid), value), critical=False
        )
    return builder.sign(key, hashes.SHA256())
