"""Offline checks against the real sigstore stack.

The trusted root, certificates and bundle are generated here, so none of these
tests needs network access. The bundle is well formed but signed by a CA the
trusted root does not know, which sigstore must reject.
"""

from __future__ import annotations

import base64
import datetime
import hashlib
import json
from pathlib import Path
from typing import Any, Dict, Tuple

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID, ObjectIdentifier
from sigstore.models import Bundle
from sigstore.verify import Verifier

from conftest import (
    BUNDLE_MEDIA_TYPE,
    GITHUB_ISSUER,
    WORKFLOW_SUBJECT,
    fulcio_extensions,
    make_statement,
)
from iav_policy import VerifierOptions, build_policy
from iav_registry import AttestationBundle, Descriptor, decode_bundle
from iav_trust import load_trusted_root
from iav_verify import BundleVerifier, TimestampVerifier, encoded_timestamps

DIGEST = "sha256:" + "5e" * 32
DESCRIPTOR = Descriptor(media_type="application/vnd.oci.image.index.v1+json", digest=DIGEST)
NOW = datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _name(common_name: str) -> x509.Name:
    return x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "sigstore-test"),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ]
    )


def _ca(common_name: str) -> Tuple[ec.EllipticCurvePrivateKey, x509.Certificate]:
    key = ec.generate_private_key(ec.SECP384R1())
    cert = (
        x509.CertificateBuilder()
        .subject_name(_name(common_name))
        .issuer_name(_name(common_name))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(NOW - datetime.timedelta(days=1))
        .not_valid_after(NOW + datetime.timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=False,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .sign(key, hashes.SHA384())
    )
    return key, cert


def _leaf(
    issuer_key: ec.EllipticCurvePrivateKey, issuer: x509.Certificate
) -> Tuple[ec.EllipticCurvePrivateKey, x509.Certificate]:
    key = ec.generate_private_key(ec.SECP256R1())
    builder = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([]))
        .issuer_name(issuer.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(NOW - datetime.timedelta(minutes=1))
        .not_valid_after(NOW + datetime.timedelta(minutes=10))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CODE_SIGNING]), critical=False)
        .add_extension(
            x509.SubjectAlternativeName([x509.UniformResourceIdentifier(WORKFLOW_SUBJECT)]),
            critical=True,
        )
    )
    for oid, value in fulcio_extensions(GITHUB_ISSUER, trigger="push"):
        builder = builder.add_extension(
            x509.UnrecognizedExtension(ObjectIdentifier(oid), value), critical=False
        )
    return key, builder.sign(issuer_key, hashes.SHA256())


def _public_key_entry(key: ec.EllipticCurvePrivateKey, base_url: str) -> Dict[str, Any]:
    spki = key.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    return {
        "baseUrl": base_url,
        "hashAlgorithm": "SHA2_256",
        "publicKey": {
            "rawBytes": _b64(spki),
            "keyDetails": "PKIX_ECDSA_P256_SHA_256",
            "validFor": {"start": "2020-01-01T00:00:00Z"},
        },
        "logId": {"keyId": _b64(hashlib.sha256(spki).digest())},
    }


def _authority(cert: x509.Certificate, uri: str) -> Dict[str, Any]:
    return {
        "subject": {"organization": "sigstore-test", "commonName": uri},
        "uri": uri,
        "certChain": {"certificates": [{"rawBytes": _b64(cert.public_bytes(serialization.Encoding.DER))}]},
        "validFor": {"start": "2020-01-01T00:00:00Z"},
    }


@pytest.fixture(scope="module")
def trusted_root_path(tmp_path_factory) -> Path:
    _, fulcio = _ca("fulcio.test")
    _, tsa = _ca("tsa.test")
    rekor_key = ec.generate_private_key(ec.SECP256R1())
    ctlog_key = ec.generate_private_key(ec.SECP256R1())
    document = {
        "mediaType": "application/vnd.dev.sigstore.trustedroot+json;version=0.1",
        "tlogs": [_public_key_entry(rekor_key, "https://rekor.test")],
        "certificateAuthorities": [_authority(fulcio, "https://fulcio.test")],
        "ctlogs": [_public_key_entry(ctlog_key, "https://ctfe.test")],
        "timestampAuthorities": [_authority(tsa, "https://tsa.test")],
    }
    path = tmp_path_factory.mktemp("trust") / "trusted_root.json"
    path.write_text(json.dumps(document), encoding="utf-8")
    return path


@pytest.fixture(scope="module")
def foreign_bundle() -> bytes:
    """A v0.3 DSSE bundle whose certificate comes from an unknown CA."""
    ca_key, ca_cert = _ca("foreign.test")
    leaf_key, leaf_cert = _leaf(ca_key, ca_cert)
    payload = json.dumps(make_statement(DIGEST)).encode("utf-8")
    payload_type = "application/vnd.in-toto+json"
    pae = b"DSSEv1 %d %s %d %s" % (len(payload_type), payload_type.encode(), len(payload), payload)
    signature = leaf_key.sign(pae, ec.ECDSA(hashes.SHA256()))

    rekor_key = ec.generate_private_key(ec.SECP256R1())
    spki = rekor_key.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    root_hash = hashlib.sha256(b"leaf").digest()
    checkpoint = f"rekor.test - 1\n1\n{_b64(root_hash)}\n\n— rekor.test AAAA\n"
    document = {
        "mediaType": BUNDLE_MEDIA_TYPE,
        "verificationMaterial": {
            "certificate": {"rawBytes": _b64(leaf_cert.public_bytes(serialization.Encoding.DER))},
            "tlogEntries": [
                {
                    "logIndex": "0",
                    "logId": {"keyId": _b64(hashlib.sha256(spki).digest())},
                    "kindVersion": {"kind": "dsse", "version": "0.0.1"},
                    "integratedTime": str(int(NOW.timestamp())),
                    "inclusionPromise": {"signedEntryTimestamp": _b64(b"\x30\x00")},
                    "inclusionProof": {
                        "logIndex": "0",
                        "rootHash": _b64(root_hash),
                        "treeSize": "1",
                        "hashes": [],
                        "checkpoint": {"envelope": checkpoint},
                    },
                    "canonicalizedBody": _b64(b'{"kind": "dsse"}'),
                }
            ],
            "timestampVerificationData": {},
        },
        "dsseEnvelope": {
            "payload": _b64(payload),
            "payloadType": payload_type,
            "signatures": [{"sig": _b64(signature)}],
        },
    }
    return json.dumps(document).encode("utf-8")


def test_generated_trusted_root_loads(trusted_root_path: Path) -> None:
    root = load_trusted_root(trusted_root_path)

    assert len(root.get_timestamp_authorities()) == 1


def test_decode_bundle_builds_sigstore_bundle(foreign_bundle: bytes) -> None:
    document, entity = decode_bundle(foreign_bundle)

    assert isinstance(entity, Bundle)
    assert document["mediaType"] == BUNDLE_MEDIA_TYPE
    assert WORKFLOW_SUBJECT in [
        san.value
        for san in entity.signing_certificate.extensions.get_extension_for_class(
            x509.SubjectAlternativeName
        ).value
    ]


def test_untrusted_signing_chain_is_rejected(trusted_root_path: Path, foreign_bundle: bytes) -> None:
    document, entity = decode_bundle(foreign_bundle)
    bundle = AttestationBundle(
        descriptor=Descriptor(
            media_type="application/vnd.oci.image.manifest.v1+json",
            digest="sha256:" + "cd" * 32,
            artifact_type=BUNDLE_MEDIA_TYPE,
        ),
        document=document,
        entity=entity,
    )
    options = VerifierOptions(transparency_logs=1, signed_timestamps=0)
    verifier = BundleVerifier(load_trusted_root(trusted_root_path), options)
    assert isinstance(verifier.backend, Verifier)

    result = verifier.verify(bundle, DESCRIPTOR, build_policy(DESCRIPTOR, GITHUB_ISSUER, WORKFLOW_SUBJECT))

    assert not result.passed
    assert result.error.rule_id == "VERIFY-001"


def test_timestamps_without_trusted_signature_are_not_counted(
    trusted_root_path: Path, foreign_bundle: bytes
) -> None:
    document = json.loads(foreign_bundle)
    document["verificationMaterial"]["timestampVerificationData"] = {
        "rfc3161Timestamps": [{"signedTimestamp": _b64(b"0\x03\x02\x01\x00")}]
    }
    bundle = AttestationBundle(descriptor=DESCRIPTOR, document=document, entity=None)

    assert len(encoded_timestamps(bundle)) == 1
    assert TimestampVerifier(load_trusted_root(trusted_root_path)).count(bundle) == 0
