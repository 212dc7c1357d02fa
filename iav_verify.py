#!/usr/bin/env python3
"""Verify the sigstore attestations attached to a container image.

Pipeline:
    fetch bundles -> filter by predicate type -> build policy
    -> acquire trusted root (TUF) -> verify each bundle

Every bundle gets its own result. The run passes when at least one bundle
verifies, or when all of them do with ``--require-all``.

Usage:
    # Verify GitHub Actions provenance for an image
    python iav_verify.py ghcr.io/org/demo:latest \\
        --predicate-type https://slsa.dev/provenance/v1 \\
        --subject 'https://github.com/org/demo/.github/workflows/*'

    # Full JSON report
    python iav_verify.py ghcr.io/org/demo:latest --subject ... --json

Exit codes:
    0 = Verification passed
    1 = Verification failed (no bundles, or no bundle verified)
    2 = Invalid input (reference, policy, configuration)
    3 = Registry or bundle retrieval failure
    4 = Trust root acquisition failure
"""

from __future__ import annotations

import argparse
import base64
import functools
import json
import logging
import pathlib
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, TextIO

from jsonschema import Draft202012Validator
from rfc3161_client import VerificationError as TimestampVerificationError
from rfc3161_client import VerifierBuilder, decode_timestamp_response
from sigstore.verify import Verifier

from iav_config import VerifyConfig, load_config
from iav_errors import IAVError, NoBundlesError, TrustRootAcquisitionError, VerificationError
from iav_filter import INTOTO_PAYLOAD_TYPE, Statement, filter_bundles, parse_statement
from iav_policy import VerificationPolicy, VerifierOptions, build_policy
from iav_registry import AttestationBundle, BundleFetcher, Descriptor, RegistryClient
from iav_trust import TrustRootProvider, load_trusted_root

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

STATEMENT_SCHEMA = "intoto-statement-v1.schema.json"


# =============================================================================
# Evidence and schema helpers
# =============================================================================


def encoded_timestamps(bundle: AttestationBundle) -> List[str]:
    """Base64 RFC 3161 responses carried in the bundle's verification material."""
    data = bundle.verification_material.get("timestampVerificationData")
    entries = data.get("rfc3161Timestamps") if isinstance(data, dict) else None
    if not isinstance(entries, list):
        return []
    return [
        e["signedTimestamp"]
        for e in entries
        if isinstance(e, dict) and isinstance(e.get("signedTimestamp"), str)
    ]


def envelope_signature(bundle: AttestationBundle) -> Optional[bytes]:
    """Raw bytes of the DSSE signature, the message an RFC 3161 timestamp covers."""
    envelope = bundle.dsse_envelope or {}
    signatures = envelope.get("signatures")
    if not isinstance(signatures, list) or not signatures or not isinstance(signatures[0], dict):
        return None
    try:
        return base64.b64decode(signatures[0].get("sig", ""), validate=True)
    except (TypeError, ValueError):
        return None


class TimestampVerifier:
    """Counts the timestamps of a bundle that verify against the trusted root.

    A timestamp counts when it decodes, its signing certificate chains to one
    of the trusted root's timestamp authorities, it covers the bundle's DSSE
    signature and it was generated inside that authority's validity period.
    Anything else is logged and ignored, so it cannot help meet a threshold.
    """

    def __init__(self, trusted_root: Any):
        self.trusted_root = trusted_root

    def count(self, bundle: AttestationBundle) -> int:
        encoded = encoded_timestamps(bundle)
        if not encoded:
            return 0
        signature = envelope_signature(bundle)
        if signature is None:
            logger.debug("Bundle %s has no DSSE signature to timestamp", bundle.descriptor.digest)
            return 0
        authorities = self.trusted_root.get_timestamp_authorities()
        return sum(1 for value in encoded if self.verify(value, signature, authorities))

    def verify(self, encoded: str, signature: bytes, authorities: List[Any]) -> bool:
        try:
            response = decode_timestamp_response(base64.b64decode(encoded, validate=True))
        except ValueError as e:
            logger.debug("Ignoring undecodable timestamp: %s", e)
            return False

        for authority in authorities:
            chain = authority.certificates(allow_expired=True)
            if len(chain) < 2:
                logger.debug("Skipping timestamp authority with an incomplete chain")
                continue
            builder = VerifierBuilder().tsa_certificate(chain[0]).add_root_certificate(chain[-1])
            for certificate in chain[1:-1]:
                builder = builder.add_intermediate_certificate(certificate)
            try:
                builder.build().verify_message(response, signature)
            except TimestampVerificationError as e:
                logger.debug("Timestamp not issued by this authority: %s", e)
                continue

            start, end = authority.validity_period_start, authority.validity_period_end
            if start is None or end is None:
                logger.debug("Timestamp authority has no validity period")
                continue
            if start <= response.tst_info.gen_time < end:
                return True
            logger.debug("Timestamp outside the authority's validity period")
        return False


@functools.lru_cache(maxsize=None)
def _load_schema(schema_name: str) -> Dict[str, Any]:
    try:
        from importlib import resources

        data = resources.files("iav_data").joinpath(schema_name).read_text(encoding="utf-8")
        return json.loads(data)
    except (ModuleNotFoundError, FileNotFoundError):
        pass

    candidate = pathlib.Path(__file__).parent / "iav_data" / schema_name
    with candidate.open(encoding="utf-8") as f:
        return json.load(f)


def _format_schema_errors(errors: List[Any]) -> str:
    lines = []
    for err in errors[:5]:
        path = err.json_path or "$"
        lines.append(f"{path}: {err.message}")
    if len(errors) > 5:
        lines.append(f"... {len(errors) - 5} more")
    return "\n".join(lines)


def validate_statement_schema(statement: Dict[str, Any]) -> None:
    """Raise VerificationError when ``statement`` is not an in-toto Statement."""
    validator = Draft202012Validator(_load_schema(STATEMENT_SCHEMA))
    errors = sorted(validator.iter_errors(statement), key=lambda e: e.json_path)
    if errors:
        raise VerificationError(
            "Statement schema validation failed",
            _format_schema_errors(errors),
            rule_id="VERIFY-005",
        )


# =============================================================================
# Verification result types
# =============================================================================


@dataclass
class VerificationResult:
    bundle: AttestationBundle
    descriptor: Descriptor
    statement: Optional[Statement] = None
    error: Optional[VerificationError] = None

    @property
    def passed(self) -> bool:
        return self.error is None and self.statement is not None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "bundle": self.bundle.descriptor.digest,
            "mediaType": self.bundle.media_type,
            "passed": self.passed,
        }
        if self.statement is not None:
            data["predicateType"] = self.statement.predicate_type
            data["statement"] = self.statement.to_dict()
        if self.error is not None:
            data.update(self.error.to_dict())
        return data


class VerificationReport:
    def __init__(self, descriptor: Optional[Descriptor] = None, require_all: bool = False):
        self.descriptor = descriptor
        self.require_all = require_all
        self.results: List[VerificationResult] = []

    def add(self, result: VerificationResult):
        self.results.append(result)

    @property
    def passed(self) -> bool:
        if not self.results:
            return False
        if self.require_all:
            return all(r.passed for r in self.results)
        return any(r.passed for r in self.results)

    @property
    def verified(self) -> List[Statement]:
        return [r.statement for r in self.results if r.passed and r.statement is not None]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "require_all": self.require_all,
            "descriptor": self.descriptor.to_dict() if self.descriptor else None,
            "results": [r.to_dict() for r in self.results],
        }

    def print_report(self, verbose: bool = False, file: Optional[TextIO] = None):
        out = file or sys.stdout
        print("\n" + "=" * 60, file=out)
        print("IAV VERIFICATION REPORT", file=out)
        print("=" * 60, file=out)
        if self.descriptor:
            print(f"Image digest: {self.descriptor.digest}", file=out)

        failures = [r for r in self.results if not r.passed]
        passes = [r for r in self.results if r.passed]

        if failures:
            print(f"\n❌ FAILED BUNDLES ({len(failures)}):", file=out)
            for r in failures:
                rule_id = r.error.rule_id if r.error else "VERIFY-001"
                message = r.error.message if r.error else "No verified statement"
                print(f"  [{rule_id}] {r.bundle.descriptor.digest}: {message}", file=out)
                if r.error and r.error.details and verbose:
                    print(f"      Details: {r.error.details}", file=out)

        if passes:
            print(f"\n✅ VERIFIED BUNDLES ({len(passes)}):", file=out)
            for r in passes:
                print(f"  {r.bundle.descriptor.digest}: {r.statement.predicate_type}", file=out)

        print("\n" + "-" * 60, file=out)
        if self.passed:
            if failures:
                print("RESULT: ⚠️  PASSED WITH FAILED BUNDLES", file=out)
            else:
                print("RESULT: ✅ PASSED", file=out)
        else:
            print("RESULT: ❌ FAILED", file=out)
        print("-" * 60 + "\n", file=out)


# =============================================================================
# Verifier
# =============================================================================


class BundleVerifier:
    """Verify bundles against one trusted root and one set of thresholds.

    ``backend`` must provide ``verify_dsse(bundle, policy) -> (type, payload)``;
    it defaults to ``sigstore.verify.Verifier`` bound to ``trusted_root``.
    ``timestamps`` must provide ``count(bundle) -> int``; it defaults to a
    ``TimestampVerifier`` on the same trusted root.
    """

    def __init__(
        self,
        trusted_root: Any,
        options: VerifierOptions,
        backend: Optional[Any] = None,
        timestamps: Optional[Any] = None,
    ):
        self.trusted_root = trusted_root
        self.options = options
        self.backend = backend if backend is not None else Verifier(trusted_root=trusted_root)
        self.timestamps = timestamps if timestamps is not None else TimestampVerifier(trusted_root)

    def verify(
        self,
        bundle: AttestationBundle,
        descriptor: Descriptor,
        policy: VerificationPolicy,
    ) -> VerificationResult:
        try:
            statement = self._verify(bundle, policy)
        except VerificationError as e:
            logger.info("Bundle %s rejected: %s", bundle.descriptor.digest, e.message)
            return VerificationResult(bundle=bundle, descriptor=descriptor, error=e)
        logger.debug("Bundle %s verified", bundle.descriptor.digest)
        return VerificationResult(bundle=bundle, descriptor=descriptor, statement=statement)

    def _verify(self, bundle: AttestationBundle, policy: VerificationPolicy) -> Statement:
        if bundle.unsupported:
            raise VerificationError(
                "Bundle cannot be verified by this verifier",
                bundle.unsupported,
                rule_id="VERIFY-007",
            )

        try:
            payload_type, payload = self.backend.verify_dsse(
                bundle.entity, policy.certificate_policy()
            )
        except Exception as e:
            raise VerificationError("Bundle signature verification failed", str(e)) from e

        if payload_type != INTOTO_PAYLOAD_TYPE:
            raise VerificationError(
                "Unexpected DSSE payloadType",
                f"Expected: {INTOTO_PAYLOAD_TYPE}, Got: {payload_type}",
                rule_id="VERIFY-002",
            )

        try:
            statement = parse_statement(payload)
        except (UnicodeDecodeError, ValueError) as e:
            raise VerificationError(
                "Failed to decode verified payload", str(e), rule_id="VERIFY-006"
            ) from e

        validate_statement_schema(statement.raw)

        expected = policy.digest
        if expected.hex not in statement.subject_digests(expected.algorithm):
            raise VerificationError(
                "Statement subject does not match image digest",
                f"Expected: {expected}",
                rule_id="VERIFY-003",
            )

        signed_timestamps = self.timestamps.count(bundle) if self.options.signed_timestamps else 0
        if signed_timestamps < self.options.signed_timestamps:
            raise VerificationError(
                "Not enough verified signed timestamps",
                f"Required: {self.options.signed_timestamps}, Verified: {signed_timestamps}, "
                f"Present: {len(encoded_timestamps(bundle))}",
                rule_id="VERIFY-004",
            )
        # verify_dsse has already checked the inclusion of the single log
        # entry that decode_bundle admits.
        transparency_logs = len(bundle.verification_material.get("tlogEntries") or [])
        if transparency_logs < self.options.transparency_logs:
            raise VerificationError(
                "Not enough transparency log entries",
                f"Required: {self.options.transparency_logs}, Found: {transparency_logs}",
                rule_id="VERIFY-004",
            )
        return statement


def verify_bundles(
    verifier: BundleVerifier,
    bundles: List[AttestationBundle],
    descriptor: Descriptor,
    policy: VerificationPolicy,
    workers: int = 1,
) -> List[VerificationResult]:
    """Verify every bundle; results follow the order of ``bundles``."""
    if workers <= 1 or len(bundles) <= 1:
        return [verifier.verify(b, descriptor, policy) for b in bundles]
    with ThreadPoolExecutor(max_workers=min(workers, len(bundles))) as executor:
        return list(executor.map(lambda b: verifier.verify(b, descriptor, policy), bundles))


# =============================================================================
# Pipeline
# =============================================================================


def _acquire_trusted_root(config: VerifyConfig, provider: Optional[TrustRootProvider]) -> Any:
    if config.trusted_root and provider is None:
        return load_trusted_root(pathlib.Path(config.trusted_root))

    if provider is None:
        bootstrap = None
        if config.tuf_root:
            try:
                bootstrap = pathlib.Path(config.tuf_root).read_bytes()
            except OSError as e:
                raise TrustRootAcquisitionError(
                    f"Failed to read TUF root {config.tuf_root}", str(e)
                ) from e
        provider = TrustRootProvider(config.tuf_url, bootstrap_root=bootstrap)
    return provider.fetch(timeout=config.trust_timeout)


def verify_image(
    config: VerifyConfig,
    fetcher: Optional[BundleFetcher] = None,
    trust_provider: Optional[TrustRootProvider] = None,
    trusted_root: Optional[Any] = None,
    backend: Optional[Any] = None,
    timestamps: Optional[Any] = None,
) -> VerificationReport:
    """Run the whole pipeline for ``config.image``.

    Raises IAVError for failures that concern the run as a whole (reference,
    registry, decode, policy, trust root). Per-bundle failures are recorded in
    the returned report instead.
    """
    config.validate()

    if fetcher is None:
        fetcher = BundleFetcher(
            RegistryClient(timeout=config.registry_timeout),
            limit=config.limit,
            max_bundle_bytes=config.max_bundle_bytes,
        )
    bundles, descriptor = fetcher.fetch(config.image)
    logger.info("Fetched %d bundles for %s (%s)", len(bundles), config.image, descriptor.digest)

    filtered = filter_bundles(bundles, config.predicate_type)
    if not filtered:
        details = f"predicate type: {config.predicate_type}" if config.predicate_type else None
        raise NoBundlesError("no bundles available", details)

    policy = build_policy(descriptor, config.issuer, config.subject, config.extensions())
    options = config.verifier_options()

    if trusted_root is None:
        trusted_root = _acquire_trusted_root(config, trust_provider)

    verifier = BundleVerifier(trusted_root, options, backend=backend, timestamps=timestamps)
    report = VerificationReport(descriptor, require_all=config.require_all)
    for result in verify_bundles(verifier, filtered, descriptor, policy, workers=config.workers):
        report.add(result)
    return report


# =============================================================================
# CLI
# =============================================================================


def build_parser(prog: Optional[str] = None) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=prog,
        description="Verify sigstore attestations attached to a container image",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("image", nargs="?", help="Image reference (tag or digest)")
    parser.add_argument("--config", "-c", type=pathlib.Path, help="YAML settings file")
    parser.add_argument(
        "--predicate-type",
        help="Only verify attestations with this predicate type (default: all)",
    )
    parser.add_argument("--limit", type=int, help="Maximum number of referrers (default: 100)")
    parser.add_argument("--issuer", help="Expected OIDC issuer (exact match)")
    parser.add_argument(
        "--subject",
        "--identity",
        dest="subject",
        help="Expected certificate identity; a value containing '*' is a glob (fnmatch syntax)",
    )
    parser.add_argument("--workflow-trigger", help="Expected GitHub workflow trigger")
    parser.add_argument("--workflow-name", help="Expected GitHub workflow name")
    parser.add_argument("--workflow-repository", help="Expected GitHub workflow repository")
    parser.add_argument("--signed-timestamps", type=int, help="Required RFC 3161 timestamps")
    parser.add_argument("--transparency-logs", type=int, help="Required transparency log entries")
    parser.add_argument("--tuf-url", help="TUF repository serving trusted_root.json")
    parser.add_argument("--tuf-root", help="Bootstrap root.json for --tuf-url")
    parser.add_argument("--trusted-root", help="Use a local trusted_root.json instead of TUF")
    parser.add_argument("--registry-timeout", type=float, help="Registry request timeout (s)")
    parser.add_argument("--trust-timeout", type=float, help="TUF update timeout (s)")
    parser.add_argument("--max-bundle-bytes", type=int, help="Maximum bundle layer size")
    parser.add_argument("--workers", type=int, help="Bundles verified in parallel")
    parser.add_argument(
        "--require-all",
        action="store_true",
        default=None,
        help="Fail unless every candidate bundle verifies",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Debug logging and detailed report on stderr",
    )
    parser.add_argument("--json", action="store_true", help="Output report as JSON")
    return parser


_SETTINGS = (
    "image",
    "predicate_type",
    "limit",
    "issuer",
    "subject",
    "workflow_trigger",
    "workflow_name",
    "workflow_repository",
    "signed_timestamps",
    "transparency_logs",
    "tuf_url",
    "tuf_root",
    "trusted_root",
    "registry_timeout",
    "trust_timeout",
    "max_bundle_bytes",
    "workers",
    "require_all",
)


def _print_error(e: IAVError, as_json: bool) -> None:
    if as_json:
        print(json.dumps({"passed": False, **e.to_dict()}, indent=2))
        return
    print(f"Error [{e.rule_id}]: {e.message}", file=sys.stderr)
    if e.details:
        print(f"  {e.details}", file=sys.stderr)


# pragma: no mutate
def main(argv: Optional[List[str]] = None, prog: Optional[str] = None) -> int:
    args = build_parser(prog).parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        config = load_config(
            args.config,
            overrides={name: getattr(args, name) for name in _SETTINGS},
        )
        report = verify_image(config)
    except IAVError as e:
        _print_error(e, args.json)
        return e.exit_code

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    elif report.passed:
        if args.verbose:
            report.print_report(verbose=True, file=sys.stderr)
        print(json.dumps(report.verified[0].to_dict(), indent=2))
    else:
        report.print_report(verbose=args.verbose, file=sys.stderr)

    return 0 if report.passed else 1


if __name__ == "__main__":
    sys.exit(main())
