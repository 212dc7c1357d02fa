#!/usr/bin/env python3
"""Error taxonomy for image attestation verification.

Every stage of the pipeline raises one of these. Library code never exits the
process; the CLI maps ``exit_code`` to the process status.

Exit codes:
    0 = Verification passed
    1 = Verification failed (no bundles, or no bundle verified)
    2 = Invalid input (reference, policy, configuration)
    3 = Registry or bundle retrieval failure
    4 = Trust root acquisition failure
"""

from __future__ import annotations

from typing import Optional


class IAVError(Exception):
    """Base class for all pipeline failures."""

    rule_id = "IAV-000"
    exit_code = 2

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {
            "rule_id": self.rule_id,
            "error": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


class InvalidReference(IAVError):
    rule_id = "REF-001"
    exit_code = 2


class RegistryError(IAVError):
    """Digest resolution, referrers listing or blob retrieval failed."""

    rule_id = "REG-001"
    exit_code = 3


class TooManyReferrers(RegistryError):
    rule_id = "REG-002"

    def __init__(self, count: int, limit: int):
        super().__init__(
            f"failed to fetch referrers: too many referrers found, max limit is {limit}",
            f"Referrers: {count}, Limit: {limit}",
        )
        self.count = count
        self.limit = limit


class BundleDecodeError(IAVError):
    rule_id = "BUNDLE-001"
    exit_code = 3


class UnsupportedBundleError(BundleDecodeError):
    """A well-formed bundle whose shape the sigstore verifier cannot check.

    Carries the decoded document so the bundle can still be listed and
    reported as a per-bundle failure.
    """

    rule_id = "BUNDLE-003"

    def __init__(self, message: str, details: Optional[str] = None, document: Optional[dict] = None):
        super().__init__(message, details)
        self.document = document or {}


class NoBundlesError(IAVError):
    rule_id = "BUNDLE-002"
    exit_code = 1


class PolicyConstructionError(IAVError):
    rule_id = "POLICY-001"
    exit_code = 2


class TrustRootAcquisitionError(IAVError):
    """Bootstrap, TUF client, target fetch or trusted root parse failed."""

    rule_id = "TRUST-001"
    exit_code = 4


class VerificationError(IAVError):
    """A single bundle failed chain, digest, identity or log/timestamp checks."""

    rule_id = "VERIFY-001"
    exit_code = 1

    def __init__(self, message: str, details: Optional[str] = None, rule_id: Optional[str] = None):
        super().__init__(message, details)
        if rule_id:
            self.rule_id = rule_id


class ConfigError(IAVError):
    rule_id = "CONFIG-001"
    exit_code = 2
