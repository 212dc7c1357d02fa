#!/usr/bin/env python3
"""Verification policy construction.

A policy is the AND of two constraints:

- the artifact digest: the verified statement must name the resolved image
  digest among its subjects;
- the signer identity: the Fulcio certificate must carry the expected OIDC
  issuer (always exact) and a subject that either equals a literal or
  matches a pattern.

A subject containing ``*`` is treated as a shell-style glob (``fnmatch``
syntax: ``*``, ``?``, ``[seq]``) matched against the whole SAN, so
``https://github.com/org/repo/.github/workflows/*`` admits every workflow of
one repository. Other characters, regex metacharacters included, match
themselves. The two subject modes are separate types, so a policy can never
hold both a literal and a pattern.

Issuer matching is exact only. A pattern on the subject cannot be told apart
from a literal that embeds the issuer without a dedicated issuer-pattern
field, which does not exist yet.
"""

from __future__ import annotations

import fnmatch
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from cryptography import x509
from cryptography.x509.oid import ExtensionOID
from sigstore.errors import VerificationError as SigstoreVerificationError
from sigstore.verify import policy as sigstore_policy

from iav_errors import PolicyConstructionError
from iav_reference import DIGEST_HEX_LENGTHS
from iav_registry import Descriptor

# =============================================================================
# Constants
# =============================================================================

DEFAULT_OIDC_ISSUER = "https://token.actions.githubusercontent.com"
WILDCARD = "*"
# sigstore-python verifies exactly one log entry per bundle.
MAX_TRANSPARENCY_LOGS = 1

# Certificate extension constraints that may be added on top of the identity.
EXTENSION_POLICIES = {
    "workflow_trigger": sigstore_policy.GitHubWorkflowTrigger,
    "workflow_name": sigstore_policy.GitHubWorkflowName,
    "workflow_repository": sigstore_policy.GitHubWorkflowRepository,
}


# =============================================================================
# Constraint types
# =============================================================================


@dataclass(frozen=True)
class ArtifactDigest:
    algorithm: str
    value: bytes

    @property
    def hex(self) -> str:
        return self.value.hex()

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.hex}"


@dataclass(frozen=True)
class ExactSubject:
    value: str

    def matches(self, san: str) -> bool:
        return san == self.value


@dataclass(frozen=True)
class SubjectPattern:
    """Glob matched against the whole SAN value."""

    pattern: str
    regex: "re.Pattern[str]" = field(compare=False, repr=False)

    @classmethod
    def compile(cls, pattern: str) -> "SubjectPattern":
        # fnmatch silently treats an unclosed "[" as a literal.
        start = pattern.find("[")
        while start != -1:
            end = start + 1
            if pattern[end : end + 1] == "!":
                end += 1
            if pattern[end : end + 1] == "]":
                end += 1
            end = pattern.find("]", end)
            if end == -1:
                raise PolicyConstructionError(
                    f"Invalid subject pattern: {pattern!r}",
                    f"unterminated character set at position {start}",
                )
            start = pattern.find("[", end + 1)
        return cls(pattern=pattern, regex=re.compile(fnmatch.translate(pattern)))

    def matches(self, san: str) -> bool:
        return self.regex.fullmatch(san) is not None

    def verify(self, cert: x509.Certificate) -> None:
        """sigstore ``VerificationPolicy`` hook."""
        sans = certificate_sans(cert)
        if not any(self.matches(san) for san in sans):
            raise SigstoreVerificationError(
                f"Certificate's SANs do not match pattern {self.pattern}; actual SANs: {sans}"
            )


Subject = Union[ExactSubject, SubjectPattern]


def certificate_sans(cert: x509.Certificate) -> List[str]:
    """Email and URI subject alternative names of a certificate."""
    try:
        ext = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
    except x509.ExtensionNotFound:
        return []
    names = ext.value.get_values_for_type(x509.RFC822Name)
    names.extend(ext.value.get_values_for_type(x509.UniformResourceIdentifier))
    return names


@dataclass(frozen=True)
class IdentityRequirement:
    issuer: str
    subject: Subject
    extensions: Tuple[Tuple[str, str], ...] = ()

    @property
    def mode(self) -> str:
        return "pattern" if isinstance(self.subject, SubjectPattern) else "exact"

    @property
    def literal_subject(self) -> str:
        return self.subject.value if isinstance(self.subject, ExactSubject) else ""

    @property
    def subject_pattern(self) -> str:
        return self.subject.pattern if isinstance(self.subject, SubjectPattern) else ""

    def certificate_policy(self) -> Any:
        """Build the equivalent sigstore certificate policy."""
        if isinstance(self.subject, ExactSubject):
            children: List[Any] = [
                sigstore_policy.Identity(identity=self.subject.value, issuer=self.issuer)
            ]
        else:
            children = [sigstore_policy.OIDCIssuer(self.issuer), self.subject]
        for name, value in self.extensions:
            children.append(EXTENSION_POLICIES[name](value))
        if len(children) == 1:
            return children[0]
        return sigstore_policy.AllOf(children)


@dataclass(frozen=True)
class VerificationPolicy:
    digest: ArtifactDigest
    identity: IdentityRequirement

    def certificate_policy(self) -> Any:
        return self.identity.certificate_policy()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "digest": str(self.digest),
            "issuer": self.identity.issuer,
            "mode": self.identity.mode,
            "subject": self.identity.literal_subject,
            "subjectPattern": self.identity.subject_pattern,
            "extensions": dict(self.identity.extensions),
        }


@dataclass(frozen=True)
class VerifierOptions:
    """How much independent evidence of signing time a bundle must carry."""

    signed_timestamps: int = 1
    transparency_logs: int = 0

    def __post_init__(self) -> None:
        if self.signed_timestamps < 0 or self.transparency_logs < 0:
            raise PolicyConstructionError(
                "Verifier thresholds must be non-negative",
                f"signed_timestamps={self.signed_timestamps}, "
                f"transparency_logs={self.transparency_logs}",
            )
        if self.signed_timestamps == 0 and self.transparency_logs == 0:
            raise PolicyConstructionError(
                "At least one of signed timestamps or transparency logs must be required"
            )
        if self.transparency_logs > MAX_TRANSPARENCY_LOGS:
            raise PolicyConstructionError(
                f"At most {MAX_TRANSPARENCY_LOGS} transparency log entry can be required",
                "sigstore bundles carry a single transparency log entry",
            )


# =============================================================================
# Builders
# =============================================================================


def decode_digest(descriptor: Descriptor) -> ArtifactDigest:
    algorithm, sep, hex_value = descriptor.digest.partition(":")
    if not sep or algorithm not in DIGEST_HEX_LENGTHS:
        raise PolicyConstructionError(f"Unsupported digest: {descriptor.digest!r}")
    if len(hex_value) != DIGEST_HEX_LENGTHS[algorithm]:
        raise PolicyConstructionError(f"Malformed {algorithm} digest: {descriptor.digest!r}")
    try:
        value = bytes.fromhex(hex_value)
    except ValueError as exc:
        raise PolicyConstructionError(
            f"Malformed digest encoding: {descriptor.digest!r}", str(exc)
        ) from exc
    return ArtifactDigest(algorithm=algorithm, value=value)


def build_identity(
    issuer: str,
    subject: str,
    extensions: Optional[Dict[str, Optional[str]]] = None,
) -> IdentityRequirement:
    if not issuer:
        raise PolicyConstructionError("An OIDC issuer is required")
    if not subject:
        raise PolicyConstructionError("A certificate subject (identity) is required")

    selected: Subject
    if WILDCARD in subject:
        selected = SubjectPattern.compile(subject)
    else:
        selected = ExactSubject(subject)

    constraints = []
    for name, value in sorted((extensions or {}).items()):
        if not value:
            continue
        if name not in EXTENSION_POLICIES:
            raise PolicyConstructionError(f"Unknown certificate extension constraint: {name}")
        constraints.append((name, value))

    return IdentityRequirement(issuer=issuer, subject=selected, extensions=tuple(constraints))


def build_policy(
    descriptor: Descriptor,
    issuer: str = DEFAULT_OIDC_ISSUER,
    subject: str = "",
    extensions: Optional[Dict[str, Optional[str]]] = None,
) -> VerificationPolicy:
    """Pin ``descriptor``'s digest and the expected signer identity."""
    return VerificationPolicy(
        digest=decode_digest(descriptor),
        identity=build_identity(issuer, subject, extensions),
    )
