#!/usr/bin/env python3
"""Narrow attestation bundles to a requested predicate type.

Only DSSE envelopes carrying an in-toto statement
(``application/vnd.in-toto+json``) take part in filtering. Anything that
cannot be parsed is dropped; filtering never fails.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from iav_registry import AttestationBundle

logger = logging.getLogger(__name__)

INTOTO_PAYLOAD_TYPE = "application/vnd.in-toto+json"


@dataclass(frozen=True)
class Statement:
    """An in-toto statement extracted from a DSSE payload."""

    type: str
    predicate_type: str
    subject: List[Dict[str, Any]] = field(default_factory=list)
    predicate: Any = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Statement":
        if not isinstance(data, dict):
            raise ValueError("Statement is not a JSON object")
        predicate_type = data.get("predicateType")
        if not isinstance(predicate_type, str):
            raise ValueError("Statement predicateType missing or not a string")
        subject = data.get("subject", [])
        if not isinstance(subject, list):
            raise ValueError("Statement subject is not a list")
        return cls(
            type=str(data.get("_type", "")),
            predicate_type=predicate_type,
            subject=subject,
            predicate=data.get("predicate"),
            raw=data,
        )

    def subject_digests(self, algorithm: str) -> List[str]:
        digests = []
        for entry in self.subject:
            if not isinstance(entry, dict):
                continue
            digest = entry.get("digest")
            if isinstance(digest, dict) and isinstance(digest.get(algorithm), str):
                digests.append(digest[algorithm].lower())
        return digests

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.raw)


def parse_statement(payload: bytes) -> Statement:
    """Parse a decoded DSSE payload into a Statement (raises ValueError)."""
    return Statement.from_dict(json.loads(payload.decode("utf-8")))


def envelope_statement(bundle: AttestationBundle) -> Optional[Statement]:
    """Return the statement of an in-toto DSSE bundle, or None.

    No signature checking happens here; the result is only good for selection.
    """
    envelope = bundle.dsse_envelope
    if envelope is None:
        return None
    if envelope.get("payloadType") != INTOTO_PAYLOAD_TYPE:
        return None
    try:
        payload = base64.b64decode(envelope.get("payload", ""), validate=True)
        return parse_statement(payload)
    except (binascii.Error, ValueError, UnicodeDecodeError) as e:
        logger.debug("Dropping bundle %s: %s", bundle.descriptor.digest, e)
        return None


def filter_bundles(
    bundles: List[AttestationBundle], predicate_type: Optional[str]
) -> List[AttestationBundle]:
    """Keep bundles whose statement predicate type equals ``predicate_type``.

    An empty predicate type returns ``bundles`` itself, without parsing.
    Kept bundles are copies carrying their parsed statement.
    """
    if not predicate_type:
        return bundles

    filtered: List[AttestationBundle] = []
    for bundle in bundles:
        statement = envelope_statement(bundle)
        if statement is None:
            continue
        if statement.predicate_type == predicate_type:
            filtered.append(replace(bundle, statement=statement))
        else:
            logger.debug(
                "Skipping bundle %s with predicate type %s",
                bundle.descriptor.digest,
                statement.predicate_type,
            )
    return filtered
