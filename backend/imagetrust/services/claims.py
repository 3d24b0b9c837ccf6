"""
Claim extraction and matching for signed payloads.

A payload's format is selected by the media type of the image descriptor
under inspection. The set of formats is closed: each member of
``PayloadFormat`` maps to exactly one parser in ``_PARSERS``. Adding a
format means adding an enum member and its parser together.
"""

import json
from enum import Enum
from typing import Callable, Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..models.signature import ExtractedClaim, Rejection, RejectionKind

OCI_MANIFEST_MEDIA_TYPE = "application/vnd.oci.image.manifest.v1+json"
SIMPLE_SIGNING_MEDIA_TYPE = "application/vnd.dev.cosign.simplesigning.v1+json"


class PayloadFormat(str, Enum):
    """Supported signed payload formats, keyed by media type."""

    MANIFEST_DESCRIPTOR = OCI_MANIFEST_MEDIA_TYPE
    SIMPLE_SIGNING = SIMPLE_SIGNING_MEDIA_TYPE

    @classmethod
    def from_media_type(cls, media_type: str) -> Optional["PayloadFormat"]:
        try:
            return cls(media_type)
        except ValueError:
            return None


# ------------------------------------------------------------------
# Payload schemas
# ------------------------------------------------------------------


class _DescriptorPayload(BaseModel):
    """OCI descriptor embedded directly as the payload."""

    model_config = ConfigDict(extra="ignore")

    digest: str = ""
    annotations: Optional[Dict[str, str]] = None


class _SimpleSigningImage(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    docker_manifest_digest: str = Field(default="", alias="docker-manifest-digest")


class _SimpleSigningCritical(BaseModel):
    model_config = ConfigDict(extra="ignore")

    image: _SimpleSigningImage = Field(default_factory=_SimpleSigningImage)


class _SimpleSigningPayload(BaseModel):
    """Simple signing document: critical/image digest plus optional annotations."""

    model_config = ConfigDict(extra="ignore")

    critical: _SimpleSigningCritical = Field(default_factory=_SimpleSigningCritical)
    optional: Optional[Dict[str, str]] = None


def _parse_descriptor(payload: bytes) -> ExtractedClaim:
    parsed = _DescriptorPayload.model_validate_json(payload)
    return ExtractedClaim(digest=parsed.digest, annotations=dict(parsed.annotations or {}))


def _parse_simple_signing(payload: bytes) -> ExtractedClaim:
    parsed = _SimpleSigningPayload.model_validate_json(payload)
    return ExtractedClaim(
        digest=parsed.critical.image.docker_manifest_digest,
        annotations=dict(parsed.optional or {}),
    )


_PARSERS: Dict[PayloadFormat, Callable[[bytes], ExtractedClaim]] = {
    PayloadFormat.MANIFEST_DESCRIPTOR: _parse_descriptor,
    PayloadFormat.SIMPLE_SIGNING: _parse_simple_signing,
}


# ------------------------------------------------------------------
# Extraction
# ------------------------------------------------------------------


def extract_claim(media_type: str, payload: bytes) -> Union[ExtractedClaim, Rejection]:
    """
    Parse ``payload`` according to ``media_type`` into a normalized claim.

    Returns a ``Rejection`` instead of raising: an unknown media type is
    ``UNSUPPORTED_FORMAT`` and undecodable bytes are ``MALFORMED`` (the
    message carries the decoder's error).
    """
    payload_format = PayloadFormat.from_media_type(media_type)
    if payload_format is None:
        return Rejection(
            kind=RejectionKind.UNSUPPORTED_FORMAT,
            message=f"unexpected mediaType: {media_type!r}",
        )

    try:
        return _PARSERS[payload_format](payload)
    except ValidationError as exc:
        return Rejection(
            kind=RejectionKind.MALFORMED,
            message=f"malformed {payload_format.name.lower()} payload: {_summarize(exc)}",
        )


def _summarize(exc: ValidationError) -> str:
    """Collapse a pydantic validation error into a single line."""
    parts = []
    for error in exc.errors(include_url=False):
        location = ".".join(str(loc) for loc in error.get("loc", ())) or "<root>"
        # loc may carry keys taken from the payload
        location = location.encode("unicode_escape").decode("ascii")
        parts.append(f"{location}: {error.get('msg', 'invalid')}")
    return "; ".join(parts)


# ------------------------------------------------------------------
# Matching
# ------------------------------------------------------------------


def annotations_match(wanted: Mapping[str, str], have: Mapping[str, str]) -> bool:
    """Every wanted key must be present in ``have`` with an identical value."""
    return all(key in have and have[key] == value for key, value in wanted.items())


def claim_matches(
    expected_digest: str, wanted_annotations: Mapping[str, str], claim: ExtractedClaim
) -> bool:
    """Exact digest equality plus a one-way annotation subset check."""
    return claim.digest == expected_digest and annotations_match(
        wanted_annotations, claim.annotations
    )


def check_claim(
    expected_digest: str, wanted_annotations: Mapping[str, str], claim: ExtractedClaim
) -> Optional[Rejection]:
    """Same decision as ``claim_matches`` but reports which part did not match."""
    if claim.digest != expected_digest:
        return Rejection(
            kind=RejectionKind.DIGEST_MISMATCH,
            message=f"invalid or missing digest in claim: {claim.digest!r}",
        )
    if not annotations_match(wanted_annotations, claim.annotations):
        return Rejection(
            kind=RejectionKind.ANNOTATION_MISMATCH,
            message=(
                "invalid or missing annotation in claim: "
                f"{json.dumps(claim.annotations, sort_keys=True)}"
            ),
        )
    return None
