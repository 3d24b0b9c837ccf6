# Data models package

from .signature import (
    ExtractedClaim,
    ImageDescriptor,
    NoMatchingClaimsError,
    NoValidSignaturesError,
    Rejection,
    RejectionKind,
    SignaturePolicy,
    SignatureVerificationError,
    SignedPayload,
)

__all__ = [
    "ExtractedClaim",
    "ImageDescriptor",
    "NoMatchingClaimsError",
    "NoValidSignaturesError",
    "Rejection",
    "RejectionKind",
    "SignaturePolicy",
    "SignatureVerificationError",
    "SignedPayload",
]
