import base64
import binascii
import os
from dataclasses import dataclass
from typing import Union

from errors import NoSavedSignature, SignatureError, ValidationError

# Raw value clients send to reuse the signature saved on their profile.
USE_PROFILE_SIGNATURE = "use-profile"

COMPANY_STAMP_MAX_BYTES = int(
    os.environ.get("COMPANY_STAMP_MAX_BYTES", str(2 * 1024 * 1024))
)
FINAL_PDF_MAX_BYTES = int(os.environ.get("FINAL_PDF_MAX_BYTES", str(10 * 1024 * 1024)))

IMAGE_DATA_URI_PREFIX = "data:image/"
PDF_DATA_URI_PREFIX = "data:application/pdf;base64,"


@dataclass(frozen=True)
class InlineSignature:
    """A freshly drawn signature image (data URI or bare base64)."""

    image: str


@dataclass(frozen=True)
class ProfileSignature:
    """Use the signature saved on the signer's profile."""


SignatureSource = Union[InlineSignature, ProfileSignature]


def parse_signature_source(raw) -> SignatureSource:
    """Turn the raw request value into a :data:`SignatureSource`."""
    if not isinstance(raw, str) or not raw.strip():
        raise SignatureError("Signature is required")
    if raw == USE_PROFILE_SIGNATURE:
        return ProfileSignature()
    return InlineSignature(raw)


def _decode_base64(payload: str) -> bytes:
    if payload.startswith("data:"):
        header, sep, data = payload.partition(",")
        if not sep or not header.endswith(";base64"):
            raise ValueError("data URI is not base64 encoded")
    else:
        data = payload
    return base64.b64decode(data.strip(), validate=True)


def decode_inline_signature(image: str) -> bytes:
    if image.startswith("data:") and not image.startswith(IMAGE_DATA_URI_PREFIX):
        raise SignatureError("Signature must be an image")
    try:
        decoded = _decode_base64(image)
    except (binascii.Error, ValueError) as exc:
        raise SignatureError("Signature is not valid base64 data") from exc
    if not decoded:
        raise SignatureError("Signature image is empty")
    return decoded


def resolve_signature(directory, user_id: int, source: SignatureSource) -> str:
    """Return the signature image to persist for ``user_id``.

    Inline images are checked to decode to something non-empty and are stored
    as sent.  Profile signatures are looked up in ``directory``; a user without
    a saved signature gets :class:`NoSavedSignature`.
    """
    if isinstance(source, ProfileSignature):
        saved = directory.get_user_signature(user_id)
        if not saved:
            raise NoSavedSignature(
                "No saved signature found in your profile", user_id=user_id
            )
        return saved
    if isinstance(source, InlineSignature):
        decode_inline_signature(source.image)
        return source.image
    raise SignatureError(f"Unsupported signature source: {source!r}")


def validate_company_stamp(stamp, max_bytes: int | None = None) -> str:
    """Check the company stamp is a non-empty image data URI within bounds."""
    limit = COMPANY_STAMP_MAX_BYTES if max_bytes is None else max_bytes
    if not isinstance(stamp, str) or not stamp.startswith(IMAGE_DATA_URI_PREFIX):
        raise ValidationError(
            "Invalid company stamp format. Must be a base64 encoded image."
        )
    try:
        decoded = _decode_base64(stamp)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError("Company stamp is not valid base64 data") from exc
    if not decoded:
        raise ValidationError("Company stamp image is empty")
    if len(decoded) > limit:
        raise ValidationError(
            "Company stamp image is too large",
            max_bytes=limit,
            size=len(decoded),
        )
    return stamp


def decode_final_pdf(payload, max_bytes: int | None = None) -> bytes:
    """Decode a ``data:application/pdf;base64,`` payload into PDF bytes."""
    limit = FINAL_PDF_MAX_BYTES if max_bytes is None else max_bytes
    if not isinstance(payload, str) or not payload.startswith(PDF_DATA_URI_PREFIX):
        raise ValidationError("Invalid PDF format. Must be a base64 encoded PDF.")
    try:
        pdf = base64.b64decode(payload[len(PDF_DATA_URI_PREFIX):].strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError("Final PDF is not valid base64 data") from exc
    if not pdf:
        raise ValidationError("Final PDF is empty")
    if len(pdf) > limit:
        raise ValidationError(
            "PDF file is too large", max_bytes=limit, size=len(pdf)
        )
    return pdf


__all__ = [
    "USE_PROFILE_SIGNATURE",
    "InlineSignature",
    "ProfileSignature",
    "SignatureSource",
    "parse_signature_source",
    "resolve_signature",
    "validate_company_stamp",
    "decode_final_pdf",
]
