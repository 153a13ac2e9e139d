"""Upload validation by declared content type."""
from dataclasses import dataclass
from typing import Optional

IMAGE_MEDIA_TYPE_PREFIX = "image/"


@dataclass(frozen=True)
class ValidationResult:
    accepted: bool
    reason: Optional[str] = None


def validate_content_type(content_type: Optional[str]) -> ValidationResult:
    """
    Accept an upload iff its declared content type is an image media type.

    Only the declared type is checked here; undecodable bytes are rejected
    later by the transcoder.
    """
    if not content_type:
        return ValidationResult(False, "Missing content type")
    if not content_type.startswith(IMAGE_MEDIA_TYPE_PREFIX):
        return ValidationResult(False, f"File is not an image: {content_type}")
    return ValidationResult(True)
