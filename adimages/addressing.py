"""Deterministic storage paths for avatars and ad images.

Paths are URL-shaped and derived only from owner id, ad id and sequence
position, so listing services can rebuild them without a database lookup:

    /files/{owner_id}/avatar/av.jpeg
    /files/{owner_id}/userAds/{ad_id}/{position}.jpeg
"""
from typing import Optional
from adimages.settings import settings

AVATAR_FILENAME = "av.jpeg"
IMAGE_EXTENSION = "jpeg"


def _prefix(prefix: Optional[str]) -> str:
    return (prefix if prefix is not None else settings.FILES_URL_PREFIX).rstrip("/")


def avatar_path(owner_id: int, prefix: Optional[str] = None) -> str:
    """Single canonical avatar slot per owner; re-uploads overwrite it."""
    return f"{_prefix(prefix)}/{owner_id}/avatar/{AVATAR_FILENAME}"


def ad_folder(owner_id: int, ad_id: int, prefix: Optional[str] = None) -> str:
    return f"{_prefix(prefix)}/{owner_id}/userAds/{ad_id}"


def ad_image_path(owner_id: int, ad_id: int, position: int, prefix: Optional[str] = None) -> str:
    """Path of the image stored at a 1-based sequence position of an ad."""
    if position < 1:
        raise ValueError(f"Sequence position must be >= 1, got {position}")
    return f"{ad_folder(owner_id, ad_id, prefix)}/{position}.{IMAGE_EXTENSION}"


def storage_key(path: str) -> str:
    """Storage adapters take keys without the leading slash."""
    return path.lstrip("/")
