"""Classification of stored product image references.

A reference is whatever string a product keeps in its ``image`` field: a
bundled asset path (``/images/p1.jpg``), a local upload (``/uploads/<name>``)
or a public S3 URL. Classification decides which backend, if any, owns the
bytes behind it.
"""

import enum
from typing import NamedTuple, Optional
from urllib.parse import unquote, urlsplit

from storefront.settings import Settings


class ImageBackend(str, enum.Enum):
    DEFAULT = "default"
    LOCAL = "local"
    REMOTE = "remote"
    REMOTE_UNPARSEABLE = "remote-unparseable"
    UNRECOGNIZED = "unrecognized"


class ClassifiedReference(NamedTuple):
    raw: str
    backend: ImageBackend
    key: Optional[str] = None
    reason: str = ""

    @property
    def is_releasable(self) -> bool:
        return self.backend in (ImageBackend.LOCAL, ImageBackend.REMOTE)


def _split_url(url: str):
    try:
        parts = urlsplit(url)
        if not parts.netloc:
            # Scheme-less "bucket.s3.amazonaws.com/key" parses as a bare path.
            parts = urlsplit(f"//{url.lstrip('/')}")
    except ValueError:
        # Unbalanced IPv6 brackets and similar.
        return "", []
    return parts.netloc.lower(), [segment for segment in parts.path.split("/") if segment]


def extract_object_key(url: Optional[str], bucket_name: Optional[str]) -> Optional[str]:
    """Return the S3 object key addressed by ``url`` inside ``bucket_name``.

    Supports virtual-hosted URLs (``<bucket>.s3.<region>.amazonaws.com/<key>``)
    and path-style URLs (``s3.<region>.amazonaws.com/<bucket>/<key>``).
    Returns ``None`` when the URL has neither shape or names another bucket.
    """
    if not url or not bucket_name:
        return None

    host, segments = _split_url(str(url).strip())
    if not host:
        return None

    bucket = bucket_name.lower()
    key_segments = []
    if host.startswith(f"{bucket}.s3.") or host.startswith(f"{bucket}.s3-"):
        key_segments = segments
    elif host.startswith("s3.") or host.startswith("s3-"):
        if bucket_name in segments:
            bucket_index = segments.index(bucket_name)
            key_segments = segments[bucket_index + 1:]

    key = unquote("/".join(key_segments))
    return key or None


def classify_image_reference(
    reference: Optional[str], settings: Settings
) -> ClassifiedReference:
    raw = str(reference or "").strip()
    if not raw:
        return ClassifiedReference(
            raw, ImageBackend.UNRECOGNIZED, reason="No image URL provided"
        )

    if raw.startswith(settings.default_image_prefix):
        return ClassifiedReference(
            raw, ImageBackend.DEFAULT, reason="Default images are never deleted"
        )

    if raw.startswith(settings.local_upload_prefix):
        return ClassifiedReference(raw, ImageBackend.LOCAL, reason="Local upload")

    if settings.s3_domain_marker and settings.s3_domain_marker in raw:
        key = extract_object_key(raw, settings.s3.bucket_name)
        if key is None:
            return ClassifiedReference(
                raw,
                ImageBackend.REMOTE_UNPARSEABLE,
                reason="Unable to extract S3 key from URL",
            )
        return ClassifiedReference(raw, ImageBackend.REMOTE, key=key, reason="S3 object")

    return ClassifiedReference(
        raw,
        ImageBackend.UNRECOGNIZED,
        reason="Image URL format not recognized for deletion",
    )
