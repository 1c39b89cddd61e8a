import enum
import logging
import os
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
from uuid import uuid4

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from werkzeug.utils import secure_filename

from storefront.image_references import ImageBackend, classify_image_reference
from storefront.settings import S3Settings, Settings

ALLOWED_IMAGE_EXTENSIONS = {"png", "jpg", "jpeg", "gif", "webp"}


class ReleaseStatus(str, enum.Enum):
    RELEASED = "released"
    NO_REFERENCE = "no-reference"
    NOT_ELIGIBLE = "not-eligible"
    NOT_CONFIGURED = "not-configured"
    NOT_FOUND = "not-found"
    UNPARSEABLE_REFERENCE = "unparseable-reference"
    BACKEND_ERROR = "backend-error"


@dataclass(frozen=True)
class ReleaseOutcome:
    success: bool
    detail: str
    status: ReleaseStatus

    @classmethod
    def released(cls, detail: str) -> "ReleaseOutcome":
        return cls(True, detail, ReleaseStatus.RELEASED)

    @classmethod
    def failed(cls, status: ReleaseStatus, detail: str) -> "ReleaseOutcome":
        return cls(False, detail, status)

    def to_dict(self) -> Dict[str, object]:
        return {
            "success": self.success,
            "message": self.detail,
            "status": self.status.value,
        }


def allowed_image_extension(filename: str) -> bool:
    extension = os.path.splitext(filename)[1].lower().lstrip(".")
    if not extension:
        return False
    return extension in ALLOWED_IMAGE_EXTENSIONS


def sanitize_upload_filename(image_file) -> Tuple[Optional[str], Optional[str]]:
    if not image_file or not getattr(image_file, "filename", ""):
        return None, "No file uploaded"

    original_filename = secure_filename(image_file.filename)
    if not original_filename:
        return None, "Please choose a valid file name."

    if not allowed_image_extension(original_filename):
        return (
            None,
            "Unsupported image format. Upload PNG, JPG, JPEG, GIF, or WEBP files.",
        )
    return original_filename, None


class LocalImageStore:
    """Product images kept on disk under ``<storage_root>/uploads``."""

    def __init__(self, storage_root: str, settings: Settings, logger=None):
        self.storage_root = os.path.abspath(storage_root)
        self.upload_prefix = settings.local_upload_prefix
        self.upload_folder = os.path.join(self.storage_root, settings.upload_folder_name)
        self.logger = logger or logging.getLogger(__name__)

    def ensure_folder(self):
        os.makedirs(self.upload_folder, exist_ok=True)

    def resolve(self, reference: str) -> Optional[str]:
        relative_path = reference.lstrip("/").replace("/", os.sep)
        try:
            target = os.path.realpath(os.path.join(self.storage_root, relative_path))
            upload_folder = os.path.realpath(self.upload_folder)
            if os.path.commonpath([target, upload_folder]) != upload_folder:
                return None
        except ValueError:
            # Embedded NUL bytes, or paths on another drive.
            return None
        if target == upload_folder:
            return None
        return target

    def save(self, image_file) -> Tuple[Optional[str], Optional[str]]:
        original_filename, error = sanitize_upload_filename(image_file)
        if error:
            return None, error

        extension = os.path.splitext(original_filename)[1].lower()
        unique_filename = f"{uuid4().hex}{extension}"
        self.ensure_folder()
        destination = os.path.join(self.upload_folder, unique_filename)

        try:
            image_file.save(destination)
        except OSError as exc:
            self.logger.error("Unable to store upload %s: %s", destination, exc)
            return None, "We could not store the uploaded image. Please try again."

        return f"{self.upload_prefix}{unique_filename}", None

    def release(self, reference: str) -> ReleaseOutcome:
        if not reference:
            return ReleaseOutcome.failed(
                ReleaseStatus.NO_REFERENCE, "No image URL provided"
            )
        if not reference.startswith(self.upload_prefix):
            return ReleaseOutcome.failed(
                ReleaseStatus.NOT_ELIGIBLE, "Not a local image URL"
            )

        target = self.resolve(reference)
        if target is None:
            return ReleaseOutcome.failed(
                ReleaseStatus.NOT_ELIGIBLE,
                "Local image path is outside the upload folder",
            )

        try:
            if not os.path.isfile(target):
                return ReleaseOutcome.failed(
                    ReleaseStatus.NOT_FOUND, "Local image file not found"
                )
            os.remove(target)
        except FileNotFoundError:
            return ReleaseOutcome.failed(
                ReleaseStatus.NOT_FOUND, "Local image file not found"
            )
        except OSError as exc:
            self.logger.error("Error deleting local image %s: %s", target, exc)
            return ReleaseOutcome.failed(ReleaseStatus.BACKEND_ERROR, str(exc))

        self.logger.info("Successfully deleted local image: %s", target)
        return ReleaseOutcome.released("Local image deleted successfully")


def build_s3_client(s3_settings: S3Settings):
    if not s3_settings.is_configured:
        return None
    return boto3.client(
        "s3",
        region_name=s3_settings.region,
        aws_access_key_id=s3_settings.access_key_id,
        aws_secret_access_key=s3_settings.secret_access_key,
    )


class S3ImageStore:
    """Product images kept in a public-read S3 bucket."""

    def __init__(self, s3_settings: S3Settings, client=None, logger=None):
        self.settings = s3_settings
        self.logger = logger or logging.getLogger(__name__)
        self.client = client
        if self.client is None and s3_settings.is_configured:
            self.client = build_s3_client(s3_settings)

    @property
    def is_configured(self) -> bool:
        return self.settings.is_configured and self.client is not None

    def public_url(self, key: str) -> str:
        return (
            f"https://{self.settings.bucket_name}.s3."
            f"{self.settings.region}.amazonaws.com/{key}"
        )

    def upload(self, image_file) -> Tuple[Optional[str], Optional[str]]:
        if not self.is_configured:
            return None, "S3 not configured"

        original_filename, error = sanitize_upload_filename(image_file)
        if error:
            return None, error

        key = f"products/{int(time.time() * 1000)}-{original_filename}"
        try:
            self.client.put_object(
                Bucket=self.settings.bucket_name,
                Key=key,
                Body=image_file.read(),
                ContentType=image_file.mimetype or "application/octet-stream",
                ACL="public-read",
            )
        except (BotoCoreError, ClientError) as exc:
            self.logger.error("S3 upload error for %s: %s", key, exc)
            return None, f"S3 upload failed: {exc}"

        url = self.public_url(key)
        self.logger.info("S3 upload successful: %s", url)
        return url, None

    def release(self, key: str) -> ReleaseOutcome:
        if not self.is_configured:
            return ReleaseOutcome.failed(
                ReleaseStatus.NOT_CONFIGURED, "S3 not configured"
            )
        if not key:
            return ReleaseOutcome.failed(
                ReleaseStatus.UNPARSEABLE_REFERENCE,
                "Unable to extract S3 key from URL",
            )

        try:
            self.client.delete_object(Bucket=self.settings.bucket_name, Key=key)
        except (BotoCoreError, ClientError) as exc:
            self.logger.error("Error deleting image from S3 (%s): %s", key, exc)
            return ReleaseOutcome.failed(ReleaseStatus.BACKEND_ERROR, str(exc))

        self.logger.info("Successfully deleted image from S3: %s", key)
        return ReleaseOutcome.released("Image deleted from S3")


class ImageReconciler:
    """Releases product images that a mutation has orphaned.

    Callers invoke the hooks only after the store has confirmed the write.
    Every path returns a ``ReleaseOutcome`` (or ``None`` when nothing had to
    be released); none of them raise.
    """

    def __init__(
        self,
        settings: Settings,
        local_store: LocalImageStore,
        remote_store: S3ImageStore,
        logger=None,
    ):
        self.settings = settings
        self.local_store = local_store
        self.remote_store = remote_store
        self.logger = logger or logging.getLogger(__name__)

    def classify(self, reference: Optional[str]):
        return classify_image_reference(reference, self.settings)

    def release_if_eligible(self, reference: Optional[str]) -> ReleaseOutcome:
        reference = str(reference or "").strip()
        if not reference:
            return ReleaseOutcome.failed(
                ReleaseStatus.NO_REFERENCE, "No image URL provided"
            )

        classified = self.classify(reference)

        if classified.backend in (ImageBackend.DEFAULT, ImageBackend.UNRECOGNIZED):
            self.logger.info(
                "Image URL not eligible for deletion (%s): %s",
                classified.reason,
                classified.raw,
            )
            return ReleaseOutcome.failed(ReleaseStatus.NOT_ELIGIBLE, classified.reason)

        if classified.backend in (ImageBackend.REMOTE, ImageBackend.REMOTE_UNPARSEABLE):
            if not self.remote_store.is_configured:
                return ReleaseOutcome.failed(
                    ReleaseStatus.NOT_CONFIGURED, "S3 not configured"
                )
            if classified.backend is ImageBackend.REMOTE_UNPARSEABLE:
                self.logger.warning(
                    "Could not extract S3 key from URL: %s", classified.raw
                )
                return ReleaseOutcome.failed(
                    ReleaseStatus.UNPARSEABLE_REFERENCE, classified.reason
                )
            return self.remote_store.release(classified.key)

        return self.local_store.release(classified.raw)

    def after_update(
        self, old_reference: Optional[str], new_reference: Optional[str]
    ) -> Optional[ReleaseOutcome]:
        old_reference = str(old_reference or "").strip()
        new_reference = str(new_reference or "").strip()
        if not old_reference or not new_reference or old_reference == new_reference:
            return None
        if self.classify(old_reference).backend is ImageBackend.DEFAULT:
            return None

        outcome = self.release_if_eligible(old_reference)
        self.logger.info(
            "Old image deletion result for %s: %s", old_reference, outcome.detail
        )
        return outcome

    def after_delete(self, reference: Optional[str]) -> Optional[ReleaseOutcome]:
        reference = str(reference or "").strip()
        if not reference:
            return None
        if self.classify(reference).backend is ImageBackend.DEFAULT:
            return None

        outcome = self.release_if_eligible(reference)
        self.logger.info("Image deletion result for %s: %s", reference, outcome.detail)
        return outcome
