"""
Media Store: durable blob storage with a per-bucket content policy.

Each media category gets its own bucket with a max size and an allowed
MIME-type list. Uploads are validated against the policy before any bytes
leave the process; violations raise MediaValidationError and are not retried.
Objects are never overwritten: a taken path raises MediaAlreadyExists with
the existing object's URL, which callers retrying the same path treat as done.

Providers (MEDIA_STORE_PROVIDER):
- SupabaseMediaStore: Supabase Storage via supabase-py.
- MockMediaStore: in-memory, for development and tests.
"""
import logging
from dataclasses import dataclass, field
from functools import lru_cache

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from fulfillment.exceptions import MediaAlreadyExists, MediaStoreError, MediaValidationError

logger = logging.getLogger(__name__)

MB = 1024 * 1024


class MediaCategory:
    VOICE_NOTE = "voice_note"
    ALBUM_COVER = "album_cover"
    WEBHOOK_AUDIO = "webhook_audio"
    WEBHOOK_VIDEO = "webhook_video"
    WEBHOOK_IMAGE = "webhook_image"
    WEBHOOK_DOCUMENT = "webhook_document"


AUDIO_TYPES = ["audio/ogg", "audio/opus", "audio/mpeg", "audio/mp3", "audio/mp4", "audio/m4a",
               "audio/aac", "audio/amr", "audio/wav", "audio/webm"]
IMAGE_TYPES = ["image/jpeg", "image/png", "image/webp"]
VIDEO_TYPES = ["video/mp4", "video/3gpp"]
DOCUMENT_TYPES = [
    "application/pdf",
    "text/plain",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
]

_EXTENSIONS = {
    "audio/ogg": "ogg",
    "audio/opus": "opus",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/mp4": "m4a",
    "audio/m4a": "m4a",
    "audio/aac": "aac",
    "audio/amr": "amr",
    "audio/wav": "wav",
    "audio/webm": "webm",
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "video/mp4": "mp4",
    "video/3gpp": "3gp",
    "application/pdf": "pdf",
    "text/plain": "txt",
}


@dataclass
class BucketPolicy:
    name: str
    max_bytes: int
    allowed_mime_types: list[str] = field(default_factory=list)
    public: bool = True

    def validate(self, size: int, mime_type: str):
        base = base_mime_type(mime_type)
        if base not in self.allowed_mime_types:
            raise MediaValidationError(f"{base or 'unknown type'} not allowed in bucket {self.name}")
        if size <= 0:
            raise MediaValidationError(f"Empty upload rejected for bucket {self.name}")
        if size > self.max_bytes:
            raise MediaValidationError(
                f"{size} bytes exceeds the {self.max_bytes} byte limit of bucket {self.name}"
            )


def base_mime_type(mime_type: str | None) -> str:
    """'audio/ogg; codecs=opus' -> 'audio/ogg'"""
    return (mime_type or "").split(";", 1)[0].strip().lower()


def extension_for(mime_type: str | None, default: str = "bin") -> str:
    return _EXTENSIONS.get(base_mime_type(mime_type), default)


def bucket_policies() -> dict[str, BucketPolicy]:
    """Per-category policy; bucket names come from settings."""
    return {
        MediaCategory.VOICE_NOTE: BucketPolicy(settings.VOICE_NOTES_BUCKET, 16 * MB, AUDIO_TYPES),
        MediaCategory.ALBUM_COVER: BucketPolicy(settings.ALBUM_COVERS_BUCKET, 5 * MB, IMAGE_TYPES),
        MediaCategory.WEBHOOK_AUDIO: BucketPolicy(settings.WEBHOOK_AUDIO_BUCKET, 16 * MB, AUDIO_TYPES),
        MediaCategory.WEBHOOK_VIDEO: BucketPolicy(settings.WEBHOOK_VIDEO_BUCKET, 16 * MB, VIDEO_TYPES),
        MediaCategory.WEBHOOK_IMAGE: BucketPolicy(settings.WEBHOOK_IMAGE_BUCKET, 5 * MB, IMAGE_TYPES),
        MediaCategory.WEBHOOK_DOCUMENT: BucketPolicy(settings.WEBHOOK_DOCUMENT_BUCKET, 100 * MB, DOCUMENT_TYPES),
    }


def policy_for(category: str) -> BucketPolicy:
    try:
        return bucket_policies()[category]
    except KeyError:
        raise MediaStoreError(f"Unknown media category: {category}") from None


def _is_conflict(error: Exception) -> bool:
    message = str(error).lower()
    return "already exists" in message or "duplicate" in message


# ─── Supabase Storage ────────────────────────────────────────────────────────

class SupabaseMediaStore:
    """Supabase Storage backend. One public bucket per media category."""

    def __init__(self, url: str, service_role_key: str, client=None):
        if client is None:
            if not url or not service_role_key:
                raise ImproperlyConfigured(
                    "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set when MEDIA_STORE_PROVIDER=supabase"
                )
            from supabase import create_client

            client = create_client(url, service_role_key)
        self.name = "supabase"
        self.client = client

    @classmethod
    def from_settings(cls) -> "SupabaseMediaStore":
        return cls(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)

    def ensure_bucket(self, policy: BucketPolicy) -> bool:
        """
        Check-then-create. Returns True if the bucket was created by this call.
        A concurrent creator winning the race ("already exists") counts as success.
        """
        try:
            existing = {getattr(b, "name", None) or getattr(b, "id", None)
                        for b in self.client.storage.list_buckets()}
        except Exception as e:
            raise MediaStoreError(f"Could not list buckets: {e}") from e

        if policy.name in existing:
            return False

        try:
            self.client.storage.create_bucket(
                policy.name,
                options={
                    "public": policy.public,
                    "file_size_limit": policy.max_bytes,
                    "allowed_mime_types": policy.allowed_mime_types,
                },
            )
        except Exception as e:
            if _is_conflict(e):
                logger.info("Bucket %s created concurrently; continuing", policy.name)
                return False
            raise MediaStoreError(f"Could not create bucket {policy.name}: {e}") from e

        logger.info("Created bucket %s", policy.name)
        return True

    def upload(self, category: str, path: str, data: bytes, mime_type: str) -> str:
        """
        Upload without overwriting. If the path is already taken, raises
        MediaAlreadyExists carrying the public URL of the existing object.
        """
        policy = policy_for(category)
        policy.validate(len(data), mime_type)
        bucket = self.client.storage.from_(policy.name)
        try:
            bucket.upload(
                path,
                data,
                file_options={"content-type": base_mime_type(mime_type), "upsert": "false"},
            )
        except Exception as e:
            if _is_conflict(e):
                existing_url = self._public_url(bucket, policy, path)
                raise MediaAlreadyExists(f"{policy.name}/{path} already exists", existing_url) from e
            raise MediaStoreError(f"Upload of {policy.name}/{path} failed: {e}") from e

        public_url = self._public_url(bucket, policy, path)
        logger.info("Uploaded %s/%s (%d bytes)", policy.name, path, len(data))
        return public_url

    @staticmethod
    def _public_url(bucket, policy: BucketPolicy, path: str) -> str:
        try:
            public_url = bucket.get_public_url(path)
        except Exception as e:
            raise MediaStoreError(f"Public URL lookup for {policy.name}/{path} failed: {e}") from e
        if not public_url:
            raise MediaStoreError(f"No public URL returned for {policy.name}/{path}")
        return public_url


# ─── Mock store ──────────────────────────────────────────────────────────────

class MockMediaStore:
    """In-memory media store. Applies the same policy checks as the real one."""

    def __init__(self):
        self.name = "mock"
        self.buckets: set[str] = set()
        self.objects: dict[str, bytes] = {}

    def ensure_bucket(self, policy: BucketPolicy) -> bool:
        if policy.name in self.buckets:
            return False
        self.buckets.add(policy.name)
        return True

    def upload(self, category: str, path: str, data: bytes, mime_type: str) -> str:
        policy = policy_for(category)
        policy.validate(len(data), mime_type)
        key = f"{policy.name}/{path}"
        if key in self.objects:
            raise MediaAlreadyExists(f"{key} already exists", f"mock://storage/{key}")
        self.objects[key] = data
        return f"mock://storage/{key}"


@lru_cache(maxsize=1)
def get_media_store():
    if settings.MEDIA_STORE_PROVIDER == "supabase":
        return SupabaseMediaStore.from_settings()
    return MockMediaStore()


def ensure_buckets(store=None) -> list[str]:
    """Provision every category bucket. Idempotent; returns the names created."""
    store = store or get_media_store()
    created = []
    for policy in bucket_policies().values():
        if store.ensure_bucket(policy):
            created.append(policy.name)
    return created
