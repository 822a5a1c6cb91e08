"""
Voice Note Ingestion Pipeline

Accept-then-process: the inbound handler only inserts a pending VoiceNote
row (fast, no network), and media materialization runs later in a django-q
worker. An answer counts as received once the row exists, even if the
durable upload later fails.

- ingest()                  : insert the row, or signal a duplicate
- materialize_voice_note()  : django-q task; download, hash, upload, finalize
- retry_stale_voice_notes() : periodic sweep, re-enqueues lost tasks
- store_album_cover()       : django-q task; buyer photo becomes the album cover
- archive_inbound_media()   : django-q task; keep a copy of other inbound media
"""
import hashlib
import logging
import time
from datetime import timedelta
from uuid import UUID

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F
from django_q.tasks import async_task

from fulfillment.exceptions import (
    DuplicateVoiceNote, MediaAlreadyExists, MediaDownloadError, MediaStoreError,
    MediaValidationError, MessagingError,
)
from fulfillment.models import DownloadStatus, Trial, VoiceNote
from fulfillment.providers.media_store import MediaCategory, extension_for, get_media_store
from fulfillment.providers.whatsapp import MediaInfo, get_messaging_provider
from fulfillment.services import messages
from fulfillment.services.audit import record_trial_event
from fulfillment.utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_VOICE_MIME = "audio/ogg"


# ─── Acceptance ──────────────────────────────────────────────────────────────

def ingest(trial_id: UUID, question_index: int, question_text: str, media_id: str,
           mime_type: str | None = None) -> VoiceNote:
    """
    Persist a pending VoiceNote for (trial, question_index).

    Raises DuplicateVoiceNote carrying the existing row if that question was
    already answered; the existing row is left untouched. The unique
    constraint decides, so two concurrent deliveries cannot both be accepted.
    """
    try:
        with transaction.atomic():
            note = VoiceNote.objects.create(
                trial_id=trial_id,
                question_index=question_index,
                question_text=question_text,
                media_id=media_id,
                mime_type=mime_type or DEFAULT_VOICE_MIME,
                download_status=DownloadStatus.PENDING,
            )
    except IntegrityError:
        existing = VoiceNote.objects.filter(trial_id=trial_id, question_index=question_index).first()
        if existing is None:
            raise
        logger.warning(
            "Duplicate voice note for trial %s question %d (media %s); keeping %s",
            trial_id, question_index, media_id, existing.id,
        )
        raise DuplicateVoiceNote(existing) from None

    logger.info("Accepted voice note %s for trial %s question %d", note.id, trial_id, question_index)
    transaction.on_commit(lambda: enqueue_materialization(note.id))
    return note


def _enqueue(func: str, *args, task_name: str, timeout: int = 120) -> bool:
    try:
        async_task(func, *args, task_name=task_name, q_options={"timeout": timeout})
    except Exception:
        logger.warning("django-q not available; task %s not enqueued", task_name)
        return False
    return True


def enqueue_materialization(voice_note_id: UUID):
    # A missed enqueue is recovered by retry_stale_voice_notes
    _enqueue(
        "fulfillment.services.voice_notes.materialize_voice_note",
        str(voice_note_id),
        task_name=f"voice_note_materialize_{voice_note_id}",
    )


# ─── Materialization (django-q task) ─────────────────────────────────────────

def _download_with_retry(media_id: str, attempts: int, on_attempt=None) -> tuple[MediaInfo, bytes]:
    """Resolve and fetch media bytes, retrying with exponential backoff."""
    provider = get_messaging_provider()
    backoff = settings.VOICE_NOTE_RETRY_BACKOFF_SECONDS
    last_error = None
    for attempt in range(attempts):
        if on_attempt:
            on_attempt()
        try:
            info = provider.get_media_info(media_id)
            return info, provider.download_media(info.url)
        except MediaDownloadError as e:
            last_error = e
            logger.warning("Media %s download attempt %d/%d failed: %s", media_id, attempt + 1, attempts, e)
            if attempt < attempts - 1 and backoff > 0:
                time.sleep(backoff * (2 ** attempt))
    raise MediaDownloadError(f"Media {media_id} not downloaded after {attempts} attempts: {last_error}")


def _finalize(voice_note_id, status: str, **fields) -> bool:
    """Leave `pending` exactly once; a concurrent worker that got there first wins."""
    updated = (
        VoiceNote.objects
        .filter(id=voice_note_id, download_status=DownloadStatus.PENDING)
        .update(download_status=status, updated_at=utcnow(), **fields)
    )
    return updated == 1


def _upload(category: str, path: str, data: bytes, mime_type: str) -> str:
    """
    Upload to the category bucket. Paths are derived from stable ids, so an
    object already at `path` was written by an earlier attempt of the same
    task (a worker that died after uploading) and is reused.
    """
    try:
        return get_media_store().upload(category, path, data, mime_type)
    except MediaAlreadyExists as e:
        logger.info("%s already stored by an earlier attempt; reusing %s", path, e.url)
        return e.url


def materialize_voice_note(
voice_note_id: str) -> str:
    """
    Download the media from WhatsApp, hash it, upload it to the voice-notes
    bucket and mark the row downloaded. Exhausted downloads, policy
    violations and upload failures mark it failed. Conversation progress
    never waits on this.

    Accepts voice_note_id as a string (django-q serializes task args as JSON).
    Returns a short status string for the task log.
    """
    note = VoiceNote.objects.filter(id=voice_note_id).first()
    if note is None:
        logger.error("Voice note %s not found for materialization", voice_note_id)
        return "missing"
    if note.download_status != DownloadStatus.PENDING:
        return f"skipped ({note.download_status})"

    def count_attempt():
        VoiceNote.objects.filter(id=note.id).update(download_attempts=F("download_attempts") + 1)

    try:
        info, data = _download_with_retry(
            note.media_id, settings.VOICE_NOTE_DOWNLOAD_ATTEMPTS, on_attempt=count_attempt,
        )
    except MediaDownloadError as e:
        logger.error("Voice note %s download failed permanently: %s", note.id, e)
        _finalize(note.id, DownloadStatus.FAILED)
        return "failed (download)"

    mime_type = info.mime_type or note.mime_type or DEFAULT_VOICE_MIME
    digest = hashlib.sha256(data).hexdigest()
    if info.sha256 and info.sha256.lower() != digest:
        logger.warning("Voice note %s sha256 differs from platform value (%s != %s)", note.id, digest, info.sha256)

    fields = {
        "content_sha256": digest,
        "size_bytes": len(data),
        "mime_type": mime_type,
    }
    path = f"{note.id}.{extension_for(mime_type, default='ogg')}"

    try:
        public_url = _upload(MediaCategory.VOICE_NOTE, path, data, mime_type)
    except MediaValidationError as e:
        logger.error("Voice note %s rejected by storage policy: %s", note.id, e)
        _finalize(note.id, DownloadStatus.FAILED, media_url=info.url, **fields)
        return "failed (validation)"
    except MediaStoreError as e:
        # Keep the platform URL so an operator can recover within its retention window
        logger.error("Voice note %s upload failed: %s", note.id, e)
        _finalize(note.id, DownloadStatus.FAILED, media_url=info.url, **fields)
        return "failed (upload)"

    if not _finalize(note.id, DownloadStatus.DOWNLOADED, media_url=public_url, **fields):
        return "skipped (finalized concurrently)"

    logger.info("Voice note %s stored at %s (%d bytes)", note.id, public_url, len(data))
    return "downloaded"


# ─── Periodic sweep: safety net ──────────────────────────────────────────────

def retry_stale_voice_notes() -> str:
    """
    Runs via django-q Schedule. Re-enqueues voice notes still pending after
    VOICE_NOTE_STALE_MINUTES, which catches tasks lost to worker restarts.
    """
    cutoff = utcnow() - timedelta(minutes=settings.VOICE_NOTE_STALE_MINUTES)
    stale_ids = list(
        VoiceNote.objects
        .filter(download_status=DownloadStatus.PENDING, received_at__lte=cutoff)
        .values_list("id", flat=True)
    )

    for note_id in stale_ids:
        enqueue_materialization(note_id)

    return f"sweep complete: {len(stale_ids)} voice notes re-enqueued"


# ─── Non-answer media (django-q tasks) ───────────────────────────────────────

def fetch_and_store(media_id: str, category: str, path_stem: str, mime_type: str | None = None) -> str:
    """
    Download media from WhatsApp and upload it to the bucket for `category`.
    Returns the public URL. Raises MediaDownloadError, MediaValidationError
    or MediaStoreError.
    """
    info, data = _download_with_retry(media_id, settings.VOICE_NOTE_DOWNLOAD_ATTEMPTS)
    final_mime = info.mime_type or mime_type or "application/octet-stream"
    path = f"{path_stem}.{extension_for(final_mime)}"
    return _upload(category, path, data, final_mime)


def enqueue_album_cover(trial_id: UUID, media_id: str, mime_type: str | None, reply_to: str):
    if not _enqueue(
        "fulfillment.services.voice_notes.store_album_cover",
        str(trial_id), media_id, mime_type, reply_to,
        task_name=f"album_cover_{trial_id}_{media_id}",
    ):
        logger.error("Cover image %s for trial %s dropped: no task queue", media_id, trial_id)


def _notify(phone: str, text: str):
    try:
        get_messaging_provider().send_text(phone, text)
    except MessagingError as e:
        logger.error("Cover reply to %s failed: %s", phone, e)


def store_album_cover(trial_id: str, media_id: str, mime_type: str | None, reply_to: str) -> str:
    """
    Store a buyer's photo as the album cover and tell the buyer how it went.
    Arguments are strings because django-q serializes task args.
    """
    trial = Trial.objects.filter(id=trial_id).first()
    if trial is None:
        logger.error("Trial %s not found for cover image %s", trial_id, media_id)
        return "missing"

    try:
        url = fetch_and_store(media_id, MediaCategory.ALBUM_COVER, f"{trial.id}/{media_id}", mime_type)
    except (MediaDownloadError, MediaStoreError, MediaValidationError) as e:
        logger.error("Cover image for trial %s failed: %s", trial.id, e)
        _notify(reply_to, messages.render("cover_failed", "en"))
        return "failed"

    Trial.objects.filter(id=trial.id).update(custom_cover_image_url=url)
    record_trial_event(trial, "cover_image_set", "Buyer sent a cover photo", {"url": url})
    _notify(reply_to, messages.render("cover_saved", "en", storyteller_name=trial.storyteller_name))
    logger.info("Cover image for trial %s stored at %s", trial.id, url)
    return "stored"


_ARCHIVE_CATEGORIES = {
    "audio": MediaCategory.WEBHOOK_AUDIO,
    "video": MediaCategory.WEBHOOK_VIDEO,
    "image": MediaCategory.WEBHOOK_IMAGE,
    "document": MediaCategory.WEBHOOK_DOCUMENT,
}


def enqueue_archive(message_type: str, media_id: str, mime_type: str | None = None):
    if message_type not in _ARCHIVE_CATEGORIES:
        return
    _enqueue(
        "fulfillment.services.voice_notes.archive_inbound_media",
        message_type, media_id, mime_type,
        task_name=f"archive_{message_type}_{media_id}",
    )


def archive_inbound_media(message_type: str, media_id: str, mime_type: str | None = None) -> str | None:
    """django-q task: keep a copy of inbound media that isn't an answer. Failures are logged, not raised."""
    category = _ARCHIVE_CATEGORIES.get(message_type)
    if category is None:
        return None
    try:
        return fetch_and_store(media_id, category, media_id, mime_type)
    except (MediaDownloadError, MediaStoreError, MediaValidationError) as e:
        logger.error("Could not archive %s media %s: %s", message_type, media_id, e)
        return None
