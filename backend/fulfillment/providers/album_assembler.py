"""
Album assembly boundary.

Producing the audio playlist / e-book from recorded answers happens outside
this service. The engine only hands over a completed trial, exactly once.
The concrete class is configured with ALBUM_ASSEMBLER.
"""
import logging
from functools import lru_cache

from django.conf import settings
from django.utils.module_loading import import_string

logger = logging.getLogger(__name__)


class LoggingAlbumAssembler:
    """Default assembler: records the hand-off so an operator can pick it up."""

    def __init__(self):
        self.name = "logging"

    def assemble(self, trial) -> None:
        notes = list(trial.voice_notes.order_by("question_index"))
        failed = [n.question_index for n in notes if n.download_status == "failed"]
        logger.info(
            "Album assembly requested for trial %s (%s, %d voice notes, failed downloads: %s)",
            trial.id, trial.album.title, len(notes), failed or "none",
        )


@lru_cache(maxsize=1)
def get_album_assembler():
    return import_string(settings.ALBUM_ASSEMBLER)()
