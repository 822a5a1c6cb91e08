import uuid
from django.db import models


class Album(models.Model):
    """
    Read-mostly catalog entry: the ordered question list a storyteller answers.
    Edited by the admin surface; the engine only reads it.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    title = models.CharField(max_length=255, unique=True)
    description = models.TextField()
    questions = models.JSONField(default=list)  # English question list, in order
    questions_hn = models.JSONField(null=True, blank=True)  # Optional Hindi list
    cover_image = models.TextField()
    is_active = models.BooleanField(default=True, db_index=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "albums"
        ordering = ["title"]

    def questions_for(self, language: str | None) -> list[str]:
        """
        Hindi questions when requested and at least as long as the English list;
        English otherwise, so the question count never depends on a partial translation.
        """
        english = list(self.questions or [])
        if language == "hn" and self.questions_hn and len(self.questions_hn) >= len(english):
            return list(self.questions_hn)
        return english

    def __str__(self):
        return f"{self.title} ({len(self.questions or [])} questions)"
