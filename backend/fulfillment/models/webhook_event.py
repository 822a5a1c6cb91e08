from django.db import models


class WebhookEvent(models.Model):
    """
    Idempotency ledger. The unique constraint on idempotency_key is what makes
    admission atomic: a second insert of the same key fails at the database.
    """

    idempotency_key = models.CharField(max_length=255, unique=True)
    source = models.CharField(max_length=30, blank=True, default="")  # "phonepe", "whatsapp", "system"
    processed_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "webhook_events"
        ordering = ["-processed_at"]

    def __str__(self):
        return f"{self.idempotency_key} @ {self.processed_at}"
