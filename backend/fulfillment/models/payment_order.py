import uuid
from django.db import models


class PaymentState(models.TextChoices):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_PAYMENT_STATES = (PaymentState.COMPLETED, PaymentState.FAILED)


class PaymentOrder(models.Model):
    """
    A checkout attempt with the payment provider.

    Transitions only via status polling or webhook, and never leaves
    COMPLETED or FAILED once it gets there.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    merchant_order_id = models.CharField(max_length=64, unique=True)
    trial = models.ForeignKey(
        "Trial", on_delete=models.SET_NULL, null=True, blank=True, related_name="payment_orders"
    )

    amount = models.PositiveIntegerField()  # Paise
    state = models.CharField(max_length=20, choices=PaymentState.choices, default=PaymentState.PENDING)

    # Provider references
    transaction_id = models.CharField(max_length=255, null=True, blank=True)
    redirect_url = models.TextField(null=True, blank=True)

    package_type = models.CharField(max_length=20, null=True, blank=True)  # digital, ebook, printed
    metadata = models.JSONField(default=dict, blank=True)

    completed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "payment_orders"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["state", "created_at"], name="idx_payment_state_created"),
        ]

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_PAYMENT_STATES

    def __str__(self):
        return f"{self.merchant_order_id} ({self.state}, {self.amount} paise)"
