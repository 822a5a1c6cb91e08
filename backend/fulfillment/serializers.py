"""
DRF serializers for API request/response validation.
Separates API contract from DB models.
"""
from rest_framework import serializers

from fulfillment.models import Album, LanguagePreference, PaymentOrder, Trial, VoiceNote
from fulfillment.services.reconciler import PACKAGE_PRICES
from fulfillment.utils import normalize_phone


def _validate_indian_mobile(value: str) -> str:
    digits = normalize_phone(value)
    # normalize_phone prefixes bare 10-digit numbers with the country code
    if len(digits) != 12 or not digits.startswith("91"):
        raise serializers.ValidationError("Enter a 10-digit Indian mobile number")
    return digits


# ─── Album Serializers ───────────────────────────────────────────────────────

class AlbumSerializer(serializers.ModelSerializer):
    question_count = serializers.SerializerMethodField()

    class Meta:
        model = Album
        fields = ['id', 'title', 'description', 'cover_image', 'question_count']

    def get_question_count(self, obj) -> int:
        return len(obj.questions or [])


# ─── Trial Serializers ───────────────────────────────────────────────────────

class TrialCreateSerializer(serializers.Serializer):
    """Payload from the order form."""
    buyer_name = serializers.CharField(min_length=2, max_length=255, trim_whitespace=True)
    buyer_phone = serializers.CharField(max_length=20)
    storyteller_name = serializers.CharField(min_length=2, max_length=255, trim_whitespace=True)
    album_id = serializers.UUIDField()
    language_preference = serializers.ChoiceField(
        choices=LanguagePreference.choices, default=LanguagePreference.ENGLISH,
    )

    def validate_buyer_phone(self, value):
        return _validate_indian_mobile(value)

    def validate_album_id(self, value):
        album = Album.objects.filter(id=value, is_active=True).first()
        if album is None:
            raise serializers.ValidationError("Unknown or inactive album")
        return value


class CheckoutCreateSerializer(TrialCreateSerializer):
    package_type = serializers.ChoiceField(choices=sorted(PACKAGE_PRICES))
    redirect_url = serializers.URLField()


class TrialSerializer(serializers.ModelSerializer):
    album_title = serializers.CharField(source='album.title', read_only=True)
    total_questions = serializers.SerializerMethodField()

    class Meta:
        model = Trial
        fields = [
            'id', 'buyer_name', 'buyer_phone', 'storyteller_name', 'storyteller_phone',
            'language_preference', 'album_id', 'album_title', 'conversation_state',
            'current_question_index', 'total_questions', 'retry_count',
            'needs_human_followup', 'activated_at', 'completed_at',
            'custom_cover_image_url', 'created_at', 'updated_at',
        ]

    def get_total_questions(self, obj) -> int:
        from fulfillment.services.album_catalog import question_count
        return question_count(obj)


# ─── Voice Note Serializers ──────────────────────────────────────────────────

class VoiceNoteSerializer(serializers.ModelSerializer):
    class Meta:
        model = VoiceNote
        fields = [
            'id', 'question_index', 'question_text', 'media_url', 'mime_type',
            'size_bytes', 'download_status', 'received_at',
        ]


# ─── Payment Serializers ─────────────────────────────────────────────────────

class PaymentOrderSerializer(serializers.ModelSerializer):
    class Meta:
        model = PaymentOrder
        fields = [
            'merchant_order_id', 'trial_id', 'amount', 'state', 'package_type',
            'redirect_url', 'completed_at', 'created_at',
        ]


class PhonePeWebhookPayloadSerializer(serializers.Serializer):
    merchantOrderId = serializers.CharField()
    orderId = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    state = serializers.CharField()
    amount = serializers.IntegerField(required=False, allow_null=True)


class PhonePeWebhookSerializer(serializers.Serializer):
    event = serializers.CharField(required=False, allow_blank=True)
    payload = PhonePeWebhookPayloadSerializer()
