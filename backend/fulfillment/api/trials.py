"""
Trial API: free-trial signup from the order form, plus read-only views of
a trial and its collected voice notes.

Creating a free trial activates it immediately; the buyer then receives the
confirmation and the storyteller link on WhatsApp (after commit).
"""
import logging

from django.db import transaction
from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework import status

from fulfillment.models import Album, Trial, VoiceNote
from fulfillment.serializers import TrialCreateSerializer, TrialSerializer, VoiceNoteSerializer
from fulfillment.services.reconciler import activate_free_trial

logger = logging.getLogger(__name__)


def create_trial(data: dict) -> Trial:
    """Build an unactivated trial from validated order-form data."""
    return Trial.objects.create(
        buyer_name=data["buyer_name"],
        buyer_phone=data["buyer_phone"],
        storyteller_name=data["storyteller_name"],
        language_preference=data["language_preference"],
        album=Album.objects.get(id=data["album_id"]),
    )


class TrialCreateView(APIView):
    """Start a free trial."""

    def post(self, request):
        serializer = TrialCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        with transaction.atomic():
            trial = create_trial(serializer.validated_data)
            activate_free_trial(trial)

        logger.info("Free trial %s created for buyer %s", trial.id, trial.buyer_phone)
        trial.refresh_from_db()
        return Response(TrialSerializer(trial).data, status=status.HTTP_201_CREATED)


class TrialDetailView(APIView):

    def get(self, request, trial_id):
        trial = Trial.objects.select_related("album").filter(id=trial_id).first()
        if trial is None:
            return Response({"detail": f"Trial {trial_id} not found"}, status=status.HTTP_404_NOT_FOUND)
        return Response(TrialSerializer(trial).data)


class TrialVoiceNotesView(APIView):
    """Answers collected so far, in question order."""

    def get(self, request, trial_id):
        if not Trial.objects.filter(id=trial_id).exists():
            return Response({"detail": f"Trial {trial_id} not found"}, status=status.HTTP_404_NOT_FOUND)
        notes = VoiceNote.objects.filter(trial_id=trial_id).order_by("question_index")
        return Response(VoiceNoteSerializer(notes, many=True).data)
