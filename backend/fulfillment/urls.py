"""
Fulfillment URL configuration: order form, checkout and provider webhooks.
"""
from django.urls import path
from fulfillment.api import albums, checkout, trials, webhooks

urlpatterns = [
    # Catalog
    path('albums', albums.AlbumListView.as_view()),

    # Free trials
    path('trials', trials.TrialCreateView.as_view()),
    path('trials/<uuid:trial_id>', trials.TrialDetailView.as_view()),
    path('trials/<uuid:trial_id>/voice-notes', trials.TrialVoiceNotesView.as_view()),

    # Paid checkout
    path('checkout/orders', checkout.CheckoutCreateView.as_view()),
    path('checkout/orders/<str:merchant_order_id>/status', checkout.CheckoutStatusView.as_view()),

    # Provider webhooks
    path('webhooks/phonepe', webhooks.PhonePeWebhookView.as_view()),
    path('webhooks/whatsapp', webhooks.WhatsAppWebhookView.as_view()),
]
