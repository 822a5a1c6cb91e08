"""
Root URL configuration for the Kahani fulfillment engine.

The marketing site and checkout pages are served separately; this project
only exposes the engine's JSON API and provider webhooks.
"""
from django.urls import path, include
from django.http import JsonResponse


def health_check(request):
    return JsonResponse({"status": "healthy"})


urlpatterns = [
    path('api/', include('fulfillment.urls')),
    path('health', health_check),
]
