"""WSGI config for the Kahani fulfillment engine."""
import os
from django.core.wsgi import get_wsgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'kahani.settings')
application = get_wsgi_application()
