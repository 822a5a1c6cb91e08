"""
Django settings for the Kahani fulfillment engine.

Uses PostgreSQL as the database and django-rest-framework for the API layer.
"""
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'dev-secret-key-change-in-production')

DEBUG = os.environ.get('DEBUG', 'True').lower() in ('true', '1', 'yes')

ALLOWED_HOSTS = os.environ.get('ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',')


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ('true', '1', 'yes')


# Application definition
INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'rest_framework',
    'corsheaders',
    'django_q',
    'fulfillment',
]

MIDDLEWARE = [
    'corsheaders.middleware.CorsMiddleware',
    'django.middleware.common.CommonMiddleware',
]

# Don't redirect to add trailing slashes: webhook providers send exact URLs
APPEND_SLASH = False

ROOT_URLCONF = 'kahani.urls'

WSGI_APPLICATION = 'kahani.wsgi.application'

# Database: PostgreSQL in production, SQLite for local dev
DB_ENGINE = os.environ.get('DB_ENGINE', 'django.db.backends.sqlite3')

if DB_ENGINE == 'django.db.backends.sqlite3':
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': BASE_DIR / 'db.sqlite3',
            # Concurrent writers queue on the write lock instead of failing fast.
            # Tests use an on-disk database so threads share it.
            'OPTIONS': {'timeout': 20, 'transaction_mode': 'IMMEDIATE'},
            'TEST': {'NAME': BASE_DIR / 'test_db.sqlite3'},
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': DB_ENGINE,
            'NAME': os.environ.get('DB_NAME', 'kahani'),
            'USER': os.environ.get('DB_USER', 'postgres'),
            'PASSWORD': os.environ.get('DB_PASSWORD', 'postgres'),
            'HOST': os.environ.get('DB_HOST', 'localhost'),
            'PORT': os.environ.get('DB_PORT', '5432'),
        }
    }

# CORS: the checkout frontend calls the API from the browser
CORS_ALLOW_ALL_ORIGINS = DEBUG
CORS_ALLOWED_ORIGINS = [
    origin for origin in os.environ.get(
        'CORS_ALLOWED_ORIGINS', 'http://localhost:5173,http://127.0.0.1:5173'
    ).split(',') if origin
]

# DRF
REST_FRAMEWORK = {
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
    ],
    'DEFAULT_PARSER_CLASSES': [
        'rest_framework.parsers.JSONParser',
    ],
    'DEFAULT_PAGINATION_CLASS': None,
    'UNAUTHENTICATED_USER': None,
    'DEFAULT_AUTHENTICATION_CLASSES': [],
    'DEFAULT_PERMISSION_CLASSES': [],
}

# ─── PhonePe payment gateway ─────────────────────────────────────────────────
PHONEPE_ENVIRONMENT = os.environ.get('PHONEPE_ENVIRONMENT', 'sandbox')  # "sandbox" or "production"
PHONEPE_MERCHANT_ID = os.environ.get('PHONEPE_MERCHANT_ID', '')
PHONEPE_CLIENT_ID = os.environ.get('PHONEPE_CLIENT_ID', '')
PHONEPE_CLIENT_SECRET = os.environ.get('PHONEPE_CLIENT_SECRET', '')
PHONEPE_CLIENT_VERSION = os.environ.get('PHONEPE_CLIENT_VERSION', '1')
PHONEPE_WEBHOOK_USERNAME = os.environ.get('PHONEPE_WEBHOOK_USERNAME', '')
PHONEPE_WEBHOOK_PASSWORD = os.environ.get('PHONEPE_WEBHOOK_PASSWORD', '')
# Kept well below the provider's own expiry to bound staleness
PHONEPE_TOKEN_TTL_SECONDS = int(os.environ.get('PHONEPE_TOKEN_TTL_SECONDS', '900'))
PHONEPE_MAX_ATTEMPTS = int(os.environ.get('PHONEPE_MAX_ATTEMPTS', '3'))
PHONEPE_RETRY_BACKOFF_SECONDS = float(os.environ.get('PHONEPE_RETRY_BACKOFF_SECONDS', '1.0'))
PHONEPE_TIMEOUT_SECONDS = float(os.environ.get('PHONEPE_TIMEOUT_SECONDS', '15'))

# ─── WhatsApp messaging ──────────────────────────────────────────────────────
COMMS_PROVIDER = os.environ.get('COMMS_PROVIDER', 'mock')  # "whatsapp" or "mock"
WHATSAPP_PHONE_NUMBER_ID = os.environ.get('WHATSAPP_PHONE_NUMBER_ID', '')
WHATSAPP_ACCESS_TOKEN = os.environ.get('WHATSAPP_ACCESS_TOKEN', '')
WHATSAPP_API_VERSION = os.environ.get('WHATSAPP_API_VERSION', 'v22.0')
WHATSAPP_VERIFY_TOKEN = os.environ.get('WHATSAPP_VERIFY_TOKEN', '')
WHATSAPP_APP_SECRET = os.environ.get('WHATSAPP_APP_SECRET', '')
WHATSAPP_BUSINESS_NUMBER_E164 = os.environ.get('WHATSAPP_BUSINESS_NUMBER_E164', '')
WHATSAPP_MAX_ATTEMPTS = int(os.environ.get('WHATSAPP_MAX_ATTEMPTS', '3'))
WHATSAPP_RETRY_BACKOFF_SECONDS = float(os.environ.get('WHATSAPP_RETRY_BACKOFF_SECONDS', '1.0'))
SUPPORT_ESCALATION_PHONE = os.environ.get('SUPPORT_ESCALATION_PHONE', '')

# ─── Media store ─────────────────────────────────────────────────────────────
MEDIA_STORE_PROVIDER = os.environ.get('MEDIA_STORE_PROVIDER', 'mock')  # "supabase" or "mock"
SUPABASE_URL = os.environ.get('SUPABASE_URL', '')
SUPABASE_SERVICE_ROLE_KEY = os.environ.get('SUPABASE_SERVICE_ROLE_KEY', '')
VOICE_NOTES_BUCKET = os.environ.get('VOICE_NOTES_BUCKET', 'voice-notes')
ALBUM_COVERS_BUCKET = os.environ.get('ALBUM_COVERS_BUCKET', 'album-cover-images-user')
WEBHOOK_AUDIO_BUCKET = os.environ.get('WEBHOOK_AUDIO_BUCKET', 'webhook_audio')
WEBHOOK_VIDEO_BUCKET = os.environ.get('WEBHOOK_VIDEO_BUCKET', 'webhook_video')
WEBHOOK_IMAGE_BUCKET = os.environ.get('WEBHOOK_IMAGE_BUCKET', 'webhook_image')
WEBHOOK_DOCUMENT_BUCKET = os.environ.get('WEBHOOK_DOCUMENT_BUCKET', 'webhook_document')

# ─── Conversation timing ─────────────────────────────────────────────────────
QUESTION_INTERVAL_HOURS = float(os.environ.get('QUESTION_INTERVAL_HOURS', '23'))
QUESTION_REMINDER_AFTER_HOURS = float(os.environ.get('QUESTION_REMINDER_AFTER_HOURS', '24'))
READINESS_RETRY_BASE_HOURS = float(os.environ.get('READINESS_RETRY_BASE_HOURS', '4'))
READINESS_RETRY_BACKOFF_FACTOR = float(os.environ.get('READINESS_RETRY_BACKOFF_FACTOR', '2'))
READINESS_MAX_RETRIES = int(os.environ.get('READINESS_MAX_RETRIES', '3'))
ASK_READINESS_BEFORE_EACH_QUESTION = _env_bool('ASK_READINESS_BEFORE_EACH_QUESTION', 'True')
DISPATCH_FAILURE_RETRY_MINUTES = int(os.environ.get('DISPATCH_FAILURE_RETRY_MINUTES', '60'))
DISPATCHER_INTERVAL_MINUTES = int(os.environ.get('DISPATCHER_INTERVAL_MINUTES', '5'))
BUYER_NO_CONTACT_REMINDER_HOURS = float(os.environ.get('BUYER_NO_CONTACT_REMINDER_HOURS', '24'))
STORYTELLER_CHECKIN_AFTER_HOURS = float(os.environ.get('STORYTELLER_CHECKIN_AFTER_HOURS', '48'))
BUYER_CHECKIN_AFTER_HOURS = float(os.environ.get('BUYER_CHECKIN_AFTER_HOURS', '24'))

# ─── Voice note ingestion ────────────────────────────────────────────────────
VOICE_NOTE_DOWNLOAD_ATTEMPTS = int(os.environ.get('VOICE_NOTE_DOWNLOAD_ATTEMPTS', '3'))
VOICE_NOTE_RETRY_BACKOFF_SECONDS = float(os.environ.get('VOICE_NOTE_RETRY_BACKOFF_SECONDS', '2'))
VOICE_NOTE_STALE_MINUTES = int(os.environ.get('VOICE_NOTE_STALE_MINUTES', '30'))

# ─── Payment reconciliation ──────────────────────────────────────────────────
PAYMENT_RECONCILE_AFTER_MINUTES = int(os.environ.get('PAYMENT_RECONCILE_AFTER_MINUTES', '10'))

# ─── Readiness classifier ────────────────────────────────────────────────────
READINESS_CLASSIFIER = os.environ.get('READINESS_CLASSIFIER', 'keyword')  # "openai" or "keyword"
OPENAI_API_KEY = os.environ.get('OPENAI_API_KEY', '')
OPENAI_MODEL = os.environ.get('OPENAI_MODEL', 'gpt-4o-mini')

# ─── Album assembly (external collaborator) ──────────────────────────────────
ALBUM_ASSEMBLER = os.environ.get(
    'ALBUM_ASSEMBLER', 'fulfillment.providers.album_assembler.LoggingAlbumAssembler'
)

# django-q2: lightweight task queue using the ORM broker (no Redis needed)
Q_CLUSTER = {
    'name': 'kahani-fulfillment',
    'workers': 2,
    'timeout': 120,
    'retry': 180,
    'orm': 'default',
    'bulk': 10,
    'catch_up': False,
}

# All datetimes are timezone-aware UTC
USE_TZ = True
TIME_ZONE = 'UTC'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': os.environ.get('LOG_LEVEL', 'INFO'),
    },
}
