"""
Django settings for the prioritizer project.

Every tunable comes from the environment (loaded from .env by python-dotenv)
with a safe local default, so the engine runs and tests without Redis or an
OpenAI key.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.getenv('DJANGO_SECRET_KEY', 'django-insecure-local-development-key')
DEBUG = os.getenv('DJANGO_DEBUG', 'False').lower() in ('1', 'true', 'yes')
ALLOWED_HOSTS = [host for host in os.getenv('DJANGO_ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',') if host]

INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'django.contrib.auth',
    'rest_framework',
    'priorities.apps.PrioritiesConfig',
]

MIDDLEWARE = []

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': BASE_DIR / 'db.sqlite3',
    }
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

# ---------------------------------------------------------------------------
# Cache (backs the strategic score and override stores)
# ---------------------------------------------------------------------------

REDIS_URL = os.getenv('REDIS_URL')

if REDIS_URL:
    CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.redis.RedisCache',
            'LOCATION': REDIS_URL,
        }
    }
else:
    CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
            'LOCATION': 'prioritizer-local',
        }
    }

# ---------------------------------------------------------------------------
# Celery
# ---------------------------------------------------------------------------

CELERY_BROKER_URL = os.getenv('CELERY_BROKER_URL', REDIS_URL or 'memory://')
CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND', REDIS_URL or 'cache+memory://')
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_TIMEZONE = TIME_ZONE
CELERY_TASK_ALWAYS_EAGER = os.getenv('CELERY_TASK_ALWAYS_EAGER', 'False').lower() in ('1', 'true', 'yes')

# ---------------------------------------------------------------------------
# Strategic prioritization engine
# ---------------------------------------------------------------------------

OPENAI_API_KEY = os.getenv('OPENAI_API_KEY')

STRATEGIC_SCORING_MODEL = os.getenv('STRATEGIC_SCORING_MODEL', 'gpt-4o-mini')
STRATEGIC_SCORING_TIMEOUT = float(os.getenv('STRATEGIC_SCORING_TIMEOUT', '10'))
STRATEGIC_SCORING_BATCH_SIZE = int(os.getenv('STRATEGIC_SCORING_BATCH_SIZE', '10'))
STRATEGIC_RETRY_MAX_ATTEMPTS = int(os.getenv('STRATEGIC_RETRY_MAX_ATTEMPTS', '3'))
STRATEGIC_RETRY_BASE_DELAY = float(os.getenv('STRATEGIC_RETRY_BASE_DELAY', '1.0'))
STRATEGIC_STORE_TTL = int(os.getenv('STRATEGIC_STORE_TTL', str(7 * 24 * 60 * 60)))
STRATEGIC_STORE_CACHE_ALIAS = os.getenv('STRATEGIC_STORE_CACHE_ALIAS', 'default')
STRATEGIC_IMPACT_ESTIMATOR = os.getenv(
    'STRATEGIC_IMPACT_ESTIMATOR', 'priorities.engine.estimator.OpenAIImpactEstimator'
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

PRIORITIES_LOG_LEVEL = os.getenv('PRIORITIES_LOG_LEVEL', 'INFO')

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} {levelname} {name} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'loggers': {
        'priorities': {
            'handlers': ['console'],
            'level': PRIORITIES_LOG_LEVEL,
            'propagate': False,
        },
        'celery': {
            'handlers': ['console'],
            'level': 'INFO',
        },
    },
}
