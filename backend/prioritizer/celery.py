import os
from dotenv import load_dotenv
from django.conf import settings
load_dotenv()  # same .env as settings.py
from celery import Celery

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'prioritizer.settings')

app = Celery('prioritizer')

# - namespace='CELERY' means all celery-related configuration keys
#   should have a `CELERY_` prefix.
app.config_from_object('django.conf:settings', namespace='CELERY')

# Load task modules from all registered Django apps.
app.autodiscover_tasks(lambda: settings.INSTALLED_APPS)
# Ranking runs live in priorities/engine/celery_tasks.py
app.autodiscover_tasks(['priorities.engine'], related_name='celery_tasks')
