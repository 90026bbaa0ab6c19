"""Worker entrypoint: ``celery -A celery_app.celery worker --beat``."""

from tianguis import create_app
from tianguis.celery_app import create_celery_app

flask_app = create_app()
celery = create_celery_app(flask_app)
