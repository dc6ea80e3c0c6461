"""
Celery worker entry point.

Run with ``celery -A main worker --beat`` from this directory; the API
source is mounted at /api and shared with the web container.
"""
import sys

sys.path.insert(0, '/api')

from celery.signals import worker_process_init  # noqa: E402

from core.cache import reset_redis_client  # noqa: E402
from core.database import dispose_engine  # noqa: E402
from core.logging import setup_logging  # noqa: E402
from tasks import celery_app  # noqa: E402

setup_logging()


@worker_process_init.connect
def reset_connections(**kwargs):
    # Pool connections and the Redis socket must not be shared with the parent.
    dispose_engine()
    reset_redis_client()


app = celery_app
