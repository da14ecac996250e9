from celery import Celery
import os, importlib
from celery.schedules import crontab

# Override where the factory lives if it ever moves (e.g. wsgi:create_app)
FLASK_FACTORY = os.getenv("FLASK_FACTORY", "app:create_app")


def _load_flask_app():
    module_name, _, factory_name = FLASK_FACTORY.partition(":")
    module = importlib.import_module(module_name)
    factory = getattr(module, factory_name or "create_app", None)
    if factory is not None:
        return factory()
    if hasattr(module, "app"):
        return getattr(module, "app")
    raise RuntimeError(f"Could not find factory '{factory_name}' or 'app' in module '{module_name}'.")


celery = Celery(
    __name__,
    include=[
        "billing.tasks",
    ],
)
celery_app = celery
celery.conf.update(
    broker_url=os.getenv('CELERY_BROKER_URL', 'redis://127.0.0.1:6379/0'),
    result_backend=os.getenv('CELERY_RESULT_BACKEND', 'redis://127.0.0.1:6379/1'),
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone=os.getenv('CELERY_TIMEZONE', 'UTC'),
    enable_utc=True,
    task_ignore_result=False,
    worker_max_tasks_per_child=100,
    broker_connection_retry_on_startup=True,
)
celery.conf.beat_schedule = {
    "billing-sync-subscriptions-hourly": {
        "task": "billing.sync_subscriptions",
        "schedule": crontab(minute=0),
    },
    "billing-sweep-abandoned": {
        "task": "billing.sweep_abandoned",
        "schedule": crontab(minute=20, hour="*/6"),
    },
    "billing-prune-processed-events-nightly": {
        "task": "billing.prune_processed_events",
        "schedule": crontab(hour=3, minute=0),
    },
}


# Ensure every Celery task runs inside Flask app context
class AppContextTask(celery.Task):
    _flask_app = None

    def __call__(self, *args, **kwargs):
        if AppContextTask._flask_app is None:
            AppContextTask._flask_app = _load_flask_app()
        with AppContextTask._flask_app.app_context():
            return self.run(*args, **kwargs)


celery.Task = AppContextTask
