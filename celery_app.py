from partsmarket import create_app
from partsmarket.celery_app import create_celery_app

flask_app = create_app()
celery = create_celery_app(flask_app)

import partsmarket.tasks.inventory_tasks  # noqa: E402,F401
import partsmarket.tasks.ledger_tasks  # noqa: E402,F401
