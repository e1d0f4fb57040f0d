import os
import sys
import threading

from django.apps import AppConfig
from django.conf import settings


def _is_serving_process(argv):
    # The runserver autoreloader parent only watches files; its child serves.
    if len(argv) > 1 and argv[1] == "runserver":
        return os.environ.get("RUN_MAIN") == "true"
    if len(argv) > 1 and os.path.basename(argv[0]) == "manage.py":
        return False
    return True


class DeliveryAppConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "delivery"
    verbose_name = "Concrete delivery"

    def ready(self):
        if not getattr(settings, "DELIVERY_AUTOSTART", False):
            return
        if not _is_serving_process(sys.argv):
            return
        from .bootstrap import bootstrap_in_background

        threading.Thread(
            target=bootstrap_in_background, name="delivery-bootstrap", daemon=True
        ).start()
