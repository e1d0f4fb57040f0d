import time

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError
from django.core.servers.basehttp import get_internal_wsgi_application, run

from delivery.bootstrap import bootstrap_delivery


class Command(BaseCommand):
    help = (
        "Load corridors and traffic, start today's delivery session and run the timers. "
        "With --serve the HTTP API runs in the same process and shares the session."
    )

    def add_arguments(self, parser):
        parser.add_argument("--geojson", default=settings.CORRIDOR_GEOJSON_PATH)
        parser.add_argument("--wfs", action="store_true", help="Also page corridors from the WFS service.")
        parser.add_argument("--no-session", action="store_true", help="Do not start a delivery session.")
        parser.add_argument("--auto-dispatch", action="store_true")
        parser.add_argument("--serve", metavar="ADDR:PORT", help="Serve the HTTP API, e.g. 0.0.0.0:8000.")

    def handle(self, *args, **options):
        address = None
        if options["serve"]:
            host, _, port = options["serve"].rpartition(":")
            if not port.isdigit():
                raise CommandError(f"Invalid --serve address: {options['serve']}")
            address = (host or "127.0.0.1", int(port))

        coordinator = bootstrap_delivery(
            geojson_path=options["geojson"],
            use_wfs=options["wfs"],
            start_session=not options["no_session"],
            auto_dispatch=options["auto_dispatch"],
        )
        self.stdout.write(f"Corridors loaded: {len(coordinator.store)}, with traffic: {len(coordinator.traffic)}")
        if coordinator.session.config is None and not options["no_session"]:
            self.stderr.write("No path geometry for the primary path; session not started")

        try:
            if address:
                self.stdout.write(self.style.SUCCESS(f"Delivery API on http://{address[0]}:{address[1]}/"))
                run(address[0], address[1], get_internal_wsgi_application(), threading=True)
            else:
                self.stdout.write(self.style.SUCCESS("Delivery coordinator running. Press Ctrl+C to stop."))
                while True:
                    time.sleep(1)
        except KeyboardInterrupt:
            self.stdout.write("Shutting down...")
        finally:
            coordinator.shutdown()
