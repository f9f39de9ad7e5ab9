"""Serve the application with uvicorn."""
import uvicorn

from catalog.core.config import settings
from catalog.management.base import BaseCommand


class Command(BaseCommand):
    help = "Starts a lightweight web server for development."

    def add_arguments(self, parser):
        parser.add_argument("--host", default="127.0.0.1", help="Interface to bind.")
        parser.add_argument("--port", type=int, default=8000, help="Port to listen on.")
        parser.add_argument(
            "--noreload", action="store_false", dest="use_reloader",
            help="Tells the server NOT to use the auto-reloader.",
        )

    def handle(self, *args, **options):
        host = options.get("host", "127.0.0.1")
        port = options.get("port", 8000)
        self.write(f"Starting development server at http://{host}:{port}/")
        uvicorn.run(
            "main:app",
            host=host,
            port=port,
            reload=options.get("use_reloader", True),
            log_level=settings.log_level.lower(),
        )
