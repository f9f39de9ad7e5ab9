"""Output the contents of the database as a fixture."""
from catalog.core.exceptions import CommandError, FixtureError
from catalog.infrastructure.database import session_scope
from catalog.management.base import BaseCommand
from catalog.services.fixtures import SERIALIZATION_FORMATS, dump_fixtures, write_fixture


class Command(BaseCommand):
    help = (
        "Output the contents of the database as a fixture of the given format "
        "(using each model's default manager unless --all is specified)."
    )

    def add_arguments(self, parser):
        parser.add_argument(
            "args", metavar="app_label[.ModelName]", nargs="*",
            help="Restricts dumped data to the specified app_label or app_label.ModelName.",
        )
        parser.add_argument(
            "--format", default="json", choices=sorted(SERIALIZATION_FORMATS),
            help="Specifies the output serialization format for fixtures.",
        )
        parser.add_argument(
            "--indent", type=int,
            help="Specifies the indent level to use when pretty-printing output.",
        )
        parser.add_argument(
            "-e", "--exclude", action="append", default=[],
            help="An app_label or app_label.ModelName to exclude (use multiple --exclude to exclude multiple apps/models).",
        )
        parser.add_argument(
            "--pks", dest="primary_keys",
            help="Only dump objects with given primary keys. Accepts a comma-separated list of keys. "
                 "This option only works when you specify one model.",
        )
        parser.add_argument("-o", "--output", help="Specifies file to which the output is written.")

    def handle(self, *app_labels, **options):
        primary_keys = options.get("primary_keys")
        pks = [pk.strip() for pk in primary_keys.split(",")] if primary_keys else None

        try:
            with session_scope() as session:
                text = dump_fixtures(
                    session,
                    labels=list(app_labels) or None,
                    exclude=options.get("exclude") or (),
                    fmt=options.get("format", "json"),
                    indent=options.get("indent"),
                    pks=pks,
                )
        except (FixtureError, LookupError) as e:
            raise CommandError(f"Unable to serialize database: {e}") from e

        output = options.get("output")
        if output:
            write_fixture(text, output)
            return None
        return text
