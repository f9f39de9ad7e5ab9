"""Create a staff account with every permission."""
import getpass
import os

from catalog.core.auth import create_superuser, get_user_by_username
from catalog.core.exceptions import CommandError
from catalog.infrastructure.database import session_scope
from catalog.management.base import BaseCommand

PASSWORD_ENV = "SUPERUSER_PASSWORD"
MIN_PASSWORD_LENGTH = 8


class Command(BaseCommand):
    help = "Used to create a superuser."

    def add_arguments(self, parser):
        parser.add_argument("--username", help="Specifies the login for the superuser.")
        parser.add_argument("--email", default="", help="Specifies the email for the superuser.")
        parser.add_argument(
            "--password",
            help=f"Password for the superuser. Falls back to ${PASSWORD_ENV}, then a prompt.",
        )
        parser.add_argument(
            "--noinput", "--no-input", action="store_false", dest="interactive",
            help="Do NOT prompt for input. Without a password the account cannot log in with one.",
        )

    def _prompt_password(self) -> str:
        while True:
            password = getpass.getpass("Password: ")
            if password != getpass.getpass("Password (again): "):
                self.stderr.write("Error: Your passwords didn't match.\n")
                continue
            if len(password) < MIN_PASSWORD_LENGTH:
                self.stderr.write(
                    f"This password is too short. It must contain at least {MIN_PASSWORD_LENGTH} characters.\n"
                )
                continue
            return password

    def handle(self, *args, **options):
        username = options.get("username")
        interactive = options.get("interactive", True)

        if not username:
            if not interactive:
                raise CommandError("You must use --username with --noinput.")
            username = input("Username: ").strip()
            if not username:
                raise CommandError("Username cannot be blank.")

        password = options.get("password") or os.getenv(PASSWORD_ENV)
        if password and len(password) < MIN_PASSWORD_LENGTH:
            raise CommandError(
                f"This password is too short. It must contain at least {MIN_PASSWORD_LENGTH} characters."
            )

        with session_scope() as session:
            if get_user_by_username(session, username) is not None:
                raise CommandError("That username is already taken.")
            if not password and interactive:
                password = self._prompt_password()
            create_superuser(session, username, password, email=options.get("email") or "")

        if options.get("verbosity", 1):
            self.write("Superuser created successfully.")
