"""Management command framework.

A command is a module in ``catalog/management/commands/`` exposing a
``Command`` class derived from ``BaseCommand``. ``manage.py <name>`` runs it
from the shell; ``call_command(name, ...)`` runs it from code and tests.
"""
import argparse
import pkgutil
import sys
from importlib import import_module
from pathlib import Path
from typing import Dict, List, Optional, Sequence, TextIO

from catalog.core.exceptions import CommandError
from catalog.core.logging import get_logger

logger = get_logger(__name__)

COMMANDS_PACKAGE = "catalog.management.commands"
COMMANDS_DIR = Path(__file__).resolve().parent / "commands"


class CommandParser(argparse.ArgumentParser):
    """Argument parser that raises CommandError instead of exiting.

    ``called_from_command_line`` restores the normal exit behavior for the
    shell entry point.
    """

    def __init__(self, *args, called_from_command_line: bool = False, **kwargs):
        self.called_from_command_line = called_from_command_line
        super().__init__(*args, **kwargs)

    def error(self, message):
        if self.called_from_command_line:
            super().error(message)
        raise CommandError(f"Error: {message}")


class BaseCommand:
    """Base class for management commands.

    Subclasses set ``help``, declare options in ``add_arguments`` and
    implement ``handle``. Output goes to ``self.stdout``/``self.stderr`` so
    tests can capture it.
    """

    help = ""

    def __init__(self, stdout: Optional[TextIO] = None, stderr: Optional[TextIO] = None):
        self.stdout = stdout or sys.stdout
        self.stderr = stderr or sys.stderr

    @property
    def name(self) -> str:
        return type(self).__module__.rsplit(".", 1)[-1]

    def create_parser(self, prog_name: str, called_from_command_line: bool = False) -> CommandParser:
        parser = CommandParser(
            prog=f"{Path(prog_name).name} {self.name}",
            description=self.help or None,
            called_from_command_line=called_from_command_line,
        )
        parser.add_argument(
            "-v", "--verbosity", type=int, choices=[0, 1, 2, 3], default=1,
            help="Verbosity level; 0=minimal output, 1=normal output, 2=verbose output, 3=very verbose output",
        )
        parser.add_argument("--traceback", action="store_true", help="Raise on CommandError exceptions.")
        self.add_arguments(parser)
        return parser

    def add_arguments(self, parser: CommandParser) -> None:
        """Hook for subclasses to add custom arguments."""

    def write(self, message: str = "") -> None:
        self.stdout.write(message + "\n")

    def run_from_argv(self, argv: Sequence[str]) -> int:
        """Parse ``argv`` (``[prog, command, *args]``) and run; returns the exit status."""
        parser = self.create_parser(argv[0], called_from_command_line=True)
        options = vars(parser.parse_args(argv[2:]))
        args = options.pop("args", ())
        try:
            self.execute(*args, **options)
        except CommandError as e:
            if options.get("traceback"):
                raise
            self.stderr.write(f"{type(e).__name__}: {e}\n")
            return e.returncode
        return 0

    def execute(self, *args, **options):
        logger.debug(f"Running command {self.name}", extra={"command": self.name})
        output = self.handle(*args, **options)
        if output:
            self.write(output)
        return output

    def handle(self, *args, **options):
        raise NotImplementedError("subclasses of BaseCommand must provide a handle() method")


def get_commands() -> List[str]:
    """Names of every available command, sorted."""
    return sorted(
        module.name
        for module in pkgutil.iter_modules([str(COMMANDS_DIR)])
        if not module.ispkg and not module.name.startswith("_")
    )


def load_command_class(name: str) -> BaseCommand:
    """Instantiate the ``Command`` of a command module.

    Raises:
        CommandError: If no such command exists
    """
    if name not in get_commands():
        raise CommandError(f"Unknown command: {name!r}")
    module = import_module(f"{COMMANDS_PACKAGE}.{name}")
    return module.Command()


def call_command(name: str, *args, stdout: Optional[TextIO] = None, stderr: Optional[TextIO] = None, **options):
    """Run a command from code with options given as keyword arguments.

    Options not passed take the parser defaults, exactly as on the command
    line. Positional ``args`` go through the parser as well.

    Example:
        >>> call_command("loaddata", "products", verbosity=0)
    """
    command = load_command_class(name)
    if stdout is not None:
        command.stdout = stdout
    if stderr is not None:
        command.stderr = stderr

    parser = command.create_parser("manage.py")
    dest_map: Dict[str, str] = {
        min(action.option_strings).lstrip("-").replace("-", "_"): action.dest
        for action in parser._actions
        if action.option_strings
    }
    arg_options = {dest_map.get(key, key): value for key, value in options.items()}

    defaults = vars(parser.parse_args([str(a) for a in args]))
    defaults.update(arg_options)
    positional = defaults.pop("args", ())
    return command.execute(*positional, **defaults)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for ``manage.py`` and the ``catalog-manage`` script."""
    argv = list(sys.argv if argv is None else argv)
    prog = Path(argv[0]).name if argv else "manage.py"
    subcommand = argv[1] if len(argv) > 1 else "help"

    if subcommand in ("help", "-h", "--help"):
        if len(argv) > 2:
            try:
                command = load_command_class(argv[2])
            except CommandError as e:
                sys.stderr.write(f"{e}\nType '{prog} help' for usage.\n")
                return 1
            command.create_parser(prog).print_help()
            return 0
        sys.stdout.write(
            f"Type '{prog} help <subcommand>' for help on a specific subcommand.\n\n"
            "Available subcommands:\n"
        )
        for name in get_commands():
            sys.stdout.write(f"    {name}\n")
        return 0

    try:
        command = load_command_class(subcommand)
    except CommandError as e:
        sys.stderr.write(f"{e}\nType '{prog} help' for usage.\n")
        return 1
    return command.run_from_argv(argv)
