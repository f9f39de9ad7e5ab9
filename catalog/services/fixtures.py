"""Fixture loading and dumping.

A fixture is a list of serialized objects::

    [
      {"model": "catalog.author", "pk": 1, "fields": {"name": "Ursula K. Le Guin"}},
      {"model": "catalog.book", "pk": 1,
       "fields": {"title": "The Dispossessed", "isbn": "9780061054884", "author": 1}}
    ]

Foreign keys are written under the relation name and hold the related
primary key. Dates and datetimes are ISO-8601 strings and decimals are
strings. Supported serializations are JSON (``.json``) and YAML
(``.yaml``/``.yml``), each optionally gzip-compressed (``.gz``).
"""
import gzip
import json
import os
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import yaml
from sqlalchemy import inspect, select
from sqlalchemy.orm import MANYTOONE, Session

from catalog.core.config import settings
from catalog.core.exceptions import FixtureError
from catalog.core.logging import LogTimer, get_logger
from catalog.domain.models import MODEL_REGISTRY, get_model, model_label
from catalog.services.queries import coerce_value

logger = get_logger(__name__)

APP_FIXTURE_DIR = Path(__file__).resolve().parents[1] / "fixtures"

SERIALIZATION_FORMATS = {
    "json": (".json",),
    "yaml": (".yaml", ".yml"),
}
COMPRESSION_FORMATS = ("", ".gz")


@dataclass
class LoadResult:
    objects: int = 0
    fixtures: List[str] = field(default_factory=list)
    models: set = field(default_factory=set)


# -----------------
# LOCATING FIXTURES
# -----------------

def fixture_dirs() -> List[Path]:
    """Directories searched for bare fixture names, in search order."""
    dirs = [APP_FIXTURE_DIR]
    for entry in settings.fixture_dirs:
        path = Path(entry).resolve()
        if path == APP_FIXTURE_DIR:
            raise FixtureError(
                f"'{path}' is a default fixture directory for the catalog app "
                "and cannot be listed in FIXTURE_DIRS."
            )
        if path in dirs:
            raise FixtureError("FIXTURE_DIRS contains duplicates.")
        dirs.append(path)
    return dirs


def _format_of(path: Path) -> Optional[str]:
    suffixes = path.suffixes
    if suffixes and suffixes[-1] == ".gz":
        suffixes = suffixes[:-1]
    if not suffixes:
        return None
    for fmt, extensions in SERIALIZATION_FORMATS.items():
        if suffixes[-1] in extensions:
            return fmt
    return None


def _candidates(name: str) -> List[str]:
    path = Path(name)
    if _format_of(path) is not None:
        return [name]
    if path.suffix and path.suffix != ".gz":
        raise FixtureError(f"Problem installing fixture '{name}': {path.suffix[1:]} is not a known serialization format.")
    return [
        f"{name}{ext}{comp}"
        for extensions in SERIALIZATION_FORMATS.values()
        for ext in extensions
        for comp in COMPRESSION_FORMATS
    ]


def find_fixture(name: str) -> List[Path]:
    """Locate the files a fixture name refers to.

    Paths (absolute, or containing a directory separator) are used as is.
    Bare names are searched in the app fixture directory, then each
    ``FIXTURE_DIRS`` entry. Every directory that has a match contributes one
    file; two matches in the same directory are ambiguous.

    Raises:
        FixtureError: If nothing matches, or a directory has several matches
    """
    if os.path.isabs(name) or os.sep in name or "/" in name:
        directory, basename = os.path.split(name)
        search_dirs = [Path(directory or ".")]
    else:
        basename = name
        search_dirs = fixture_dirs()

    candidates = _candidates(basename)
    found: List[Path] = []
    for directory in search_dirs:
        matches = [directory / c for c in candidates if (directory / c).is_file()]
        if len(matches) > 1:
            raise FixtureError(
                f"Multiple fixtures named '{basename}' in {directory}. Aborting."
            )
        found.extend(matches)

    if not found:
        raise FixtureError(f"No fixture named '{basename}' found.")
    return found


# -----------------
# (DE)SERIALIZATION
# -----------------

def _read(path: Path) -> str:
    if path.suffix == ".gz":
        with gzip.open(path, "rt", encoding="utf-8") as fh:
            return fh.read()
    return path.read_text(encoding="utf-8")


def parse_fixture(text: str, fmt: str) -> List[Dict[str, Any]]:
    """Parse fixture text into a list of object dicts.

    Raises:
        FixtureError: If the text is not a list of ``{"model", "fields"}`` dicts
    """
    try:
        data = json.loads(text) if fmt == "json" else yaml.safe_load(text)
    except (ValueError, yaml.YAMLError) as e:
        raise FixtureError(f"Could not parse {fmt} fixture: {e}") from e

    if data is None:
        return []
    if not isinstance(data, list):
        raise FixtureError("Fixture must contain a list of objects.")
    for obj in data:
        if not isinstance(obj, dict) or "model" not in obj:
            raise FixtureError(f"Invalid fixture object: {obj!r}")
    return data


def _python_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def serialize_instance(instance) -> Dict[str, Any]:
    """Serialize one model instance to the fixture object format."""
    mapper = inspect(type(instance))
    pk_key = mapper.primary_key[0].key
    fk_names = _foreign_key_names(type(instance))

    fields = {}
    for column in mapper.columns:
        if column.key == pk_key:
            continue
        name = fk_names.get(column.key, column.key)
        fields[name] = _python_value(getattr(instance, column.key))

    return {
        "model": model_label(type(instance)),
        "pk": getattr(instance, pk_key),
        "fields": fields,
    }


def _foreign_key_names(model) -> Dict[str, str]:
    """Map FK column keys (``author_id``) to relation names (``author``)."""
    names = {}
    for relationship in inspect(model).relationships:
        if relationship.direction is not MANYTOONE:
            continue
        for column in relationship.local_columns:
            names[column.key] = relationship.key
    return names


def _build_instance(session: Session, obj: Dict[str, Any], ignore_missing_fields: bool, pending: Dict):
    try:
        model = get_model(obj["model"])
    except LookupError as e:
        raise FixtureError(str(e)) from None

    mapper = inspect(model)
    pk_key = mapper.primary_key[0].key
    relation_to_column = {v: k for k, v in _foreign_key_names(model).items()}

    values = {}
    for name, raw in (obj.get("fields") or {}).items():
        column_key = relation_to_column.get(name, name)
        if column_key not in mapper.columns:
            if ignore_missing_fields:
                continue
            raise FixtureError(f"{model.__name__} has no field named '{name}'")
        column = mapper.columns[column_key]
        try:
            values[column_key] = coerce_value(column, raw) if isinstance(raw, str) else raw
        except ValueError as e:
            raise FixtureError(f"{obj['model']}(pk={obj.get('pk')}): field '{name}': {e}") from e

    pk = obj.get("pk")
    instance = None
    if pk is not None:
        pk = coerce_value(mapper.primary_key[0], pk) if isinstance(pk, str) else pk
        instance = pending.get((model, pk)) or session.get(model, pk)
    if instance is None:
        instance = model()
        if pk is not None:
            setattr(instance, pk_key, pk)
            pending[(model, pk)] = instance
    for key, value in values.items():
        setattr(instance, key, value)
    return model, instance


# -----------------
# LOAD / DUMP
# -----------------

def _load_one(
    session: Session,
    name: str,
    result: LoadResult,
    pending: Dict,
    ignore_missing_fields: bool,
    excluded_apps: set,
    excluded_models: set,
) -> None:
    for path in find_fixture(name):
        objects = parse_fixture(_read(path), _format_of(path))
        loaded = 0
        for obj in objects:
            label = obj["model"].lower()
            if label in excluded_models or label.split(".")[0] in excluded_apps:
                continue
            model, instance = _build_instance(session, obj, ignore_missing_fields, pending)
            session.add(instance)
            result.models.add(model)
            loaded += 1
        result.objects += loaded
        result.fixtures.append(str(path))
        logger.info(
            f"Installed {loaded} object(s) from {path.name}",
            extra={"fixture": str(path)}
        )


def load_fixtures(
    session: Session,
    names: Sequence[str],
    ignore_missing_fields: bool = False,
    exclude: Iterable[str] = (),
) -> LoadResult:
    """Install every object from every named fixture in one transaction.

    Objects whose primary key already exists are updated in place.

    Args:
        session: Database session; committed on success, rolled back on error
        names: Fixture names or paths
        ignore_missing_fields: Skip fields the model does not have
        exclude: Labels to skip, ``"catalog"`` (app) or ``"catalog.book"``

    Raises:
        FixtureError: On any lookup, parse or database error
    """
    if not names:
        raise FixtureError("No database fixture specified. Please provide the path of at least one fixture.")

    excluded_apps, excluded_models = _parse_excludes(exclude)
    result = LoadResult()
    pending: Dict = {}

    with LogTimer(logger, "loaddata"):
        try:
            with session.no_autoflush:
                for name in names:
                    _load_one(session, name, result, pending, ignore_missing_fields,
                              excluded_apps, excluded_models)
            # A single flush lets the unit of work order inserts by foreign keys.
            session.flush()
            session.commit()
        except FixtureError:
            session.rollback()
            raise
        except Exception as e:
            session.rollback()
            raise FixtureError(f"Problem installing fixtures: {e}") from e

    return result


def _parse_excludes(exclude: Iterable[str]):
    apps, models = set(), set()
    for label in exclude:
        label = label.lower()
        if "." in label:
            if label not in MODEL_REGISTRY:
                raise FixtureError(f"Unknown model: {label}")
            models.add(label)
        else:
            if not any(key.split(".")[0] == label for key in MODEL_REGISTRY):
                raise FixtureError(f"No installed app with label '{label}'.")
            apps.add(label)
    return apps, models


def _selected_models(labels: Optional[Sequence[str]], exclude: Iterable[str]) -> List[type]:
    excluded_apps, excluded_models = _parse_excludes(exclude)
    selected: List[str] = []
    if labels:
        for label in labels:
            label = label.lower()
            if "." in label:
                get_model(label)
                selected.append(label)
            else:
                matches = [key for key in MODEL_REGISTRY if key.split(".")[0] == label]
                if not matches:
                    raise FixtureError(f"No installed app with label '{label}'.")
                selected.extend(matches)
    else:
        selected = list(MODEL_REGISTRY)

    return [
        MODEL_REGISTRY[label]
        for label in sorted(dict.fromkeys(selected))
        if label not in excluded_models and label.split(".")[0] not in excluded_apps
    ]


def dump_fixtures(
    session: Session,
    labels: Optional[Sequence[str]] = None,
    exclude: Iterable[str] = (),
    fmt: str = "json",
    indent: Optional[int] = None,
    pks: Optional[Sequence[Any]] = None,
) -> str:
    """Serialize rows to fixture text.

    Objects are ordered by model label, then primary key.

    Raises:
        FixtureError: On unknown labels/format, or ``pks`` with several models
    """
    if fmt not in SERIALIZATION_FORMATS:
        raise FixtureError(f"Unknown serialization format: {fmt}")

    models = _selected_models(labels, exclude)
    if pks is not None and (not labels or len(labels) != 1 or "." not in labels[0]):
        raise FixtureError("You can only use --pks option with one model")

    objects = []
    for model in models:
        pk_column = inspect(model).primary_key[0]
        query = select(model).order_by(pk_column)
        if pks is not None:
            query = query.where(pk_column.in_([coerce_value(pk_column, str(pk)) for pk in pks]))
        for instance in session.execute(query).scalars():
            objects.append(serialize_instance(instance))

    logger.info(f"Dumped {len(objects)} object(s)", extra={"operation": "dumpdata"})

    if fmt == "json":
        return json.dumps(objects, indent=indent, ensure_ascii=False)
    return yaml.safe_dump(objects, sort_keys=False, allow_unicode=True, indent=indent or 2)


def write_fixture(text: str, output: str) -> None:
    """Write fixture text to a file, gzip-compressed for ``.gz`` paths."""
    path = Path(output)
    if path.suffix == ".gz":
        with gzip.open(path, "wt", encoding="utf-8") as fh:
            fh.write(text)
    else:
        path.write_text(text, encoding="utf-8")
