"""
File-backed catalog source.

Reads movie records ``{id, title, genre, poster_link}`` from a JSON
array or a CSV file with a header row. Any failure to produce a usable
catalog raises CatalogError; ranking without a catalog is meaningless.
"""

import os
import csv
import json
import logging
from typing import Any, Dict, Iterable, List

from .errors import CatalogError
from .models import CatalogItem, is_valid_identifier

logger = logging.getLogger(__name__)


def load_catalog(path: str) -> List[CatalogItem]:
    """
    Load catalog items from ``.json`` or ``.csv``.

    Raises:
        CatalogError: Unreadable file, malformed content, a record missing
            a required field, an identifier that is not int/str, or a
            duplicate identifier.
    """
    if not os.path.exists(path):
        raise CatalogError(f"Catalog not found: {path}")

    extension = os.path.splitext(path)[1].lower()
    try:
        with open(path, "r", encoding="utf-8", newline="") as f:
            if extension == ".csv":
                records = [_coerce_csv_record(row) for row in csv.DictReader(f)]
            else:
                records = json.load(f)
    except (OSError, json.JSONDecodeError, csv.Error, UnicodeDecodeError) as e:
        raise CatalogError(f"Could not read catalog {path}: {e}") from e

    if isinstance(records, dict) and "movies" in records:
        records = records["movies"]
    if not isinstance(records, list):
        raise CatalogError(f"Catalog {path} must contain a list of records")

    items = records_to_items(records)
    logger.info(f"Loaded {len(items)} catalog items from {path}")
    return items


def records_to_items(records: Iterable[Dict[str, Any]]) -> List[CatalogItem]:
    items = []
    seen = set()
    for position, record in enumerate(records):
        if not isinstance(record, dict):
            raise CatalogError(f"Record {position} is not an object")
        try:
            item = CatalogItem.from_record(record)
        except KeyError as e:
            raise CatalogError(f"Record {position} is missing field {e}") from None
        if not is_valid_identifier(item.identifier):
            raise CatalogError(
                f"Record {position} has an invalid identifier {item.identifier!r}; "
                f"expected an integer or string"
            )
        if item.identifier in seen:
            raise CatalogError(f"Duplicate catalog identifier: {item.identifier!r}")
        seen.add(item.identifier)
        items.append(item)
    return items


def _coerce_csv_record(row: Dict[str, str]) -> Dict[str, Any]:
    # Numeric CSV ids become ints so they sort numerically.
    record = dict(row)
    for key in ("id", "identifier"):
        value = record.get(key)
        if isinstance(value, str) and value.strip().isdigit():
            record[key] = int(value)
    return record
