import re
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from bson import ObjectId

HIDDEN_FIELDS = {"password", "__v"}

_camel_boundary = re.compile(r"(?<=[a-z0-9])([A-Z])")


def to_snake_case(key: str) -> str:
    if not isinstance(key, str) or key.startswith("_"):
        return key
    return _camel_boundary.sub(r"_\1", key).lower()


def format_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bytes):
        return None
    if isinstance(value, dict):
        return format_document(value)
    if isinstance(value, (list, tuple)):
        return [format_value(entry) for entry in value]
    return value


def format_document(document) -> Optional[Dict]:
    """Convert a stored MongoDB document into its API representation.

    Identifiers become strings and are exposed both as ``_id`` and ``id``,
    camelCase keys become snake_case, datetimes become ISO strings and the
    first entry of ``images`` is promoted to ``image_url``.
    """
    if document is None:
        return None
    if hasattr(document, "to_dict") and not isinstance(document, dict):
        document = document.to_dict()
    if not isinstance(document, dict):
        return format_value(document)

    formatted: Dict = {}
    for key, value in document.items():
        if key in HIDDEN_FIELDS:
            continue
        formatted[to_snake_case(key)] = format_value(value)

    if formatted.get("_id") is not None:
        formatted["_id"] = str(formatted["_id"])
        formatted.setdefault("id", formatted["_id"])

    images = formatted.get("images")
    if not formatted.get("image_url") and isinstance(images, list) and images:
        formatted["image_url"] = images[0]

    return formatted


def format_documents(documents: Iterable) -> List[Dict]:
    return [format_document(document) for document in documents or []]
