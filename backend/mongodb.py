import os
import time
from typing import Dict, Optional

from pymongo import MongoClient
from pymongo.errors import PyMongoError

DEFAULT_CONNECTION_STRING = "mongodb://localhost:27017/ecommerce_db"
DEFAULT_DATABASE_NAME = "ecommerce_db"
EXPECTED_COLLECTIONS = ("users", "products", "categories", "orders", "carts")

CLIENT_OPTIONS = {
    "serverSelectionTimeoutMS": 30000,
    "socketTimeoutMS": 45000,
    "connectTimeoutMS": 30000,
    "maxPoolSize": 10,
    "minPoolSize": 5,
    "retryWrites": True,
    "retryReads": True,
    "heartbeatFrequencyMS": 10000,
}


def get_connection_string() -> str:
    return (os.getenv("DB_CONNECTION_STRING") or "").strip() or DEFAULT_CONNECTION_STRING


def client_options(**overrides) -> Dict[str, object]:
    options = dict(CLIENT_OPTIONS)
    options.update(overrides)
    if options.get("minPoolSize", 0) > options.get("maxPoolSize", 0):
        options["minPoolSize"] = options["maxPoolSize"]
    return options


def describe_connection_string(uri: Optional[str]) -> str:
    """Return the host and database part of ``uri`` without credentials."""
    if not uri:
        return ""
    candidate = str(uri).strip()
    if "@" in candidate:
        return candidate.split("@", 1)[1]
    if "://" in candidate:
        return candidate.split("://", 1)[1]
    return candidate


def connect(uri: Optional[str] = None, **overrides) -> MongoClient:
    return MongoClient(uri or get_connection_string(), **client_options(**overrides))


def get_database(client, name: Optional[str] = None):
    if name:
        return client[name]
    return client.get_default_database(default=DEFAULT_DATABASE_NAME)


def ping(db) -> Optional[float]:
    """Round-trip a ``ping`` command; returns milliseconds or ``None``."""
    started = time.perf_counter()
    try:
        db.command("ping")
    except PyMongoError:
        return None
    return round((time.perf_counter() - started) * 1000, 2)


def connection_state(db) -> Dict[str, object]:
    if db is None:
        return {"state": "disconnected", "name": None}
    latency = ping(db)
    return {
        "state": "connected" if latency is not None else "disconnected",
        "name": getattr(db, "name", None),
        "latency_ms": latency,
    }


def count_collections(db, names=EXPECTED_COLLECTIONS) -> Dict[str, int]:
    return {name: db[name].count_documents({}) for name in names}
