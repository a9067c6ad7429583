"""MongoDB connection helpers."""

from __future__ import annotations

import logging
import time

from pymongo import ASCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import ServerSelectionTimeoutError

from .context import WorkflowSettings
from .db_models import CHARACTERS_COLLECTION, PAGES_COLLECTION, PROJECTS_COLLECTION

logger = logging.getLogger(__name__)

_mongo_clients: dict[tuple[str, bool], MongoClient] = {}


def _build_mock_client() -> MongoClient:
    import mongomock

    return mongomock.MongoClient()


def _initialise_mongo_client(settings: WorkflowSettings) -> MongoClient:
    cache_key = (settings.mongo_url, settings.mongo_use_mock)
    if cache_key in _mongo_clients:
        return _mongo_clients[cache_key]

    if settings.mongo_use_mock:
        client = _build_mock_client()
        _mongo_clients[cache_key] = client
        return client

    is_atlas = "mongodb.net" in settings.mongo_url
    client_options = {
        "appname": "bookflow",
        "serverSelectionTimeoutMS": 10000,
        "connectTimeoutMS": 10000,
    }
    if is_atlas:
        client_options.update({"retryWrites": True, "w": "majority", "retryReads": True})

    max_retries = 3
    for attempt in range(1, max_retries + 1):
        client = MongoClient(settings.mongo_url, **client_options)
        try:
            client.admin.command("ping")
        except ServerSelectionTimeoutError as exc:
            client.close()
            if attempt == max_retries:
                raise RuntimeError(
                    f"Failed to connect to MongoDB after {max_retries} attempts: {exc}"
                ) from exc
            # Exponential backoff: 1s, 2s
            delay = 2 ** (attempt - 1)
            logger.warning("MongoDB not reachable (attempt %s/%s), retrying in %ss", attempt, max_retries, delay)
            time.sleep(delay)
            continue

        _mongo_clients[cache_key] = client
        return client

    raise RuntimeError("Failed to connect to MongoDB")


def get_mongo_client(settings: WorkflowSettings) -> MongoClient:
    return _initialise_mongo_client(settings)


def get_mongo_database(settings: WorkflowSettings) -> Database:
    return get_mongo_client(settings)[settings.mongo_db_name]


def ensure_indexes(db: Database) -> None:
    """Create the indexes the workflow relies on."""

    projects = db[PROJECTS_COLLECTION]
    projects.create_index("status")

    characters = db[CHARACTERS_COLLECTION]
    characters.create_index([("project_id", ASCENDING), ("is_main", ASCENDING)])

    pages = db[PAGES_COLLECTION]
    pages.create_index([("project_id", ASCENDING), ("page_number", ASCENDING)], unique=True)


def close_mongo_clients() -> None:
    for client in _mongo_clients.values():
        client.close()
    _mongo_clients.clear()
