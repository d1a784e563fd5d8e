"""MongoDB client and collection helpers shared by the relay components."""

import logging

import pymongo
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import CollectionInvalid

from config.settings import MongoSettings

logger = logging.getLogger(__name__)


def get_client(mongo: MongoSettings) -> pymongo.MongoClient:
    """Create a MongoClient from settings. Caller is responsible for closing it.

    Looking up `pymongo.MongoClient` at call time allows tests to monkeypatch
    it (e.g., with mongomock) and have our code pick it up.
    """
    client = pymongo.MongoClient(
        mongo.connection_string,
        appname=mongo.app_name,
        connectTimeoutMS=mongo.connect_timeout * 1000,
        serverSelectionTimeoutMS=mongo.server_selection_timeout * 1000,
    )
    logger.info(
        "Created MongoDB client",
        extra={"database": mongo.database, "app_name": mongo.app_name}
    )
    return client


def get_collection(client: pymongo.MongoClient, database: str, name: str) -> Collection:
    """Return a handle on `database.name`."""
    db: Database = client[database]
    return db[name]


def ensure_collection(client: pymongo.MongoClient, database: str, name: str) -> Collection:
    """Create `database.name` if it does not exist yet and return it.

    Cosmos DB rejects inserts into undeclared collections on some account
    types, so the token collection is created up front.
    """
    db: Database = client[database]
    if name not in db.list_collection_names():
        try:
            db.create_collection(name)
            logger.info("Created collection", extra={"database": database, "collection": name})
        except CollectionInvalid:
            # Another process created it between the check and the create
            logger.debug("Collection already exists", extra={"database": database, "collection": name})
    return db[name]
