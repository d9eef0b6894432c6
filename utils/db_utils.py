import logging

import certifi
import pymongo

# Global cache for the MongoDB client to enable connection pooling across invocations
_CLIENT_CACHE = {}


def get_db_client(uri, **kwargs):
    """
    Returns a PyMongo client for `uri`.
    Uses a global cache to reuse the client across Azure Function invocations.
    """
    if not uri:
        # CRITICAL: Prevent fallback to localhost:27017
        error_msg = "MongoDB connection string not configured (MongoDb-Connection-String)."
        logging.critical(error_msg)
        raise RuntimeError(error_msg)

    if uri in _CLIENT_CACHE:
        return _CLIENT_CACHE[uri]

    if uri.startswith("mongodb+srv://"):
        kwargs.setdefault("tlsCAFile", certifi.where())
    kwargs.setdefault("serverSelectionTimeoutMS", 5000)

    try:
        client = pymongo.MongoClient(uri, **kwargs)
    except Exception as e:
        logging.critical(f"Failed to create MongoClient: {e}")
        raise
    _CLIENT_CACHE[uri] = client
    return client


def get_db(config):
    """
    Returns the database object named by the run configuration.
    """
    client = get_db_client(config.mongo_uri)
    return client[config.db_name]
