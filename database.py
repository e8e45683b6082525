"""
MongoDB connection

Reads DATABASE_URL and DATABASE_NAME from the environment. When either is
missing ``client`` and ``db`` stay None and the service falls back to the
in-memory store.
"""

import logging
import os

from pymongo import MongoClient

logger = logging.getLogger(__name__)

client = None
db = None

database_url = os.getenv("DATABASE_URL")
database_name = os.getenv("DATABASE_NAME")
use_transactions = os.getenv("DATABASE_TRANSACTIONS", "true").lower() not in ("0", "false", "no")

if database_url and database_name:
    client = MongoClient(database_url, tz_aware=True)
    db = client[database_name]
    logger.info("Using MongoDB database %s", database_name)
