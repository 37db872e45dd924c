"""
Configuration loading and MongoDB connection setup.

Configuration is read from a YAML file (``MONGO_QUEUE_CONFIG_PATH`` or
``./config.yaml``). String values may reference environment variables as
``${VAR}``; a ``.env`` file is loaded first. Example:

    mongodb:
      host: localhost
      port: 27017
      username: queue
      password: ${MONGO_PASSWORD}
      db_name: queue
      collection: messages
      options:
        authSource: admin
    queue:
      reset_duration: 300
      wait_duration: 3
      poll_duration: 0.2
      retry_delay: 60
"""

import copy
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import quote_plus

import yaml
from dotenv import load_dotenv
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from .errors import ConfigurationError
from .queue import Queue

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "MONGO_QUEUE_CONFIG_PATH"
DEFAULT_CONFIG_PATH = "./config.yaml"

DEFAULT_CONFIG: Dict[str, Any] = {
    "mongodb": {
        "connection_string": None,
        "host": "localhost",
        "port": 27017,
        "username": None,
        "password": None,
        "db_name": "mongo_queue",
        "collection": "messages",
        "options": {},
        "server_selection_timeout_ms": 5000,
    },
    "queue": {
        "reset_duration": 300.0,
        "wait_duration": 3.0,
        "poll_duration": 0.2,
        "retry_delay": 60.0,
    },
}

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def _expand_env(value: Any) -> Any:
    """Replace ${VAR} references in strings, recursively."""
    if isinstance(value, str):
        return _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {key: _expand_env(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_expand_env(item) for item in value]
    return value


def _merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class Config:
    """Queue configuration backed by a YAML file and the environment."""

    def __init__(self, config_path: Optional[str] = None):
        """
        Load configuration.

        Args:
            config_path: Path to the YAML file. Falls back to
                MONGO_QUEUE_CONFIG_PATH, then ./config.yaml. A missing file
                means defaults.
        """
        load_dotenv()

        self.config_path = config_path or os.environ.get(CONFIG_PATH_ENV, DEFAULT_CONFIG_PATH)
        self.client = None

        file_config = {}
        path = Path(self.config_path)
        if path.exists():
            try:
                with open(path, "r") as f:
                    file_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {self.config_path}: {str(e)}") from e
            if not isinstance(file_config, dict):
                raise ConfigurationError(f"{self.config_path} must contain a mapping")
            logger.debug(f"Loaded configuration from {self.config_path}")
        else:
            logger.debug(f"No configuration file at {self.config_path}, using defaults")

        self.config = _merge(DEFAULT_CONFIG, _expand_env(file_config))
        self._apply_env_overrides()
        self._validate()

    def _apply_env_overrides(self) -> None:
        mongodb = self.config["mongodb"]
        if os.environ.get("MONGO_QUEUE_URI"):
            mongodb["connection_string"] = os.environ["MONGO_QUEUE_URI"]
        if os.environ.get("MONGO_QUEUE_DB"):
            mongodb["db_name"] = os.environ["MONGO_QUEUE_DB"]
        if os.environ.get("MONGO_QUEUE_COLLECTION"):
            mongodb["collection"] = os.environ["MONGO_QUEUE_COLLECTION"]

    def _validate(self) -> None:
        mongodb = self.config.get("mongodb")
        queue = self.config.get("queue")
        if not isinstance(mongodb, dict) or not isinstance(queue, dict):
            raise ConfigurationError("'mongodb' and 'queue' sections must be mappings")

        if not mongodb.get("db_name"):
            raise ConfigurationError("mongodb.db_name is required")
        if not mongodb.get("collection"):
            raise ConfigurationError("mongodb.collection is required")
        try:
            mongodb["port"] = int(mongodb["port"])
        except (TypeError, ValueError):
            raise ConfigurationError(f"mongodb.port must be an integer, got {mongodb['port']!r}")

        for key in ("reset_duration", "wait_duration", "poll_duration", "retry_delay"):
            try:
                queue[key] = float(queue[key])
            except (TypeError, ValueError):
                raise ConfigurationError(f"queue.{key} must be a number, got {queue[key]!r}")

    @property
    def queue_settings(self) -> Dict[str, float]:
        """Default durations for get() and the worker, in seconds."""
        return dict(self.config["queue"])

    def get_connection_string(self) -> str:
        """
        Build the MongoDB connection string.

        An explicit connection_string wins over host/port/credentials.

        Returns:
            mongodb:// URI
        """
        mongodb = self.config["mongodb"]
        if mongodb.get("connection_string"):
            return mongodb["connection_string"]

        connection_string = "mongodb://"
        username = mongodb.get("username")
        password = mongodb.get("password")
        if username and password:
            connection_string += f"{quote_plus(str(username))}:{quote_plus(str(password))}@"
        connection_string += f"{mongodb['host']}:{mongodb['port']}/{mongodb['db_name']}"

        options = mongodb.get("options") or {}
        if options:
            option_str = "&".join(f"{k}={v}" for k, v in options.items())
            connection_string += f"?{option_str}"

        return connection_string

    def get_collection(self):
        """
        Connect to MongoDB and return the queue collection.

        Returns:
            pymongo Collection

        Raises:
            PyMongoError: If the server cannot be reached or rejects the client
        """
        mongodb = self.config["mongodb"]

        if self.client is None:
            try:
                self.client = MongoClient(
                    self.get_connection_string(),
                    serverSelectionTimeoutMS=int(mongodb["server_selection_timeout_ms"])
                )
                # Ping the server to verify connection
                self.client.admin.command("ping")
                logger.info(f"Connected to MongoDB at {mongodb['host']}:{mongodb['port']}")
            except PyMongoError as e:
                logger.error(f"Error connecting to MongoDB: {str(e)}")
                self.close()
                raise

        return self.client[mongodb["db_name"]][mongodb["collection"]]

    def get_queue(self) -> Queue:
        """Queue bound to the configured collection."""
        return Queue(self.get_collection())

    def close(self) -> None:
        """Close the MongoDB connection."""
        if self.client:
            self.client.close()
            self.client = None
