"""Connection controllers for the service's infrastructure dependencies."""

from .db_connection import DatastoreConnection
from .kafka_connection import BrokerConnection
from .redis_connection import CacheConnection

__all__ = ["BrokerConnection", "CacheConnection", "DatastoreConnection"]
