"""Persistence: storage backends and the asynchronous change dispatcher."""

from mandala.persistence.backend import JsonFileBackend, PersistenceBackend
from mandala.persistence.dispatcher import PersistenceDispatcher
from mandala.persistence.session import default_backend, open_session

__all__ = [
    "JsonFileBackend",
    "PersistenceBackend",
    "PersistenceDispatcher",
    "default_backend",
    "open_session",
]
