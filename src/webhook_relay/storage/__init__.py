"""Endpoint and delivery stores.

Two backends implement the same interfaces:
    - InMemoryEndpointStore / InMemoryDeliveryStore: process-local dicts
    - QdrantStorage (.endpoints / .deliveries): durable, shared across workers

Example:
    ```python
    from webhook_relay.storage import InMemoryDeliveryStore, InMemoryEndpointStore

    endpoints = InMemoryEndpointStore()
    deliveries = InMemoryDeliveryStore()
    ```
"""

from .base import DEFAULT_PAGE_SIZE, DeliveryStore, EndpointStore, check_retryable
from .memory import InMemoryDeliveryStore, InMemoryEndpointStore
from .qdrant import QdrantDeliveryStore, QdrantEndpointStore, QdrantStorage
from .retry import qdrant_retry, storage_errors

__all__ = [
    "DEFAULT_PAGE_SIZE",
    "DeliveryStore",
    "EndpointStore",
    "InMemoryDeliveryStore",
    "InMemoryEndpointStore",
    "QdrantDeliveryStore",
    "QdrantEndpointStore",
    "QdrantStorage",
    "check_retryable",
    "qdrant_retry",
    "storage_errors",
]
