"""SQLAlchemy models for the payrecon reconciliation core."""

from payrecon.models.store_node import StoreNode

__all__ = [
    "StoreNode",
]
