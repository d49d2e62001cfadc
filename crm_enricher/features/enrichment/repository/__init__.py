"""
Repository subpackage for the enrichment feature.
"""

from .enrichment_store import EnrichmentStore, StoreConflictError, StoreError

__all__ = ["EnrichmentStore", "StoreConflictError", "StoreError"]
