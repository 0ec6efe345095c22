"""
Protocol adapters for listing remote file stores.
"""

from filepoll.connections.base import (
    ListingRequest,
    ProtocolAdapter,
    bound_results,
    matches_extension,
    matches_pattern,
)
from filepoll.connections.blob_store import BlobStoreAdapter
from filepoll.connections.factory import AdapterFactory
from filepoll.connections.file_transfer import FileTransferAdapter
from filepoll.connections.web import WebAdapter

__all__ = [
    "AdapterFactory",
    "BlobStoreAdapter",
    "FileTransferAdapter",
    "ListingRequest",
    "ProtocolAdapter",
    "WebAdapter",
    "bound_results",
    "matches_extension",
    "matches_pattern",
]
