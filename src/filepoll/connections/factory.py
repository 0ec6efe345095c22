"""
Adapter factory.

One adapter instance is built per execution from the configuration's
protocol settings.
"""

from __future__ import annotations

from concurrent.futures import Executor

from filepoll.connections.base import ProtocolAdapter
from filepoll.connections.blob_store import BlobStoreAdapter
from filepoll.connections.file_transfer import FileTransferAdapter
from filepoll.connections.web import WebAdapter
from filepoll.core.models import ProtocolSettings, ProtocolType
from filepoll.exceptions import ProtocolError

ADAPTER_TYPES: dict[ProtocolType, type[ProtocolAdapter]] = {
    ProtocolType.FILE_TRANSFER: FileTransferAdapter,
    ProtocolType.WEB: WebAdapter,
    ProtocolType.BLOB_STORE: BlobStoreAdapter,
}


class AdapterFactory:
    """Creates protocol adapters that share one executor for blocking I/O."""

    def __init__(self, executor: Executor | None = None):
        self.executor = executor

    def create(self, protocol: ProtocolType, settings: ProtocolSettings) -> ProtocolAdapter:
        adapter_cls = ADAPTER_TYPES.get(protocol)
        if adapter_cls is None:
            raise ProtocolError(f"No adapter registered for protocol {protocol!r}")
        if getattr(settings, "protocol", None) != protocol:
            raise ProtocolError(f"Settings {type(settings).__name__} do not match protocol {protocol.value}")
        return adapter_cls(settings, executor=self.executor)
