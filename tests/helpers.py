"""
Test helpers: sample configurations, a fixed clock and fake adapters.
"""

import asyncio
from datetime import UTC, datetime, timedelta

from filepoll.core.models import (
    DeliveryMode,
    DiscoveredFile,
    FileTransferMode,
    FileTransferSettings,
    NotificationTarget,
    ProtocolType,
    RetrievalConfiguration,
    Schedule,
)


def make_config(**overrides) -> RetrievalConfiguration:
    values = dict(
        tenant_id="acme",
        configuration_id="daily-invoices",
        name="Daily invoices",
        protocol=ProtocolType.FILE_TRANSFER,
        settings=FileTransferSettings(
            host="ftp.example.com",
            username="acme",
            mode=FileTransferMode.FTPS,
            password_handle="ftp-acme",
        ),
        path_pattern="/outbound/{yyyy}/{mm}/{dd}",
        filename_pattern="invoice_*.csv",
        schedule=Schedule(cron="0 6 * * *", timezone="UTC"),
        notifications=(NotificationTarget(mode=DeliveryMode.BROADCAST, type_name="FileDiscovered"),),
    )
    values.update(overrides)
    return RetrievalConfiguration(**values)


def make_file(name: str, *, size: int = 100) -> DiscoveredFile:
    return DiscoveredFile(
        filename=name,
        locator=f"ftps://ftp.example.com:21/outbound/{name}",
        size=size,
        last_modified=datetime(2026, 2, 23, 5, 0, tzinfo=UTC),
    )


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeAdapter:
    """Stands in for a protocol adapter; returns or raises what it is told to."""

    protocol = ProtocolType.FILE_TRANSFER

    def __init__(self, files=None, *, errors=None, delay_s: float = 0.0, timeout_s: float = 5.0):
        self.files = list(files or [])
        self.errors = list(errors or [])
        self.delay_s = delay_s
        self.timeout_s = timeout_s
        self.requests = []

    async def list_files(self, request):
        self.requests.append(request)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.errors:
            raise self.errors.pop(0)
        return list(self.files)


class FakeAdapterFactory:
    def __init__(self, adapter: FakeAdapter):
        self.adapter = adapter
        self.created = []

    def create(self, protocol, settings):
        self.created.append((protocol, settings))
        return self.adapter


async def no_sleep(delay: float) -> None:
    return None
