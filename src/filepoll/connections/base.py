"""
Common contract for protocol adapters.

An adapter lists one remote directory (or prefix) and returns the files whose
names match the configured glob and extension. Adapters never download
content and never touch the ledger.
"""

from __future__ import annotations

import asyncio
import fnmatch
import functools
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Any, ClassVar, TypeVar

from filepoll.core.models import DiscoveredFile, ProtocolType
from filepoll.core.secrets import Credentials
from filepoll.utils.logging import get_logger

logger = get_logger("filepoll.connections.base")

T = TypeVar("T")

DEFAULT_MAX_RESULTS = 10_000


@dataclass(frozen=True)
class ListingRequest:
    """Resolved inputs for one listing call."""

    path: str
    name_pattern: str = "*"
    extension: str | None = None
    credentials: Credentials = field(default_factory=Credentials)
    max_results: int = DEFAULT_MAX_RESULTS

    def accepts(self, name: str) -> bool:
        return matches_pattern(name, self.name_pattern) and matches_extension(name, self.extension)


class ProtocolAdapter(ABC):
    """
    Base class for file-transfer, web and blob-store adapters.

    Adapters wrapping a blocking client library run it through
    ``run_blocking`` so the event loop is never held by network I/O.

    Failures are raised as AdapterError subclasses:
    AuthenticationFailedError, NotFoundError, NetworkError (retryable)
    or ProtocolError.
    """

    protocol: ClassVar[ProtocolType]

    def __init__(self, settings: Any, *, executor: Executor | None = None):
        self.settings = settings
        self._executor = executor

    @property
    def timeout_s(self) -> float:
        return float(getattr(self.settings, "timeout_s", 30.0))

    @abstractmethod
    async def list_files(self, request: ListingRequest) -> list[DiscoveredFile]:
        """List files under ``request.path`` accepted by the request's filters."""

    async def run_blocking(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(func, *args, **kwargs))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(protocol={self.protocol.value})"


def matches_pattern(name: str, pattern: str | None) -> bool:
    """Case-insensitive glob match; an empty pattern or ``*`` accepts everything."""
    if not pattern or pattern == "*":
        return True
    return fnmatch.fnmatchcase(name.lower(), pattern.lower())


def matches_extension(name: str, extension: str | None) -> bool:
    """Case-insensitive suffix match; the leading dot on ``extension`` is optional."""
    if not extension:
        return True
    ext = extension.lower().lstrip(".")
    return name.lower().endswith("." + ext)


def bound_results(files: Iterable[DiscoveredFile], limit: int, *, source: str = "") -> list[DiscoveredFile]:
    """Truncate a listing to ``limit`` entries, warning when anything was dropped."""
    result: list[DiscoveredFile] = []
    dropped = 0
    for f in files:
        if len(result) < limit:
            result.append(f)
        else:
            dropped += 1
    if dropped:
        logger.warning(f"Listing of {source or 'remote path'} truncated to {limit} entries ({dropped} dropped)")
    return result


def join_path(*parts: str) -> str:
    """Join remote path segments with single slashes, keeping a leading slash."""
    cleaned = [p.strip("/") for p in parts if p and p.strip("/")]
    joined = "/".join(cleaned)
    leading = parts[0].startswith("/") if parts and parts[0] else False
    return ("/" if leading else "") + joined
