"""
Credential resolution.

Configurations carry opaque secret handles, never secret values. A handle is
turned into a value right before a listing and the result is discarded when
the execution ends.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from typing import Protocol, runtime_checkable

from filepoll.exceptions import CredentialError

_HANDLE_CHARS = re.compile(r"[^A-Za-z0-9]+")


@runtime_checkable
class SecretResolver(Protocol):
    def resolve(self, handle: str) -> str: ...


class EnvSecretResolver:
    """
    Resolve handles from environment variables.

    Handle ``ftp-acme`` with the default prefix reads ``FILEPOLL_SECRET_FTP_ACME``.
    """

    def __init__(self, prefix: str = "FILEPOLL_SECRET_", environ: Mapping[str, str] | None = None):
        self.prefix = prefix
        self._environ = environ if environ is not None else os.environ

    def variable_name(self, handle: str) -> str:
        return self.prefix + _HANDLE_CHARS.sub("_", handle).strip("_").upper()

    def resolve(self, handle: str) -> str:
        name = self.variable_name(handle)
        value = self._environ.get(name)
        if not value:
            raise CredentialError(handle, f"Secret '{handle}' is not available (expected ${name})")
        return value


class MappingSecretResolver:
    """Resolve handles from a plain mapping."""

    def __init__(self, secrets: Mapping[str, str] | None = None):
        self._secrets = dict(secrets or {})

    def set(self, handle: str, value: str) -> None:
        self._secrets[handle] = value

    def resolve(self, handle: str) -> str:
        try:
            return self._secrets[handle]
        except KeyError:
            raise CredentialError(handle) from None


class Credentials:
    """
    Resolved secret values for one execution, keyed by purpose.

    ``repr`` and ``str`` mask every value so credentials can't leak into logs.
    """

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[str, str] | None = None):
        self._values = dict(values or {})

    def get(self, purpose: str) -> str | None:
        return self._values.get(purpose)

    def __contains__(self, purpose: object) -> bool:
        return purpose in self._values

    def __bool__(self) -> bool:
        return bool(self._values)

    def __repr__(self) -> str:
        masked = ", ".join(f"{k}='***'" for k in sorted(self._values))
        return f"Credentials({masked})"

    __str__ = __repr__


def resolve_credentials(handles: Mapping[str, str], resolver: SecretResolver) -> Credentials:
    """Resolve every ``purpose -> handle`` pair; CredentialError on the first miss."""
    return Credentials({purpose: resolver.resolve(handle) for purpose, handle in handles.items()})
