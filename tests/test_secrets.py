"""
Tests for credential resolution.
"""

import pytest

from filepoll.core.secrets import (
    Credentials,
    EnvSecretResolver,
    MappingSecretResolver,
    SecretResolver,
    resolve_credentials,
)
from filepoll.exceptions import CredentialError


class TestEnvSecretResolver:
    """Tests for EnvSecretResolver."""

    def test_variable_name(self):
        resolver = EnvSecretResolver(environ={})
        assert resolver.variable_name("ftp-acme") == "FILEPOLL_SECRET_FTP_ACME"
        assert resolver.variable_name("s3/key.prod") == "FILEPOLL_SECRET_S3_KEY_PROD"

    def test_custom_prefix(self):
        resolver = EnvSecretResolver(prefix="APP_", environ={"APP_TOKEN": "t"})
        assert resolver.resolve("token") == "t"

    def test_resolves_from_environ(self):
        resolver = EnvSecretResolver(environ={"FILEPOLL_SECRET_FTP_ACME": "s3cret"})
        assert resolver.resolve("ftp-acme") == "s3cret"

    def test_missing_raises(self):
        resolver = EnvSecretResolver(environ={})
        with pytest.raises(CredentialError, match="FILEPOLL_SECRET_NOPE"):
            resolver.resolve("nope")

    def test_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv("FILEPOLL_SECRET_WEB_TOKEN", "abc")
        assert EnvSecretResolver().resolve("web-token") == "abc"

    def test_satisfies_protocol(self):
        assert isinstance(EnvSecretResolver(environ={}), SecretResolver)
        assert isinstance(MappingSecretResolver(), SecretResolver)


class TestMappingSecretResolver:
    """Tests for MappingSecretResolver."""

    def test_resolve_and_set(self):
        resolver = MappingSecretResolver({"a": "1"})
        resolver.set("b", "2")
        assert resolver.resolve("a") == "1"
        assert resolver.resolve("b") == "2"

    def test_missing_raises(self):
        with pytest.raises(CredentialError):
            MappingSecretResolver().resolve("missing")


class TestCredentials:
    """Tests for Credentials and resolve_credentials()."""

    def test_values_masked_in_repr(self):
        creds = Credentials({"password": "hunter2"})
        assert "hunter2" not in repr(creds)
        assert "hunter2" not in str(creds)
        assert "password" in repr(creds)

    def test_get_and_contains(self):
        creds = Credentials({"password": "x"})
        assert creds.get("password") == "x"
        assert creds.get("private_key") is None
        assert "password" in creds
        assert bool(Credentials()) is False

    def test_resolve_credentials(self):
        resolver = MappingSecretResolver({"ftp-acme": "pw", "key-acme": "pem"})
        creds = resolve_credentials({"password": "ftp-acme", "private_key": "key-acme"}, resolver)
        assert creds.get("password") == "pw"
        assert creds.get("private_key") == "pem"

    def test_resolve_credentials_first_miss_raises(self):
        with pytest.raises(CredentialError):
            resolve_credentials({"password": "missing"}, MappingSecretResolver())
