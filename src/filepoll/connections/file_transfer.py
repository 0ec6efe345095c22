"""
FTP / FTPS / SFTP listing.

FTP and FTPS (explicit TLS) go through stdlib ``ftplib``; SFTP goes through
``paramiko``. Both clients are blocking and run on the adapter's executor.
"""

from __future__ import annotations

import ftplib
import io
import socket
from datetime import UTC, datetime
from typing import Any

import paramiko

from filepoll.connections.base import ListingRequest, ProtocolAdapter, bound_results, join_path
from filepoll.core.models import DiscoveredFile, FileTransferMode, FileTransferSettings, ProtocolType, utcnow
from filepoll.exceptions import (
    AdapterError,
    AuthenticationFailedError,
    NetworkError,
    NotFoundError,
    ProtocolError,
)
from filepoll.utils.logging import get_logger

logger = get_logger("filepoll.connections.file_transfer")

# st_mode directory bit, as in stat.S_IFDIR
_S_IFDIR = 0o040000


class FileTransferAdapter(ProtocolAdapter):
    """
    Lists a remote directory over FTP, FTPS or SFTP.

    FTP listings prefer MLSD (machine-readable, with size and mtime) and fall
    back to NLST plus per-file SIZE/MDTM for servers that don't support it.
    """

    protocol = ProtocolType.FILE_TRANSFER

    settings: FileTransferSettings

    @property
    def scheme(self) -> str:
        return self.settings.mode.value

    def locator(self, remote_path: str) -> str:
        path = remote_path if remote_path.startswith("/") else "/" + remote_path
        return f"{self.scheme}://{self.settings.host}:{self.settings.effective_port}{path}"

    async def list_files(self, request: ListingRequest) -> list[DiscoveredFile]:
        logger.debug(
            f"Listing {self.scheme}://{self.settings.host}:{self.settings.effective_port} "
            f"path={request.path!r} pattern={request.name_pattern!r}"
        )
        if self.settings.mode == FileTransferMode.SFTP:
            files = await self.run_blocking(self._list_sftp, request)
        else:
            files = await self.run_blocking(self._list_ftp, request)
        logger.info(f"{self.scheme.upper()} listing found {len(files)} matching file(s) on {self.settings.host}")
        return files

    # --- FTP / FTPS ------------------------------------------------------------

    def _connect_ftp(self, request: ListingRequest) -> ftplib.FTP:
        cfg = self.settings
        ftp: ftplib.FTP
        if cfg.mode == FileTransferMode.FTPS:
            ftp = ftplib.FTP_TLS(timeout=cfg.timeout_s)
        else:
            ftp = ftplib.FTP(timeout=cfg.timeout_s)

        ftp.connect(cfg.host, cfg.effective_port)
        ftp.login(user=cfg.username or "anonymous", passwd=request.credentials.get("password") or "")
        if isinstance(ftp, ftplib.FTP_TLS):
            # Protect the data channel too, not only the control channel
            ftp.prot_p()
        ftp.set_pasv(cfg.passive)
        return ftp

    def _list_ftp(self, request: ListingRequest) -> list[DiscoveredFile]:
        ftp: ftplib.FTP | None = None
        try:
            ftp = self._connect_ftp(request)
            try:
                entries = self._mlsd(ftp, request)
            except ftplib.error_perm as e:
                if not _is_unsupported(e):
                    raise
                logger.debug(f"MLSD not supported by {self.settings.host}, falling back to NLST")
                entries = self._nlst(ftp, request)
            return bound_results(entries, request.max_results, source=self.locator(request.path))
        except AdapterError:
            raise
        except ftplib.error_perm as e:
            raise _map_ftp_perm(e, request.path) from e
        except ftplib.error_temp as e:
            raise NetworkError(f"FTP temporary failure: {e}") from e
        except (ftplib.error_reply, ftplib.error_proto) as e:
            raise ProtocolError(f"Unexpected FTP reply: {e}") from e
        except (OSError, EOFError) as e:
            raise NetworkError(f"FTP connection to {self.settings.host} failed: {e}") from e
        finally:
            if ftp is not None:
                _quit_quietly(ftp)

    def _mlsd(self, ftp: ftplib.FTP, request: ListingRequest) -> list[DiscoveredFile]:
        files: list[DiscoveredFile] = []
        for name, facts in ftp.mlsd(request.path or "/", facts=["type", "size", "modify"]):
            if facts.get("type", "file").lower() != "file":
                continue
            if not request.accepts(name):
                continue
            size = facts.get("size")
            files.append(
                DiscoveredFile(
                    filename=name,
                    locator=self.locator(join_path(request.path or "/", name)),
                    size=int(size) if size and size.isdigit() else None,
                    last_modified=_parse_ftp_time(facts.get("modify")),
                    discovered_at=utcnow(),
                )
            )
        return files

    def _nlst(self, ftp: ftplib.FTP, request: ListingRequest) -> list[DiscoveredFile]:
        try:
            names = ftp.nlst(request.path or "/")
        except ftplib.error_temp as e:
            # Many servers answer "450 No files found" for an empty directory
            if str(e).startswith("450"):
                return []
            raise

        # SIZE needs binary mode on most servers
        ftp.voidcmd("TYPE I")
        files: list[DiscoveredFile] = []
        for entry in names:
            name = entry.rsplit("/", 1)[-1]
            if name in (".", "..") or not request.accepts(name):
                continue
            full = join_path(request.path or "/", name)
            try:
                size = ftp.size(full)
            except ftplib.error_perm:
                # Directories have no SIZE
                continue
            modified = None
            try:
                reply = ftp.voidcmd(f"MDTM {full}")
                modified = _parse_ftp_time(reply.split(" ", 1)[-1])
            except ftplib.error_perm:
                pass
            files.append(
                DiscoveredFile(
                    filename=name,
                    locator=self.locator(full),
                    size=size,
                    last_modified=modified,
                    discovered_at=utcnow(),
                )
            )
        return files

    # --- SFTP ------------------------------------------------------------------

    def _connect_sftp(self, request: ListingRequest) -> tuple[paramiko.Transport, paramiko.SFTPClient]:
        cfg = self.settings
        sock = socket.create_connection((cfg.host, cfg.effective_port), timeout=cfg.timeout_s)
        transport = paramiko.Transport(sock)
        transport.banner_timeout = cfg.timeout_s
        transport.auth_timeout = cfg.timeout_s

        try:
            pkey = _load_private_key(request.credentials.get("private_key"))
            transport.connect(
                username=cfg.username,
                password=request.credentials.get("password"),
                pkey=pkey,
            )
            client = paramiko.SFTPClient.from_transport(transport)
            if client is None:
                raise ProtocolError(f"SFTP subsystem unavailable on {cfg.host}")
            client.get_channel().settimeout(cfg.timeout_s)
        except BaseException:
            transport.close()
            raise
        return transport, client

    def _list_sftp(self, request: ListingRequest) -> list[DiscoveredFile]:
        transport: paramiko.Transport | None = None
        client: paramiko.SFTPClient | None = None
        try:
            transport, client = self._connect_sftp(request)
            files: list[DiscoveredFile] = []
            for attr in client.listdir_attr(request.path or "/"):
                name = attr.filename
                if int(getattr(attr, "st_mode", 0) or 0) & _S_IFDIR:
                    continue
                if not request.accepts(name):
                    continue
                mtime = getattr(attr, "st_mtime", None)
                files.append(
                    DiscoveredFile(
                        filename=name,
                        locator=self.locator(join_path(request.path or "/", name)),
                        size=int(attr.st_size) if attr.st_size is not None else None,
                        last_modified=datetime.fromtimestamp(mtime, UTC) if mtime else None,
                        discovered_at=utcnow(),
                    )
                )
            return bound_results(files, request.max_results, source=self.locator(request.path))
        except AdapterError:
            raise
        except paramiko.AuthenticationException as e:
            raise AuthenticationFailedError(f"SFTP authentication failed for {self.settings.host}") from e
        except FileNotFoundError as e:
            raise NotFoundError(f"Remote directory not found: {request.path}") from e
        except PermissionError as e:
            raise AuthenticationFailedError(f"Permission denied listing {request.path}") from e
        except paramiko.SSHException as e:
            raise NetworkError(f"SFTP session with {self.settings.host} failed: {e}") from e
        except (OSError, EOFError) as e:
            raise NetworkError(f"SFTP connection to {self.settings.host} failed: {e}") from e
        finally:
            if client is not None:
                client.close()
            if transport is not None:
                transport.close()


def _is_unsupported(error: ftplib.error_perm) -> bool:
    return str(error)[:3] in ("500", "501", "502", "504")


def _map_ftp_perm(error: ftplib.error_perm, path: str) -> AdapterError:
    code = str(error)[:3]
    if code == "530":
        return AuthenticationFailedError(f"FTP login rejected: {error}")
    if code == "550":
        return NotFoundError(f"Remote directory not found: {path}")
    return ProtocolError(f"FTP command rejected: {error}")


def _parse_ftp_time(value: str | None) -> datetime | None:
    """Parse MLSD ``modify`` / MDTM values (YYYYMMDDHHMMSS[.sss], UTC)."""
    if not value:
        return None
    value = value.strip().split(".", 1)[0]
    try:
        return datetime.strptime(value[:14], "%Y%m%d%H%M%S").replace(tzinfo=UTC)
    except ValueError:
        return None


def _load_private_key(material: str | None) -> paramiko.PKey | None:
    if not material:
        return None
    last_error: Exception | None = None
    for key_cls in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
        try:
            return key_cls.from_private_key(io.StringIO(material))
        except paramiko.SSHException as e:
            last_error = e
    raise AuthenticationFailedError("SFTP private key could not be loaded") from last_error


def _quit_quietly(ftp: Any) -> None:
    try:
        ftp.quit()
    except (ftplib.Error, OSError, EOFError):
        ftp.close()
