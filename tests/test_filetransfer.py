"""Tests for termxfer/filetransfer.py — SftpFileTransfer over a mocked paramiko client."""

from __future__ import annotations

import errno
import stat
from pathlib import PurePosixPath
from unittest.mock import MagicMock

import paramiko
import pytest

from termxfer.connection import ConnectionError
from termxfer.filetransfer import SftpFileTransfer
from termxfer.fs import FsDirectory, FsFile, ProviderError, ProviderErrorKind, UnixPex

P = PurePosixPath


def _attr(name: str, mode: int, size: int = 0) -> MagicMock:
    return MagicMock(filename=name, st_mode=mode, st_size=size)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_sftp() -> MagicMock:
    """Return a mock paramiko.SFTPClient with common methods stubbed."""
    sftp = MagicMock()
    sftp.normalize.return_value = "/home/deck"
    sftp.getcwd.return_value = "/home/deck"
    sftp.lstat.return_value = MagicMock(st_mode=stat.S_IFREG | 0o644)
    return sftp


@pytest.fixture()
def mock_connection(mock_sftp: MagicMock) -> MagicMock:
    """Return a mock SSHConnection that hands out *mock_sftp*."""
    conn = MagicMock()
    conn.banner = "OpenSSH ready"
    conn.get_sftp.return_value = mock_sftp
    return conn


@pytest.fixture()
def client(mock_connection: MagicMock) -> SftpFileTransfer:
    return SftpFileTransfer(mock_connection)


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestSession:
    def test_connect_returns_banner(self, client, mock_connection, mock_sftp) -> None:
        assert client.connect() == "OpenSSH ready"
        mock_connection.connect.assert_called_once()
        mock_sftp.chdir.assert_called_once_with("/home/deck")

    def test_connect_failure_propagates(self, client, mock_connection) -> None:
        mock_connection.connect.side_effect = paramiko.AuthenticationException("denied")
        with pytest.raises(paramiko.AuthenticationException):
            client.connect()

    def test_is_connected(self, client, mock_connection) -> None:
        assert client.is_connected()
        mock_connection.get_sftp.side_effect = ConnectionError("down")
        assert not client.is_connected()

    def test_not_connected_maps_to_provider_error(self, client, mock_connection) -> None:
        mock_connection.get_sftp.side_effect = ConnectionError("down")
        with pytest.raises(ProviderError) as excinfo:
            client.pwd()
        assert excinfo.value.kind == ProviderErrorKind.NOT_CONNECTED


class TestNavigation:
    def test_change_dir_to_parent(self, client, mock_sftp) -> None:
        client.change_dir(P(".."))
        mock_sftp.chdir.assert_called_once_with("/home")

    def test_change_dir_relative(self, client, mock_sftp) -> None:
        client.change_dir(P("projects"))
        mock_sftp.chdir.assert_called_once_with("/home/deck/projects")


class TestListing:
    def test_list_dir_builds_sorted_entries(self, client, mock_sftp) -> None:
        mock_sftp.listdir_attr.return_value = [
            _attr("zeta.txt", stat.S_IFREG | 0o644, 12),
            _attr("alpha", stat.S_IFDIR | 0o755),
        ]
        entries = client.list_dir(P("/data"))
        assert [e.name for e in entries] == ["alpha", "zeta.txt"]
        assert isinstance(entries[0], FsDirectory)
        assert entries[1] == FsFile(P("/data/zeta.txt"), "zeta.txt", 12, UnixPex(6, 4, 4))

    def test_symlink_classified_by_target(self, client, mock_sftp) -> None:
        mock_sftp.listdir_attr.return_value = [_attr("link", stat.S_IFLNK | 0o777)]
        mock_sftp.stat.return_value = _attr("link", stat.S_IFDIR | 0o755)
        (entry,) = client.list_dir(P("/data"))
        assert isinstance(entry, FsDirectory)
        assert entry.symlink

    def test_missing_directory(self, client, mock_sftp) -> None:
        mock_sftp.listdir_attr.side_effect = FileNotFoundError(errno.ENOENT, "No such file")
        with pytest.raises(ProviderError) as excinfo:
            client.list_dir(P("/missing"))
        assert excinfo.value.kind == ProviderErrorKind.NO_SUCH_FILE_OR_DIRECTORY

    def test_unsafe_path_rejected(self, client, mock_sftp) -> None:
        with pytest.raises(ProviderError):
            client.list_dir(P("/data/a\x00b"))
        mock_sftp.listdir_attr.assert_not_called()

    def test_parent_components_collapsed(self, client, mock_sftp) -> None:
        mock_sftp.listdir_attr.return_value = []
        client.list_dir(P("/data/../etc"))
        mock_sftp.listdir_attr.assert_called_once_with("/etc")


class TestMutations:
    def test_mkdir_existing_directory(self, client, mock_sftp) -> None:
        mock_sftp.stat.return_value = _attr("d", stat.S_IFDIR | 0o755)
        with pytest.raises(ProviderError) as excinfo:
            client.mkdir(P("/data/d"))
        assert excinfo.value.kind == ProviderErrorKind.DIRECTORY_ALREADY_EXISTS
        mock_sftp.mkdir.assert_not_called()

    def test_mkdir_new_directory(self, client, mock_sftp) -> None:
        mock_sftp.stat.side_effect = FileNotFoundError(errno.ENOENT, "No such file")
        client.mkdir(P("/data/new"))
        mock_sftp.mkdir.assert_called_once_with("/data/new")

    def test_mkdir_permission_denied(self, client, mock_sftp) -> None:
        mock_sftp.stat.side_effect = FileNotFoundError(errno.ENOENT, "No such file")
        mock_sftp.mkdir.side_effect = PermissionError(errno.EACCES, "Permission denied")
        with pytest.raises(ProviderError) as excinfo:
            client.mkdir(P("/root/new"))
        assert excinfo.value.kind == ProviderErrorKind.PERMISSION_DENIED

    def test_remove_directory_recursively(self, client, mock_sftp) -> None:
        mock_sftp.listdir_attr.return_value = [_attr("f.txt", stat.S_IFREG | 0o644, 1)]
        client.remove(FsDirectory(P("/data/d"), "d"))
        mock_sftp.remove.assert_called_once_with("/data/d/f.txt")
        mock_sftp.rmdir.assert_called_once_with("/data/d")

    def test_remove_directory_link_removes_only_link(self, client, mock_sftp) -> None:
        client.remove(FsDirectory(P("/data/link"), "link", symlink=True))
        mock_sftp.remove.assert_called_once_with("/data/link")
        mock_sftp.rmdir.assert_not_called()
        mock_sftp.listdir_attr.assert_not_called()

    def test_stat_flags_directory_link(self, client, mock_sftp) -> None:
        mock_sftp.stat.return_value = _attr("link", stat.S_IFDIR | 0o755)
        mock_sftp.lstat.return_value = _attr("link", stat.S_IFLNK | 0o777)
        entry = client.stat(P("/data/link"))
        assert isinstance(entry, FsDirectory)
        assert entry.symlink


class TestStreams:
    def test_send_file_opens_pipelined_writer(self, client, mock_sftp) -> None:
        handle = mock_sftp.open.return_value
        writer = client.send_file(FsFile(P("/l/f"), "f", 3), P("/data/f"))
        mock_sftp.open.assert_called_once_with("/data/f", "wb")
        handle.set_pipelined.assert_called_once_with(True)

        assert writer.write(memoryview(b"abc")) == 3
        handle.write.assert_called_once_with(b"abc")
        client.on_sent(writer)
        handle.close.assert_called_once()

    def test_recv_file_prefetches_and_reads_into(self, client, mock_sftp) -> None:
        handle = mock_sftp.open.return_value
        handle.read.return_value = b"xy"
        reader = client.recv_file(FsFile(P("/data/f"), "f", 2))
        handle.prefetch.assert_called_once_with(2)

        buffer = bytearray(4)
        assert reader.readinto(memoryview(buffer)) == 2
        assert bytes(buffer[:2]) == b"xy"

    def test_protocol_failure_mid_stream_is_os_error(self, client, mock_sftp) -> None:
        handle = mock_sftp.open.return_value
        handle.write.side_effect = paramiko.SSHException("channel closed")
        writer = client.send_file(FsFile(P("/l/f"), "f", 3), P("/data/f"))
        with pytest.raises(OSError):
            writer.write(b"abc")

    def test_open_denied(self, client, mock_sftp) -> None:
        mock_sftp.open.side_effect = PermissionError(errno.EACCES, "Permission denied")
        with pytest.raises(ProviderError) as excinfo:
            client.send_file(FsFile(P("/l/f"), "f", 3), P("/data/f"))
        assert excinfo.value.kind == ProviderErrorKind.PERMISSION_DENIED
