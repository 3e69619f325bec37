import ftplib
import os
from types import SimpleNamespace
from unittest import mock

import pytest

from ftpscan.ftp_client import FtpClient, FtpClientError, split_entries
from ftpscan.metrics import Counter, Histogram


class FakeFTP:
    def __init__(self, mlsd_entries=None, list_lines=None, files=None, noop_error=None):
        self.mlsd_entries = mlsd_entries
        self.list_lines = list_lines or []
        self.files = files or {}
        self.noop_error = noop_error
        self.commands = []
        self.quit_called = False

    def mlsd(self, path, facts=()):
        self.commands.append(("MLSD", path))
        if self.mlsd_entries is None:
            raise ftplib.error_perm("500 unknown command")
        yield from self.mlsd_entries

    def retrlines(self, cmd, callback):
        self.commands.append(cmd)
        for line in self.list_lines:
            callback(line)

    def retrbinary(self, cmd, callback):
        self.commands.append(cmd)
        path = cmd.split(" ", 1)[1]
        if path not in self.files:
            raise ftplib.error_perm("550 no such file")
        callback(self.files[path])

    def voidcmd(self, cmd):
        self.commands.append(cmd)
        if self.noop_error:
            raise self.noop_error
        return "200 ok"

    def quit(self):
        self.quit_called = True
        raise EOFError


def make_client(fake, metrics=None):
    password = "password"
    return FtpClient("localhost:21", "user", password, connection=fake, metrics=metrics)


def test_split_entries_skips_dot_entries_and_builds_full_paths():
    dirs, files = split_entries("/data", [(".", True), ("..", True), ("sub", True), ("a.txt", False)])
    assert dirs == ["/data/sub"]
    assert files == ["/data/a.txt"]


def test_split_entries_empty():
    assert split_entries("/x", []) == ([], [])


def test_list_directory_with_mlsd():
    fake = FakeFTP(
        mlsd_entries=[
            (".", {"type": "cdir"}),
            ("..", {"type": "pdir"}),
            ("docs", {"type": "dir"}),
            ("file.bin", {"type": "file"}),
        ]
    )
    dirs, files = make_client(fake).list_directory("/root")
    assert dirs == ["/root/docs"]
    assert files == ["/root/file.bin"]


def test_list_directory_falls_back_to_list():
    fake = FakeFTP(
        list_lines=[
            "total 8",
            "drwxr-xr-x 2 user group 4096 Jan 01 00:00 sub dir",
            "-rw-r--r-- 1 user group 10 Jan 01 00:00 notes.txt",
            "lrwxrwxrwx 1 user group 10 Jan 01 00:00 link -> notes.txt",
        ]
    )
    dirs, files = make_client(fake).list_directory("/pub")
    assert dirs == ["/pub/sub dir"]
    assert files == ["/pub/notes.txt", "/pub/link"]
    assert "LIST /pub" in fake.commands


def test_list_directory_error_raises():
    fake = FakeFTP(mlsd_entries=[])
    fake.mlsd = mock.Mock(side_effect=ftplib.error_temp("421 closing"))
    with pytest.raises(FtpClientError):
        make_client(fake).list_directory("/x")


def test_download_file_writes_content_and_counts(tmp_path):
    metrics = SimpleNamespace(
        download_duration=Histogram("d"),
        downloaded_files=Counter("df"),
        saving_duration=Histogram("s"),
        saved_files_counter=Counter("sf"),
    )
    fake = FakeFTP(files={"/remote/dir/data.bin": b"\x00abc"})
    local = make_client(fake, metrics).download_file("/remote/dir/data.bin", str(tmp_path))
    assert local == os.path.join(str(tmp_path), "data.bin")
    assert (tmp_path / "data.bin").read_bytes() == b"\x00abc"
    assert metrics.downloaded_files.value == 1
    assert metrics.saved_files_counter.value == 1
    assert metrics.download_duration.count == 1
    assert metrics.saving_duration.count == 1


def test_download_missing_file_raises_and_leaves_nothing(tmp_path):
    fake = FakeFTP()
    with pytest.raises(FtpClientError):
        make_client(fake).download_file("/missing.txt", str(tmp_path))
    assert list(tmp_path.iterdir()) == []


def test_download_into_missing_directory_raises(tmp_path):
    fake = FakeFTP(files={"/a.txt": b"x"})
    with pytest.raises(FtpClientError):
        make_client(fake).download_file("/a.txt", str(tmp_path / "nope"))


def test_check_connection_ok_and_failure():
    fake = FakeFTP()
    make_client(fake).check_connection()
    assert fake.commands == ["NOOP"]
    broken = FakeFTP(noop_error=ftplib.error_temp("421 timeout"))
    with pytest.raises(FtpClientError):
        make_client(broken).check_connection()


def test_close_ignores_errors_and_context_manager_closes():
    fake = FakeFTP()
    with make_client(fake) as client:
        assert client.address == "localhost:21"
    assert fake.quit_called is True


def test_connect_login_failure_raises():
    password = "password"
    with mock.patch("ftpscan.ftp_client.ftplib.FTP") as ftp_cls:
        instance = ftp_cls.return_value
        instance.login.side_effect = ftplib.error_perm("530 login incorrect")
        with pytest.raises(FtpClientError):
            FtpClient("localhost:2121", "user", password)
    instance.connect.assert_called_once_with("localhost", 2121)


def test_connect_refused_raises():
    password = "password"
    with mock.patch("ftpscan.ftp_client.ftplib.FTP") as ftp_cls:
        ftp_cls.return_value.connect.side_effect = ConnectionRefusedError()
        with pytest.raises(FtpClientError):
            FtpClient("localhost:21", "user", password)


def test_invalid_port_raises():
    password = "password"
    with pytest.raises(FtpClientError):
        FtpClient("localhost:port", "user", password)