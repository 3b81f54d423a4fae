"""Tests for the FTP transfer client."""
import ftplib
import threading
import pytest
from core.exceptions import AuthFailed, ConnectFailed, DirectoryCreateFailed, UploadFailed
from core.ftp_client import FtpTransferClient, TransferPolicy, remote_directory_for


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def client(ftp_server, sleeps):
    return FtpTransferClient(ftp_factory=ftp_server.factory, sleep=sleeps.append)


class TestRemoteDirectory:
    """Target folder derived from the file name."""

    def test_dated_file_goes_to_year_month(self):
        assert remote_directory_for("IMG_20230615_0001.jpg", "backup") == "backup/2023/202306"

    def test_undated_file_goes_to_root(self):
        assert remote_directory_for("note.txt", "backup") == "backup"

    def test_trailing_slash_on_root(self):
        assert remote_directory_for("VID_20191231_235959.mp4", "backup/") == "backup/2019/201912"

    def test_absolute_root(self):
        assert remote_directory_for("20240101.png", "/") == "/2024/202401"
        assert remote_directory_for("a.png", "/media/phone") == "/media/phone"


class TestBackoff:

    def test_exponential_with_cap(self):
        policy = TransferPolicy()
        assert [policy.backoff_ms(n) for n in range(1, 6)] == [2000, 4000, 8000, 10000, 10000]


class TestConnect:

    def test_succeeds_after_transient_failures(self, client, ftp_server, settings, make_file, sleeps):
        ftp_server.connect_failures = 2
        path = make_file("IMG_20230615_0001.jpg")

        elapsed = client.upload(path, settings)

        assert elapsed >= 0
        assert ftp_server.connect_calls == 3
        assert sleeps == [2.0, 4.0]
        assert "/backup/2023/202306/IMG_20230615_0001.jpg" in ftp_server.files

    def test_handshake_rejection_is_retried(self, client, ftp_server, settings, make_file):
        ftp_server.connect_failures = 1
        ftp_server.connect_error = ftplib.error_temp("421 Too many connections")

        client.upload(make_file("note.jpg"), settings)

        assert ftp_server.connect_calls == 2

    def test_non_ready_greeting_is_retried(self, client, ftp_server, settings, make_file, sleeps):
        ftp_server.welcome_failures = 1

        client.upload(make_file("note.jpg"), settings)

        assert ftp_server.connect_calls == 2
        assert ftp_server.login_calls == 1
        assert sleeps == [2.0]

    def test_gives_up_after_five_attempts(self, client, ftp_server, settings, make_file, sleeps):
        ftp_server.connect_failures = 100

        with pytest.raises(ConnectFailed) as exc_info:
            client.upload(make_file("note.jpg"), settings)

        assert ftp_server.connect_calls == 5
        assert "5 attempts" in str(exc_info.value)
        assert sleeps == [2.0, 4.0, 8.0, 10.0]
        assert ftp_server.login_calls == 0

    def test_cancellation_stops_retrying(self, client, ftp_server, settings, make_file):
        ftp_server.connect_failures = 100
        cancel_event = threading.Event()
        cancel_event.set()

        with pytest.raises(ConnectFailed):
            client.upload(make_file("note.jpg"), settings, cancel_event)

        assert ftp_server.connect_calls == 1


class TestLogin:

    def test_fails_after_exactly_three_attempts(self, client, ftp_server, settings, make_file, sleeps):
        ftp_server.reject_login = True

        with pytest.raises(AuthFailed) as exc_info:
            client.upload(make_file("note.jpg"), settings)

        assert ftp_server.login_calls == 3
        assert sleeps == [0.5, 0.5]
        assert "530" in str(exc_info.value)
        assert ftp_server.store_calls == 0

    def test_logout_attempted_after_failure(self, client, ftp_server, settings, make_file):
        ftp_server.reject_login = True

        with pytest.raises(AuthFailed):
            client.upload(make_file("note.jpg"), settings)

        assert ftp_server.quit_calls == 1


class TestNavigation:

    def test_creates_missing_directories(self, client, ftp_server, settings, make_file):
        client.upload(make_file("IMG_20230615_0001.jpg"), settings)

        assert ftp_server.mkd_calls == ["/backup", "/backup/2023", "/backup/2023/202306"]

    def test_existing_directory_is_reused(self, client, ftp_server, settings, make_file):
        ftp_server.dirs.update({"/backup", "/backup/2023", "/backup/2023/202306"})

        client.upload(make_file("IMG_20230615_0001.jpg"), settings)

        assert ftp_server.mkd_calls == []

    def test_only_missing_segments_are_created(self, client, ftp_server, settings, make_file):
        ftp_server.dirs.update({"/backup", "/backup/2023"})

        client.upload(make_file("IMG_20230701_0001.jpg"), settings)

        assert ftp_server.mkd_calls == ["/backup/2023/202307"]

    def test_create_failure_names_segment(self, client, ftp_server, settings, make_file):
        ftp_server.denied_dirs = {"/backup/2023"}

        with pytest.raises(DirectoryCreateFailed) as exc_info:
            client.upload(make_file("IMG_20230615_0001.jpg"), settings)

        assert exc_info.value.segment == "backup/2023"
        assert ftp_server.store_calls == 0
        assert ftp_server.quit_calls == 1


class TestTransfer:

    def test_reconnects_when_connection_dropped(self, client, ftp_server, settings, make_file, sleeps):
        ftp_server.store_failures = 1
        ftp_server.drop_connection_on_store_failure = True

        client.upload(make_file("IMG_20230615_0001.jpg", size=2048), settings)

        assert ftp_server.store_calls == 2
        assert ftp_server.connect_calls == 2
        assert ftp_server.login_calls == 2
        assert sleeps == [2.0]
        assert len(ftp_server.files["/backup/2023/202306/IMG_20230615_0001.jpg"]) == 2048

    def test_retry_on_live_connection_does_not_reconnect(self, client, ftp_server, settings, make_file):
        ftp_server.store_failures = 2

        client.upload(make_file("note.jpg"), settings)

        assert ftp_server.store_calls == 3
        assert ftp_server.connect_calls == 1

    def test_gives_up_with_server_reply(self, client, ftp_server, settings, make_file):
        ftp_server.store_failures = 100

        with pytest.raises(UploadFailed) as exc_info:
            client.upload(make_file("note.jpg"), settings)

        assert ftp_server.store_calls == 3
        assert exc_info.value.server_reply.startswith("451")

    def test_missing_local_file_fails_the_file(self, client, settings, tmp_path):
        with pytest.raises(UploadFailed):
            client.upload(tmp_path / "gone.jpg", settings)


class TestKeepalive:
    """NOOPs sent on the control channel while a file streams."""

    @pytest.fixture
    def chatty_client(self, ftp_server, sleeps):
        policy = TransferPolicy(keepalive_interval=1e-9, block_size=16)
        return FtpTransferClient(policy=policy, ftp_factory=ftp_server.factory, sleep=sleeps.append)

    def test_noop_replies_are_read_after_transfer(self, chatty_client, ftp_server, settings, make_file):
        chatty_client.upload(make_file("note.jpg", size=128), settings)

        assert ftp_server.noops_sent > 0
        assert ftp_server.connections[0].replies == []
        assert ftp_server.connect_calls == 1

    def test_failed_store_with_unread_noops_retries_on_fresh_connection(
            self, chatty_client, ftp_server, settings, make_file, sleeps):
        ftp_server.store_failures = 1

        chatty_client.upload(make_file("note.jpg", size=128), settings)

        assert ftp_server.store_calls == 2
        assert ftp_server.connect_calls == 2
        assert ftp_server.login_calls == 2
        assert sleeps == [2.0]
        assert len(ftp_server.files["/backup/note.jpg"]) == 128
