"""Pytest fixtures for Media Backup Engine tests."""
import ftplib
import posixpath
import threading
import time
import pytest
from core.exceptions import UploadFailed
from core.settings import ConnectionSettings
from database.models import Base, configure_database, get_engine

# In-memory SQLite for tests
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(autouse=True)
def db():
    """Create a fresh database for each test."""
    configure_database(SQLALCHEMY_DATABASE_URL)
    engine = get_engine()
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def settings():
    return ConnectionSettings(host="ftp.example.test", port=21, upload_root="backup",
                              username="alice", password="secret")


@pytest.fixture
def make_file(tmp_path):
    """Create a local media file with the given name and size."""
    def _make(name, size=128, directory=None):
        folder = directory or tmp_path
        folder.mkdir(parents=True, exist_ok=True)
        path = folder / name
        path.write_bytes(b"x" * size)
        return path
    return _make


class FakeFtpServer:
    """Shared remote state and scripted faults for FakeFTP connections."""

    def __init__(self):
        self.lock = threading.Lock()
        self.dirs = {"/"}
        self.files = {}
        self.connections = []
        self.connect_calls = 0
        self.login_calls = 0
        self.store_calls = 0
        self.mkd_calls = []
        self.quit_calls = 0
        self.noops_sent = 0

        self.connect_failures = 0
        self.connect_error = ConnectionRefusedError("Connection refused")
        self.welcome_failures = 0
        self.reject_login = False
        self.store_failures = 0
        self.drop_connection_on_store_failure = False
        self.denied_dirs = set()

    def factory(self):
        ftp = FakeFTP(self)
        self.connections.append(ftp)
        return ftp


class FakeFTP:
    """
    Just enough of ftplib.FTP for the transfer client.

    Replies to commands sent with putcmd() queue up on the control channel
    and are answered after the transfer reply, so unread ones are returned
    to whichever command reads next.
    """

    def __init__(self, server: FakeFtpServer):
        self.server = server
        self.sock = None
        self.encoding = "latin-1"
        self.timeout = None
        self.passive = False
        self.cwd_path = "/"
        self.replies = []

    def _resolve(self, path):
        return posixpath.normpath(posixpath.join(self.cwd_path, path))

    def _require_connection(self):
        if self.sock is None:
            raise ConnectionResetError("Connection reset by peer")

    def _exchange(self, reply):
        self._require_connection()
        self.replies.append(reply)
        return self.replies.pop(0)

    def connect(self, host="", port=0, timeout=None):
        with self.server.lock:
            self.server.connect_calls += 1
            if self.server.connect_failures > 0:
                self.server.connect_failures -= 1
                raise self.server.connect_error
            delayed = self.server.welcome_failures > 0
            if delayed:
                self.server.welcome_failures -= 1
        self.sock = object()
        self.cwd_path = "/"
        self.replies = []
        if delayed:
            return "120 Service ready in 5 minutes."
        return "220 Welcome"

    def set_pasv(self, value):
        self.passive = value

    def login(self, user="", passwd=""):
        self._require_connection()
        with self.server.lock:
            self.server.login_calls += 1
        if self.server.reject_login:
            raise ftplib.error_perm("530 Login incorrect.")
        return "230 Login successful."

    def cwd(self, dirname):
        self._require_connection()
        target = self._resolve(dirname)
        if target not in self.server.dirs:
            raise ftplib.error_perm("550 Failed to change directory.")
        self.cwd_path = target
        return "250 Directory successfully changed."

    def mkd(self, dirname):
        self._require_connection()
        target = self._resolve(dirname)
        with self.server.lock:
            self.server.mkd_calls.append(target)
            if target in self.server.denied_dirs:
                raise ftplib.error_perm("550 Permission denied.")
            if posixpath.dirname(target) not in self.server.dirs:
                raise ftplib.error_perm("550 Parent directory missing.")
            self.server.dirs.add(target)
        return target

    def storbinary(self, cmd, fp, blocksize=8192, callback=None, rest=None):
        self._require_connection()
        self.voidcmd("TYPE I")
        reply = self._exchange("227 Entering Passive Mode (127,0,0,1,4,1).")
        if not reply.startswith("227"):
            raise ftplib.error_reply(reply)

        data = b""
        while True:
            block = fp.read(blocksize)
            if not block:
                break
            data += block
            if callback:
                callback(block)

        with self.server.lock:
            self.server.store_calls += 1
            if self.server.store_failures > 0:
                self.server.store_failures -= 1
                if self.server.drop_connection_on_store_failure:
                    self.sock = None
                raise ftplib.error_temp("451 Requested action aborted: local error in processing.")
            name = cmd.split(" ", 1)[1]
            self.server.files[posixpath.join(self.cwd_path, name)] = data
        return "226 Transfer complete."

    def voidcmd(self, cmd):
        reply = self._exchange(f"200 {cmd} ok.")
        if not reply.startswith("2"):
            raise ftplib.error_reply(reply)
        return reply

    def putcmd(self, line):
        self._require_connection()
        with self.server.lock:
            self.server.noops_sent += 1
        self.replies.append(f"200 {line} ok.")

    def voidresp(self):
        self._require_connection()
        if not self.replies:
            raise TimeoutError("timed out waiting for reply")
        reply = self.replies.pop(0)
        if not reply.startswith("2"):
            raise ftplib.error_reply(reply)
        return reply

    def quit(self):
        self._require_connection()
        with self.server.lock:
            self.server.quit_calls += 1
        self.sock = None
        return "221 Goodbye."

    def close(self):
        self.sock = None


@pytest.fixture
def ftp_server():
    return FakeFtpServer()


class FakeTransferClient:
    """Stands in for FtpTransferClient; tracks concurrency and can block."""

    def __init__(self, fail_names=(), crash_names=(), delay=0.0, gate=None):
        self.fail_names = set(fail_names)
        self.crash_names = set(crash_names)
        self.delay = delay
        self.gate = gate
        self.lock = threading.Lock()
        self.active = 0
        self.max_active = 0
        self.calls = []

    def upload(self, local_file, settings, cancel_event=None):
        with self.lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.calls.append(str(local_file))
        try:
            if self.gate is not None:
                self.gate.wait(timeout=10)
            if self.delay:
                time.sleep(self.delay)
            if local_file.name in self.crash_names:
                raise RuntimeError(f"unexpected crash on {local_file.name}")
            if local_file.name in self.fail_names:
                raise UploadFailed(f"Upload of {local_file.name} failed after 3 attempts",
                                   server_reply="451 Aborted")
            return 7
        finally:
            with self.lock:
                self.active -= 1


def wait_until(predicate, timeout=5.0):
    """Poll predicate until true or fail the test."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    pytest.fail("condition not reached in time")
