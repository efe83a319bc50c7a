import datetime as dt
import shlex
from typing import Dict, List

import pytest
import pytz

import hl_backup

ALL_FOUND = {
    "age": {"found": True, "path": "/usr/bin/age", "version": "v1.1.1"},
    "mysqldump": {"found": True, "path": "/usr/bin/mysqldump", "version": "mysqldump  Ver 8.0.36"},
    "python": {"found": True, "path": "/usr/bin/python3", "version": "Python 3.12.1"},
    "xz": {"found": True, "path": "/usr/bin/xz", "version": "xz (XZ Utils) 5.4.5"},
}


class FakeCursor:
    def __init__(self, tables: List[str]):
        self.tables = tables
        self.executed = []

    def execute(self, sql):
        self.executed.append(sql)

    def fetchall(self):
        return [(name,) for name in self.tables]

    def close(self):
        pass


class FakeConnection:
    def __init__(self, tables: List[str]):
        self.tables = tables
        self.closed = False

    def cursor(self):
        return FakeCursor(self.tables)

    def close(self):
        self.closed = True


class FakeTools:
    """Stands in for mysqldump / xz / age: writes the file each command line would produce."""

    def __init__(self):
        self.calls = []
        self.failures: Dict[str, List[str]] = {}
        self.sizes: Dict[str, int] = {}

    def fail(self, tool: str, output: List[str]) -> None:
        self.failures[tool] = output

    def __call__(self, args, debug_replace=None):
        tool = args[0]
        self.calls.append((list(args), list(debug_replace or [])))
        if tool in self.failures:
            return 1, list(self.failures[tool])
        if tool == "age":
            target = next(shlex.split(arg)[1] for arg in args if arg.startswith("-o "))
        else:
            target = shlex.split(args[-1][2:])[0]
        with open(target, "wb") as handle:
            handle.write(b"x" * self.sizes.get(tool, 128))
        return 0, []

    def tools_called(self) -> List[str]:
        return [call[0][0] for call in self.calls]


class FakeS3Client:
    def __init__(self):
        self.uploads = []

    def upload_file(self, local_path, bucket, key):
        with open(local_path, "rb") as handle:
            self.uploads.append((local_path, bucket, key, len(handle.read())))


class HeartbeatRecorder:
    def __init__(self):
        self.posts = []

    def __call__(self, url, data=None, **kwargs):
        self.posts.append((url, data))

        class Response:
            status_code = 200

        return Response()

    def urls(self) -> List[str]:
        return [url for url, _ in self.posts]


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    hl_backup.set_debug_logging(False)
    hl_backup.close_log_file()


@pytest.fixture
def fixed_now(monkeypatch):
    now = dt.datetime(2024, 3, 5, 12, 0, 0, tzinfo=pytz.utc)
    monkeypatch.setattr(hl_backup, "now_utc", lambda: now)
    return now


@pytest.fixture
def options(tmp_path):
    return hl_backup.DumperOptions(
        db_database="shop",
        encryption_key="age1qyqszqgpqyqszqgpqyqszqgpqyqszqgpqyqszqgpqyqszqgpqyqs3290gq",
        s3_access_key="AKIAEXAMPLE",
        s3_secret_key="s3cr3t-key",
        s3_bucket="my-bucket",
        db_password="hunter2",
        heartbeat_start="https://hc.example/start",
        heartbeat_finish="https://hc.example/finish",
        heartbeat_fail="https://hc.example/fail",
        s3_file_name="export-{{db-database}}-{{YYYY}}{{MM}}{{DD}}-{{hh}}{{mm}}{{ss}}.sql.xz.age",
        temp_dir=str(tmp_path),
    )


@pytest.fixture
def tools(monkeypatch):
    fake = FakeTools()
    monkeypatch.setattr(hl_backup, "execute_command", fake)
    return fake


@pytest.fixture
def database(monkeypatch):
    conn = FakeConnection(["orders", "products", "users"])
    monkeypatch.setattr(hl_backup, "create_mysql_connection", lambda opts: conn)
    return conn


@pytest.fixture
def s3_client(monkeypatch):
    client = FakeS3Client()
    monkeypatch.setattr(hl_backup, "create_s3_client", lambda opts: client)
    return client


@pytest.fixture
def heartbeats(monkeypatch):
    recorder = HeartbeatRecorder()
    monkeypatch.setattr(hl_backup.requests, "post", recorder)
    return recorder


@pytest.fixture
def dependencies(monkeypatch):
    monkeypatch.setattr(hl_backup, "probe_dependencies", lambda: dict(ALL_FOUND))
    return ALL_FOUND
