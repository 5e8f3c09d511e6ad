from botocore.exceptions import ClientError
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from kodo_storagedriver.config import DriverParameters
from kodo_storagedriver.driver import FileInfo
from kodo_storagedriver.driver import KodoDriver
from kodo_storagedriver.errors import KodoOperationError
from kodo_storagedriver.errors import PathNotFoundError
from kodo_storagedriver.errors import TransientError
from kodo_storagedriver.interfaces import IStorageDriver
from moto import mock_aws
from urllib.parse import parse_qs
from urllib.parse import urlsplit

import boto3
import pytest
import time


class RecordingInvalidator:
    def __init__(self):
        self.keys = []
        self.closed = False

    def enqueue(self, key):
        self.keys.append(key)

    def join(self):
        pass

    def close(self):
        self.closed = True


@pytest.fixture
def s3_env():
    with mock_aws():
        boto3.client("s3", region_name="us-east-1").create_bucket(Bucket="test-bucket")
        yield


@pytest.fixture
def invalidator():
    return RecordingInvalidator()


def _driver(invalidator, root="", **kwargs):
    params = DriverParameters(
        bucket="test-bucket",
        base_url="https://cdn.example.com",
        access_key="ak",
        secret_key="sk",
        region="us-east-1",
        root_directory=root,
        redirect_map=kwargs.pop("redirect_map", {}),
    )
    return KodoDriver(params, invalidator=invalidator, **kwargs)


@pytest.fixture
def driver(s3_env, invalidator):
    return _driver(invalidator)


@pytest.fixture
def rooted(s3_env, invalidator):
    return _driver(invalidator, root="/registry")


def _raw_keys():
    response = boto3.client("s3", region_name="us-east-1").list_objects(
        Bucket="test-bucket"
    )
    return [obj["Key"] for obj in response.get("Contents", [])]


class TestDriverBasics:
    def test_interface(self, driver):
        assert IStorageDriver.providedBy(driver)

    def test_name(self, driver):
        assert driver.name == "kodo"

    def test_close_closes_invalidator(self, driver, invalidator):
        driver.close()
        assert invalidator.closed

    def test_root_directory_prefixes_keys(self, rooted):
        rooted.put_content("/docker/a", b"x")
        assert _raw_keys() == ["registry/docker/a"]


class TestContent:
    def test_put_and_get(self, driver, invalidator):
        driver.put_content("/a/b", b"payload")
        assert driver.get_content("/a/b") == b"payload"
        assert invalidator.keys == ["a/b"]

    def test_put_replaces(self, driver):
        driver.put_content("/a", b"first")
        driver.put_content("/a", b"second")
        assert driver.get_content("/a") == b"second"

    def test_get_missing(self, driver):
        with pytest.raises(PathNotFoundError) as exc_info:
            driver.get_content("/missing")
        assert exc_info.value.path == "/missing"
        assert exc_info.value.driver_name == "kodo"

    def test_reader_offset(self, driver):
        driver.put_content("/a", b"0123456789")
        body = driver.reader("/a", 4)
        try:
            assert body.read() == b"456789"
        finally:
            body.close()

    def test_reader_at_end(self, driver):
        driver.put_content("/a", b"0123")
        body = driver.reader("/a", 4)
        assert body.read() == b""
        body.close()

    def test_append(self, driver):
        driver.put_content("/a", b"abc")
        writer = driver.writer("/a", append=True)
        assert writer.size == 3
        writer.write(b"def")
        writer.commit()
        assert driver.get_content("/a") == b"abcdef"

    def test_append_to_missing_path(self, driver):
        writer = driver.writer("/new", append=True)
        assert writer.size == 0
        writer.write(b"fresh")
        writer.commit()
        assert driver.get_content("/new") == b"fresh"

    def test_empty_content(self, driver):
        driver.put_content("/empty", b"")
        assert driver.get_content("/empty") == b""
        assert driver.stat("/empty").size == 0


class TestStat:
    def test_file(self, driver):
        driver.put_content("/a/file", b"12345")
        info = driver.stat("/a/file")
        assert isinstance(info, FileInfo)
        assert info.path == "/a/file"
        assert info.size == 5
        assert not info.is_dir
        assert info.mod_time is not None

    def test_directory(self, driver):
        driver.put_content("/a/file", b"12345")
        info = driver.stat("/a")
        assert info.is_dir
        assert info.path == "/a"
        assert info.mod_time is None

    def test_sibling_sorted_first(self, driver):
        driver.put_content("/a-b", b"x")
        driver.put_content("/a/x", b"x")
        assert driver.stat("/a").is_dir

    def test_only_sibling(self, driver):
        driver.put_content("/a-b", b"x")
        with pytest.raises(PathNotFoundError):
            driver.stat("/a")

    def test_missing(self, driver):
        with pytest.raises(PathNotFoundError) as exc_info:
            driver.stat("/nothing")
        assert exc_info.value.path == "/nothing"

    def test_root_of_rooted_driver(self, rooted):
        rooted.put_content("/docker/a", b"x")
        assert rooted.stat("/").is_dir


class TestList:
    def test_files_and_directories(self, driver):
        driver.put_content("/dir/a", b"x")
        driver.put_content("/dir/b", b"x")
        driver.put_content("/dir/sub/c", b"x")
        assert sorted(driver.list("/dir")) == ["/dir/a", "/dir/b", "/dir/sub"]
        assert sorted(driver.list("/dir/")) == ["/dir/a", "/dir/b", "/dir/sub"]

    def test_root_with_empty_root_directory(self, driver):
        driver.put_content("/docker/a", b"x")
        driver.put_content("/top", b"x")
        assert sorted(driver.list("/")) == ["/docker", "/top"]

    def test_root_with_root_directory(self, rooted):
        rooted.put_content("/docker/a", b"x")
        rooted.put_content("/top", b"x")
        assert sorted(rooted.list("/")) == ["/docker", "/top"]
        assert rooted.list("/docker") == ["/docker/a"]

    def test_empty_root_is_not_an_error(self, driver):
        assert driver.list("/") == []

    def test_missing_directory(self, driver):
        with pytest.raises(PathNotFoundError) as exc_info:
            driver.list("/missing")
        assert exc_info.value.path == "/missing"


class TestMove:
    def test_move(self, driver):
        driver.put_content("/src", b"moved")
        driver.move("/src", "/dst")
        assert driver.get_content("/dst") == b"moved"
        with pytest.raises(PathNotFoundError):
            driver.stat("/src")

    def test_move_overwrites(self, driver):
        driver.put_content("/src", b"new")
        driver.put_content("/dst", b"old")
        driver.move("/src", "/dst")
        assert driver.get_content("/dst") == b"new"

    def test_move_missing(self, driver):
        with pytest.raises(PathNotFoundError) as exc_info:
            driver.move("/missing", "/dst")
        assert exc_info.value.path == "/missing"


class TestDelete:
    def test_file(self, driver, invalidator):
        driver.put_content("/a", b"x")
        invalidator.keys.clear()
        driver.delete("/a")
        assert _raw_keys() == []
        assert invalidator.keys == ["a"]

    def test_tree(self, driver, invalidator):
        for name in ("/d/a", "/d/b", "/d/sub/c"):
            driver.put_content(name, b"x")
        driver.put_content("/d-sibling", b"x")
        invalidator.keys.clear()
        driver.delete("/d")
        assert _raw_keys() == ["d-sibling"]
        assert sorted(invalidator.keys) == ["d/a", "d/b", "d/sub/c"]

    def test_missing(self, driver):
        with pytest.raises(PathNotFoundError) as exc_info:
            driver.delete("/missing")
        assert exc_info.value.path == "/missing"

    def test_paginated(self, s3_env, invalidator):
        driver = _driver(invalidator, list_limit=2)
        for i in range(5):
            driver.put_content(f"/p/{i}", b"x")
        driver.delete("/p")
        assert _raw_keys() == []


class TestUrlFor:
    def test_default(self, driver):
        before = int(time.time())
        url = driver.url_for("/docker/blob")
        parts = urlsplit(url)
        assert url.startswith("https://cdn.example.com/docker/blob?e=")
        deadline = int(parse_qs(parts.query)["e"][0])
        assert before + 3600 <= deadline <= int(time.time()) + 3600

    def test_expiry_option(self, driver):
        expiry = datetime.now(timezone.utc) + timedelta(seconds=120)
        url = driver.url_for("/blob", {"expiry": expiry})
        deadline = int(parse_qs(urlsplit(url).query)["e"][0])
        assert deadline <= int(time.time()) + 121
        assert deadline >= int(time.time()) + 100

    def test_past_expiry_uses_default(self, driver):
        expiry = datetime.now(timezone.utc) - timedelta(seconds=120)
        url = driver.url_for("/blob", {"expiry": expiry})
        deadline = int(parse_qs(urlsplit(url).query)["e"][0])
        assert deadline >= int(time.time()) + 3500

    def test_redirect_host(self, s3_env, invalidator):
        driver = _driver(
            invalidator, redirect_map={"internal": "https://internal.example.com"}
        )
        url = driver.url_for("/blob", {"host": "registry.internal.local:5000"})
        assert url.startswith("https://internal.example.com/blob?e=")
        other = driver.url_for("/blob", {"host": "public.example.org"})
        assert other.startswith("https://cdn.example.com/blob?e=")

    def test_root_directory_in_url(self, rooted):
        url = rooted.url_for("/docker/blob")
        assert url.startswith("https://cdn.example.com/registry/docker/blob?e=")


def _slow_down(**kwargs):
    raise ClientError(
        {
            "Error": {"Code": "SlowDown", "Message": "retry"},
            "ResponseMetadata": {"HTTPStatusCode": 503},
        },
        "S3",
    )


class TestTransientAnswers:
    def test_reader_surfaces_fatal_error(self, driver, monkeypatch):
        monkeypatch.setattr(driver._client._io, "get_object", _slow_down)
        with pytest.raises(KodoOperationError) as exc_info:
            driver.reader("/x")
        assert not isinstance(exc_info.value, TransientError)
        with pytest.raises(KodoOperationError) as exc_info:
            driver.get_content("/x")
        assert not isinstance(exc_info.value, TransientError)

    def test_move_surfaces_fatal_error(self, driver, monkeypatch):
        driver.put_content("/src", b"x")
        monkeypatch.setattr(driver._client._client, "delete_object", _slow_down)
        with pytest.raises(KodoOperationError) as exc_info:
            driver.move("/src", "/dst")
        assert not isinstance(exc_info.value, TransientError)

    def test_list_retries_then_fails(self, driver, monkeypatch):
        calls = []

        def slow_list(**kwargs):
            calls.append(kwargs)
            _slow_down()

        monkeypatch.setattr(driver._client._client, "list_objects", slow_list)
        with pytest.raises(KodoOperationError) as exc_info:
            driver.list("/dir")
        assert not isinstance(exc_info.value, TransientError)
        assert len(calls) == 2
