import pytest
from google.api_core import exceptions as api_exceptions

import src.backend.storage_client as storage_module


class _FakeBlob:
    def __init__(self, bucket, name):
        self._bucket = bucket
        self.name = name

    def download_as_bytes(self):
        return self._bucket.objects[self.name]

    def delete(self):
        if self.name not in self._bucket.objects:
            raise api_exceptions.NotFound(self.name)
        del self._bucket.objects[self.name]


class _FakeBucket:
    def __init__(self, objects):
        self.objects = dict(objects)

    def blob(self, name):
        return _FakeBlob(self, name)


@pytest.fixture
def bucket(monkeypatch):
    fake = _FakeBucket({"uploads/a.pdf": b"%PDF", "renders/p1.png": b"png"})
    monkeypatch.setattr(storage_module, "get_bucket", lambda name: fake)
    return fake


def test_reader_and_deleter_bind_bucket(bucket):
    read = storage_module.make_file_reader("scores")
    delete = storage_module.make_file_deleter("scores")
    assert read("uploads/a.pdf") == b"%PDF"
    delete("renders/p1.png")
    assert "renders/p1.png" not in bucket.objects


def test_delete_missing_object_is_not_an_error(bucket):
    assert storage_module.delete_file("scores", "renders/missing.png") is False
    assert storage_module.delete_file("scores", "uploads/a.pdf") is True


def test_get_bucket_requires_name():
    with pytest.raises(ValueError, match="bucket name"):
        storage_module.get_bucket("")
