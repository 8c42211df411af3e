import pytest

from backend.services.autosync.errors import BlobNotFoundError, BlobStoreError, ValidationError
from backend.services.autosync.storage.factory import LocalBlobStoreFactory
from backend.services.autosync.storage.local import LocalBlobStore, LocalConfig


@pytest.fixture
def store(tmp_path):
    return LocalBlobStore(LocalConfig(base_path=str(tmp_path)))


def test_put_get_and_list(store):
    store.put("gmail", "alice@example.com/m1.eml", b"one")
    store.put("gmail", "alice@example.com/m2.eml", b"two")
    store.put("gmail", "bob@example.com/m1.eml", b"three")

    assert store.get("gmail", "alice@example.com/m2.eml") == b"two"
    assert store.list_keys("gmail", "alice@example.com/") == {
        "alice@example.com/m1.eml",
        "alice@example.com/m2.eml",
    }


def test_put_replaces_existing_object(store):
    store.put("database", "shop/dump.sql.gz", b"old")
    store.put("database", "shop/dump.sql.gz", b"new")

    assert store.get("database", "shop/dump.sql.gz") == b"new"


def test_missing_object_and_namespace_raise_not_found(store):
    with pytest.raises(BlobNotFoundError):
        store.get("gmail", "nothing")
    with pytest.raises(BlobNotFoundError):
        store.list_keys("outlook")


def test_delete_is_idempotent(store):
    store.put("gmail", "a/b/c", b"x")
    store.delete("gmail", "a/b/c")
    store.delete("gmail", "a/b/c")

    assert store.list_keys("gmail") == set()


@pytest.mark.parametrize("key", ["../escape", "a/../../escape", ""])
def test_keys_cannot_escape_the_namespace(store, key):
    with pytest.raises(BlobStoreError):
        store.put("gmail", key, b"x")


def test_factory_isolates_destination_tokens(tmp_path):
    factory = LocalBlobStoreFactory(str(tmp_path))

    factory("token-a").put("gmail", "k", b"a")
    factory("token-b").put("gmail", "k", b"b")

    assert factory("token-a").get("gmail", "k") == b"a"
    assert factory("token-b").get("gmail", "k") == b"b"
    assert not any("token-a" in path.name for path in tmp_path.iterdir())


def test_factory_rejects_empty_token(tmp_path):
    with pytest.raises(ValidationError):
        LocalBlobStoreFactory(str(tmp_path))("")


def test_failed_write_leaves_no_temporary_file(store, tmp_path, monkeypatch):
    def refuse(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr("backend.services.autosync.storage.local.os.replace", refuse)

    with pytest.raises(BlobStoreError):
        store.put("database", "shop/dump.sql.gz", b"data")

    assert [path.name for path in tmp_path.rglob(".upload-*")] == []


def test_ensure_namespace_creates_an_empty_listable_namespace(store):
    store.ensure_namespace("outlook")

    assert store.list_keys("outlook") == set()
