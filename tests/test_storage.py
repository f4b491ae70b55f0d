import pytest
from flask import Flask

from app.portcall.storage import LocalStorage, S3Storage, StorageError, new_blob_key, storage_from_config


def test_local_storage_round_trips_bytes_through_its_url(tmp_path):
    storage = LocalStorage(root=tmp_path, public_base_url="https://portcall.example/")
    url = storage.put_bytes("prearrival/4/nil_list/ab12-nil list.pdf", b"nil")
    assert url == "https://portcall.example/files/prearrival/4/nil_list/ab12-nil%20list.pdf"
    key = storage.key_for_url(url)
    assert key == "prearrival/4/nil_list/ab12-nil list.pdf"
    assert storage.exists(key)
    with storage.open(key) as f:
        assert f.read() == b"nil"


def test_local_storage_ignores_foreign_urls(tmp_path):
    storage = LocalStorage(root=tmp_path, public_base_url="https://portcall.example")
    assert storage.key_for_url("https://elsewhere.example/files/x.pdf") is None
    assert storage.key_for_url("") is None


def test_local_storage_refuses_keys_outside_root(tmp_path):
    storage = LocalStorage(root=tmp_path / "blobs")
    with pytest.raises(StorageError):
        storage.put_bytes("../escape.txt", b"x")
    with pytest.raises(StorageError):
        storage.open("missing.pdf")


def test_new_blob_key_is_unique_and_filename_safe():
    a = new_blob_key("prearrival/1/health_decl", "../../etc/passwd")
    b = new_blob_key("prearrival/1/health_decl", "../../etc/passwd")
    assert a != b
    assert a.startswith("prearrival/1/health_decl/")
    assert ".." not in a
    assert new_blob_key("archives", "").endswith("-document.bin")


def test_storage_from_config_selects_backend(tmp_path):
    local = storage_from_config({"STORAGE_BACKEND": "local", "STORAGE_ROOT": str(tmp_path)})
    assert isinstance(local, LocalStorage)
    s3 = storage_from_config(
        {
            "STORAGE_BACKEND": "s3",
            "S3_BUCKET": "packs",
            "S3_PUBLIC_BASE_URL": "https://cdn.example/packs",
        }
    )
    assert isinstance(s3, S3Storage)
    assert s3.url_for("archives/a b.zip") == "https://cdn.example/packs/archives/a%20b.zip"
    assert s3.key_for_url("https://cdn.example/packs/archives/a%20b.zip") == "archives/a b.zip"


def test_local_storage_uses_request_host_when_base_url_is_unset(tmp_path):
    flask_app = Flask(__name__)
    with flask_app.test_request_context("/", base_url="https://portcall.example"):
        storage = storage_from_config({"STORAGE_ROOT": str(tmp_path)})
    assert storage.url_for("prearrival/1/a.pdf") == "https://portcall.example/files/prearrival/1/a.pdf"

    assert storage_from_config({"STORAGE_ROOT": str(tmp_path)}).url_for("a.pdf") == "/files/a.pdf"
