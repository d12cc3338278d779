"""Tests for the storage backends."""

import json

import httpx
import pytest

from verigraph.config import StorageConfig
from verigraph.errors import StorageError
from verigraph.schema import LocationProtocol
from verigraph.storage import (
    GuardedStorage,
    MemoryStorage,
    ObjectStore,
    PinningStorage,
    StorageKind,
    content_id,
    location_protocol,
    storage_from_config,
)

RECORD = {"version": "1.0.0", "data": {"description": "d"}, "signature": {}}


class TestLocationProtocol:

    def test_schemes(self):
        assert location_protocol("ipfs://bafy") is LocationProtocol.IPFS
        assert location_protocol("https://cdn.example/a") is LocationProtocol.HTTPS
        assert location_protocol("store://meta/" + "a" * 64) is LocationProtocol.OBJECT_STORE


class TestMemoryStorage:

    def test_round_trip(self):
        storage = MemoryStorage()
        meta = storage.put("r", RECORD, StorageKind.META)
        asset = storage.put("a", b"bytes", StorageKind.ASSET)
        assert storage.get(meta, StorageKind.META) == RECORD
        assert storage.get(asset, StorageKind.ASSET) == b"bytes"
        assert asset == "memory://asset/" + content_id(b"bytes")
        assert storage.puts == 2

    def test_missing(self):
        with pytest.raises(StorageError):
            MemoryStorage().get("memory://meta/x", StorageKind.META)

    def test_body_type_checked(self):
        with pytest.raises(StorageError):
            MemoryStorage().put("r", b"not a dict", StorageKind.META)
        with pytest.raises(StorageError):
            MemoryStorage().put("a", {"not": "bytes"}, StorageKind.ASSET)


class TestGuardedStorage:

    class BrokenStorage(MemoryStorage):
        def put(self, name, body, kind):
            raise OSError("disk full")

        def get(self, location, kind):
            raise TimeoutError("read timed out")

    def test_put_failure_becomes_storage_error(self):
        with pytest.raises(StorageError) as exc_info:
            GuardedStorage(self.BrokenStorage()).put("x", b"bytes", StorageKind.ASSET)
        assert exc_info.value.collaborator == "storage"
        assert "disk full" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, OSError)

    def test_get_failure_becomes_storage_error(self):
        with pytest.raises(StorageError, match="read timed out"):
            GuardedStorage(self.BrokenStorage()).get("memory://meta/x", StorageKind.META)

    def test_storage_errors_pass_through(self):
        inner = MemoryStorage()
        guarded = GuardedStorage(inner)
        with pytest.raises(StorageError, match="object not found"):
            guarded.get("memory://meta/absent", StorageKind.META)
        location = guarded.put("r", RECORD, StorageKind.META)
        assert inner.get(location, StorageKind.META) == RECORD


class TestObjectStore:

    def test_layout_and_round_trip(self, tmp_path):
        store = ObjectStore(tmp_path)
        location = store.put("record.json", RECORD, StorageKind.META)
        digest = location.rsplit("/", 1)[1]
        assert location.startswith("store://meta/")
        assert (tmp_path / "meta" / f"{digest}.json").exists()
        assert store.get(location, StorageKind.META) == RECORD

    def test_same_bytes_same_location(self, tmp_path):
        store = ObjectStore(tmp_path)
        assert store.put("a", b"x", StorageKind.ASSET) == store.put("b", b"x", StorageKind.ASSET)

    def test_tampered_object_rejected(self, tmp_path):
        store = ObjectStore(tmp_path)
        location = store.put("a", b"x", StorageKind.ASSET)
        digest = location.rsplit("/", 1)[1]
        (tmp_path / "asset" / f"{digest}.bin").write_bytes(b"y")
        with pytest.raises(StorageError, match="digest mismatch"):
            store.get(location, StorageKind.ASSET)

    @pytest.mark.parametrize("location", [
        "ipfs://bafy",
        "store://other/" + "a" * 64,
        "store://meta/not-a-digest",
        "store://meta/" + "a" * 64,
    ])
    def test_bad_locations(self, tmp_path, location):
        with pytest.raises(StorageError):
            ObjectStore(tmp_path).get(location, StorageKind.META)

    def test_non_json_metadata(self, tmp_path):
        store = ObjectStore(tmp_path)
        location = store.put("a", b"\xff\xfe", StorageKind.ASSET)
        meta_location = location.replace("store://asset/", "store://meta/")
        digest = location.rsplit("/", 1)[1]
        (tmp_path / "meta").mkdir()
        (tmp_path / "meta" / f"{digest}.json").write_bytes(b"\xff\xfe")
        with pytest.raises(StorageError, match="not JSON"):
            store.get(meta_location, StorageKind.META)


class PinningService:
    """Fake pinning API and gateway for httpx.MockTransport."""

    def __init__(self):
        self.objects = {}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/pinning/pinJSONToIPFS":
            body = json.loads(request.content)
            cid = "bafy" + content_id(json.dumps(body["pinataContent"], sort_keys=True).encode())[:20]
            self.objects[cid] = json.dumps(body["pinataContent"]).encode()
            return httpx.Response(200, json={"IpfsHash": cid, "PinSize": 1})
        if path == "/pinning/pinFileToIPFS":
            cid = "bafyfile" + str(len(self.objects))
            self.objects[cid] = b"file"
            return httpx.Response(200, json={"IpfsHash": cid})
        if path.startswith("/ipfs/"):
            cid = path[len("/ipfs/"):]
            if cid not in self.objects:
                return httpx.Response(404, text="not pinned")
            return httpx.Response(200, content=self.objects[cid])
        if path == "/data/testAuthentication":
            if request.headers.get("pinata_api_key") != "key":
                return httpx.Response(401, text="unauthorized")
            return httpx.Response(200, json={"message": "ok"})
        return httpx.Response(404)


class TestPinningStorage:

    @pytest.fixture
    def service(self):
        return PinningService()

    @pytest.fixture
    def storage(self, service):
        return PinningStorage(
            api_key="key",
            api_secret="secret",
            api_root="https://pin.example",
            gateway="https://gw.example",
            transport=httpx.MockTransport(service),
        )

    def test_metadata_round_trip(self, storage, service):
        location = storage.put("record.json", RECORD, StorageKind.META)
        assert location.startswith("ipfs://bafy")
        assert storage.get(location, StorageKind.META) == RECORD
        put_request = service.requests[0]
        assert put_request.headers["pinata_secret_api_key"] == "secret"
        assert json.loads(put_request.content)["pinataMetadata"] == {"name": "record.json"}
        assert service.requests[1].url.host == "gw.example"

    def test_file_upload(self, storage, service):
        location = storage.put("asset", b"bytes", StorageKind.ASSET)
        assert location.startswith("ipfs://bafyfile")
        assert service.requests[0].url.path == "/pinning/pinFileToIPFS"

    def test_gateway_miss(self, storage):
        with pytest.raises(StorageError, match="404"):
            storage.get("ipfs://unknown", StorageKind.META)

    def test_missing_cid_in_response(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"ok": True}))
        with PinningStorage(transport=transport) as storage:
            with pytest.raises(StorageError, match="IpfsHash"):
                storage.put("r", RECORD, StorageKind.META)

    def test_server_error(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))
        with PinningStorage(transport=transport) as storage:
            with pytest.raises(StorageError) as exc_info:
                storage.put("r", RECORD, StorageKind.META)
        assert exc_info.value.decoded.raw_data == "boom"

    def test_connection_check(self, storage, service):
        assert storage.test_connection()
        bad = PinningStorage(api_key="wrong", api_root="https://pin.example",
                             transport=httpx.MockTransport(service))
        with pytest.raises(StorageError):
            bad.test_connection()


class TestStorageFromConfig:

    def test_default_is_object_store(self, tmp_path):
        config = StorageConfig()
        config.root_dir.set(str(tmp_path))
        storage = storage_from_config(config)
        assert isinstance(storage, ObjectStore)
        assert storage.root == tmp_path

    def test_pinning_backend(self):
        config = StorageConfig()
        config.backend.set("pinning")
        config.api_root.set("https://pin.example")
        storage = storage_from_config(config, transport=httpx.MockTransport(PinningService()))
        assert isinstance(storage, PinningStorage)
        assert storage.api_root == "https://pin.example"
