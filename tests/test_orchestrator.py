"""
End-to-end publish tests: orchestrator over the in-memory ledger and storage.

Covers the four reference scenarios, history growth across re-publishes,
batch policies, the gas ceiling, encryption and dated placement.
"""

import time
from datetime import timedelta

import pytest

from verigraph.config import EngineConfig
from verigraph.core import sha256_bytes, sha256_text
from verigraph.diff import Action
from verigraph.encryption import AesGcmEncryptionService, EncryptionClient
from verigraph.errors import (
    CollaboratorError,
    ConsistencyError,
    EncryptionTimeout,
    ErrorKind,
    GasCeilingExceeded,
    InputError,
    StorageError,
)
from verigraph.hierarchy import ORIGINAL_MATERIAL_LABEL, license_node_id, segment_id
from verigraph.identity import InMemoryIdentityRegistry
from verigraph.ledger import NodeType
from verigraph.observability import correlation_id_var
from verigraph.orchestrator import BatchError, build_orchestrator
from verigraph.schema import Article, ArticleMetadata, AssetRecord, ContentKind, Ownership, TextItem
from verigraph.storage import StorageKind
from verigraph.verify import verify

WRITE_OPS = ("publish", "set_uri")


def _record(storage, location) -> AssetRecord:
    return AssetRecord.from_dict(storage.get(location, StorageKind.META))


def _item_writes(ledger, identity):
    return [w.operation for w in ledger.writes_for(identity) if w.operation in WRITE_OPS]


class TestScenarios:

    def test_a_new_text_item(self, make_orchestrator, make_text, ledger, storage, org):
        batch = make_orchestrator().publish_batch([make_text()], org)
        assert batch.ok
        result = batch.items[0]
        assert result.identity == sha256_text("hello world")
        assert result.action is Action.PUBLISH
        assert _record(storage, result.location).history == []
        assert ledger.get_node_by_id(result.identity).uri == result.location
        assert _item_writes(ledger, result.identity) == ["publish"]

    def test_b_text_with_new_timestamp_republishes(self, make_orchestrator, make_text, ledger, storage, org):
        orchestrator = make_orchestrator()
        first = orchestrator.publish_batch([make_text()], org).items[0]
        token = ledger.get_node_by_id(first.identity).token

        second = orchestrator.publish_batch([make_text(published="2024-03-06T10:00:00Z")], org).items[0]
        assert second.action is Action.PUBLISH
        assert second.identity == first.identity
        assert _record(storage, second.location).history == [first.location]
        node = ledger.get_node_by_id(second.identity)
        assert node.token == token
        assert node.uri == second.location

    def test_c_unchanged_image_is_noop(self, make_orchestrator, make_image, ledger, storage, org, image_bytes):
        orchestrator = make_orchestrator()
        first = orchestrator.publish_batch([make_image()], org).items[0]
        puts, writes = storage.puts, len(ledger.writes)

        second = orchestrator.publish_batch([make_image()], org).items[0]
        assert second.identity == sha256_bytes(image_bytes)
        assert second.action is Action.NOOP
        assert second.location == first.location
        assert storage.puts == puts
        assert len(ledger.writes) == writes

    def test_d_licensed_parent(self, make_orchestrator, make_image, org):
        item = make_image(ownership=Ownership.LICENSED, licensed_from="acme")
        orchestrator = make_orchestrator()
        first = orchestrator.publish_batch([item], org).items[0]
        second = orchestrator.publish_batch([item], org).items[0]
        assert first.parent == second.parent == license_node_id(org, "acme")
        assert first.parent == sha256_text(f"{org}-license-acme")


class TestRecordsAndWrites:

    def test_history_grows_by_one_per_change(self, make_orchestrator, make_text, storage, org):
        orchestrator = make_orchestrator()
        locations = []
        for k, description in enumerate(["v1", "v2", "v3", "v4"], start=1):
            result = orchestrator.publish_batch([make_text(description=description)], org).items[0]
            record = _record(storage, result.location)
            assert len(record.history) == k - 1
            assert record.history == locations
            locations.append(result.location)

    def test_changed_image_updates_pointer(self, make_orchestrator, make_image, ledger, storage, org):
        orchestrator = make_orchestrator()
        first = orchestrator.publish_batch([make_image()], org).items[0]
        second = orchestrator.publish_batch([make_image(caption="New caption")], org).items[0]
        assert second.action is Action.SET_URI
        assert _record(storage, second.location).history == [first.location]
        assert ledger.get_node_by_id(second.identity).uri == second.location
        assert _item_writes(ledger, second.identity) == ["publish", "set_uri"]
        assert second.parent == first.parent == segment_id(org, ORIGINAL_MATERIAL_LABEL)

    def test_new_image_points_at_source(self, make_orchestrator, make_image, storage, org):
        result = make_orchestrator().publish_batch([make_image()], org).items[0]
        record = _record(storage, result.location)
        assert [loc.to_dict() for loc in record.locations] == [
            {"protocol": "https", "uri": "https://cdn.example/img/cat.png"}
        ]

    def test_new_text_body_stored(self, make_orchestrator, make_text, storage, org):
        result = make_orchestrator().publish_batch([make_text()], org).items[0]
        location = _record(storage, result.location).locations[0]
        assert location.protocol == "object-store"
        assert storage.get(location.uri, StorageKind.ASSET) == b"hello world"

    def test_records_are_signed(self, make_orchestrator, make_text, storage, signer, org):
        result = make_orchestrator().publish_batch([make_text()], org).items[0]
        registry = InMemoryIdentityRegistry({signer.address(): "root"})
        assert verify(result.identity, _record(storage, result.location), registry).ok

    def test_owned_text_placed_under_article(self, make_orchestrator, make_text, ledger, org):
        item = make_text()
        result = make_orchestrator().publish_batch([item], org).items[0]
        om = segment_id(org, ORIGINAL_MATERIAL_LABEL)
        assert result.parent == segment_id(item.origin, item.source_id)
        article = ledger.get_node_by_id(result.parent)
        assert ledger.parent_of(article.token).id == om
        asset = ledger.get_node_by_id(result.identity)
        assert ledger.parent_of(asset.token).id == result.parent


class TestBatchPolicy:

    @pytest.fixture
    def items(self, make_image, make_text):
        bad = make_image(ownership=Ownership.LICENSED, licensed_from="")
        return [bad, make_text()]

    def test_continue_reports_partial_results(self, make_orchestrator, items, ledger, org):
        batch = make_orchestrator().publish_batch(items, org)
        assert not batch.ok and not batch.aborted
        assert len(batch.items) == 2
        failed, published = batch.items
        assert isinstance(failed.error, InputError)
        assert failed.error.field == "licensed_from"
        assert published.ok
        assert batch.summary() == [{"identity": published.identity, "kind": "text"}]
        with pytest.raises(BatchError) as exc_info:
            batch.raise_for_errors()
        assert exc_info.value.result is batch

    def test_abort_stops_at_first_failure(self, make_orchestrator, items, ledger, org, config):
        config.publish.batch_policy.set("abort")
        batch = make_orchestrator().publish_batch(items, org)
        assert batch.aborted
        assert len(batch.items) == 1
        assert not ledger.has_node(sha256_text("hello world"))

    def test_correlation_id_scoped_to_batch(self, make_orchestrator, make_text, org):
        batch = make_orchestrator().publish_batch([make_text()], org)
        assert batch.correlation_id.startswith("corr-")
        assert correlation_id_var.get() == ""

    def test_item_result_to_dict(self, make_orchestrator, items, org):
        out = make_orchestrator().publish_batch(items, org).items[0].to_dict()
        assert out["kind"] == "image"
        assert out["error"]["type"] == "InputError"


class TestCollaboratorFailures:

    def test_gas_ceiling_blocks_every_write(self, make_orchestrator, make_text, ledger, config, org):
        config.ledger.max_gas_price.set(10)
        ledger.set_gas_price(20)
        result = make_orchestrator().publish_batch([make_text()], org).items[0]
        assert isinstance(result.error, GasCeilingExceeded)
        assert ledger.writes == []

    def test_existing_node_without_record(self, make_orchestrator, make_text, ledger, org):
        ledger.create_node(sha256_text("hello world"), org, NodeType.ASSET)
        result = make_orchestrator().publish_batch([make_text()], org).items[0]
        assert isinstance(result.error, ConsistencyError)

    def test_fetch_failure(self, make_orchestrator, make_image, org):
        result = make_orchestrator().publish_batch([make_image(uri="cdn.example/missing.png")], org).items[0]
        assert result.error is not None
        assert result.error.collaborator == "fetcher"

    def test_unexpected_fetch_error_keeps_batch_going(self, make_orchestrator, make_text, make_image,
                                                      fetcher, org, monkeypatch):
        def reset(uri):
            raise OSError("connection reset")

        monkeypatch.setattr(fetcher, "fetch", reset)
        items = [make_text(), make_image(), make_text(body="second story")]
        batch = make_orchestrator().publish_batch(items, org)
        assert [r.ok for r in batch.items] == [True, False, True]
        failed = batch.items[1]
        assert isinstance(failed.error, CollaboratorError)
        assert failed.error.collaborator == "fetcher"
        assert failed.error.kind is ErrorKind.UNKNOWN
        assert "connection reset" in str(failed.error)

    def test_unexpected_storage_error_fails_item(self, make_orchestrator, make_text, storage, ledger,
                                                 org, monkeypatch):
        def full(name, body, kind):
            raise OSError("disk full")

        monkeypatch.setattr(storage, "put", full)
        batch = make_orchestrator().publish_batch([make_text()], org)
        assert isinstance(batch.items[0].error, StorageError)
        assert _item_writes(ledger, sha256_text("hello world")) == []


class TestEncryption:

    def test_encrypted_text(self, make_orchestrator, make_text, storage, config, org):
        config.encryption.enabled.set(True)
        service = AesGcmEncryptionService()
        client = EncryptionClient(lambda: service)
        result = make_orchestrator(encryption=client).publish_batch([make_text(encrypt=True)], org).items[0]

        record = _record(storage, result.location)
        assert record.encrypted
        token = record.access["aes-gcm"]
        ciphertext = storage.get(record.locations[0].uri, StorageKind.ASSET)
        assert ciphertext != b"hello world"
        assert service.decrypt(ciphertext, token) == b"hello world"
        assert client.connects == 1
        assert not client.connected

    def test_encryption_requires_enabled_service(self, make_orchestrator, make_text, org):
        result = make_orchestrator().publish_batch([make_text(encrypt=True)], org).items[0]
        assert isinstance(result.error, InputError)
        assert result.error.field == "encrypt"

    def test_encryption_timeout_fails_item(self, make_orchestrator, make_text, ledger, storage, config, org):
        def slow_factory():
            time.sleep(1.0)
            return AesGcmEncryptionService()

        config.encryption.enabled.set(True)
        client = EncryptionClient(slow_factory, timeout_seconds=0.05)
        result = make_orchestrator(encryption=client).publish_batch([make_text(encrypt=True)], org).items[0]
        assert isinstance(result.error, EncryptionTimeout)
        assert ledger.writes == []
        assert storage.puts == 0


class TestDatedPlacement:

    @pytest.fixture
    def dated(self, config):
        config.publish.placement.set("dated")
        config.publish.license.set("cc-by")
        return config

    @staticmethod
    def _path(org, labels):
        parent = org
        for label in labels:
            parent = segment_id(parent, label)
        return parent

    def test_text_grants_license_after_write(self, make_orchestrator, make_text, ledger, dated, org):
        result = make_orchestrator().publish_batch([make_text()], org).items[0]
        assert result.parent == self._path(org, ["cc-by", "text", "2024", "3", "2024-03-05"])
        assert ledger.get_node_by_id(result.identity).access_auth == "cc-by"
        assert [w.operation for w in ledger.writes_for(result.identity)] == ["publish", "set_access_auth"]

    def test_noop_issues_no_grant(self, make_orchestrator, make_text, ledger, dated, org):
        orchestrator = make_orchestrator()
        first = orchestrator.publish_batch([make_text()], org).items[0]
        writes = len(ledger.writes)
        second = orchestrator.publish_batch([make_text()], org).items[0]
        assert second.action is Action.NOOP
        assert second.parent == first.parent
        assert len(ledger.writes) == writes

    def test_image_dated_by_publication(self, make_orchestrator, make_image, dated, org):
        result = make_orchestrator().publish_batch([make_image()], org).items[0]
        assert result.parent == self._path(org, ["cc-by", "image", "2024", "6", "2024-06-01"])

    def test_changed_image_stays_under_original_date(self, make_orchestrator, make_image, ledger,
                                                     clock, dated, org):
        orchestrator = make_orchestrator()
        first = orchestrator.publish_batch([make_image()], org).items[0]
        clock.now += timedelta(days=40)
        mark = len(ledger.writes)

        second = orchestrator.publish_batch([make_image(caption="New caption")], org).items[0]
        assert second.action is Action.SET_URI
        assert [w.operation for w in ledger.writes[mark:]] == ["set_uri", "set_access_auth"]
        assert second.parent == first.parent
        node = ledger.get_node_by_id(second.identity)
        assert ledger.parent_of(node.token).id == first.parent

    def test_missing_license_rejected(self, make_orchestrator, make_text, config, org):
        config.publish.placement.set("dated")
        result = make_orchestrator().publish_batch([make_text()], org).items[0]
        assert isinstance(result.error, InputError)
        assert result.error.field == "license"


class TestNoopHierarchy:

    def test_default_resolves_parent(self, make_orchestrator, make_image, ledger, org):
        orchestrator = make_orchestrator()
        orchestrator.publish_batch([make_image()], org)
        writes = len(ledger.writes)
        second = orchestrator.publish_batch([make_image()], org).items[0]
        assert second.parent == segment_id(org, ORIGINAL_MATERIAL_LABEL)
        assert len(ledger.writes) == writes

    def test_skip_flag(self, make_orchestrator, make_image, ledger, config, org):
        config.publish.skip_hierarchy_on_noop.set(True)
        orchestrator = make_orchestrator()
        orchestrator.publish_batch([make_image()], org)
        second = orchestrator.publish_batch([make_image()], org).items[0]
        assert second.action is Action.NOOP
        assert second.parent == ""


class TestArticles:

    def test_images_then_text(self, make_orchestrator, make_image, authority, org, image_bytes):
        meta = ArticleMetadata(
            title="Cats & Dogs",
            description="An article",
            uri="news.example/cats",
            origin="https://news.example",
            date_published="2024-03-05T10:00:00Z",
            id="article-9",
            authority=authority,
        )
        text = TextItem(title="", description="", uri="", authority=authority,
                        content_type="text/html", body="<p>Hi</p>")
        article = Article(metadata=meta, contents=[text, make_image()])

        batch = make_orchestrator().publish_article(article, org)
        assert batch.ok
        assert [r.kind for r in batch.items] == [ContentKind.IMAGE, ContentKind.TEXT]
        assert batch.items[0].identity == sha256_bytes(image_bytes)
        assert batch.items[1].parent == segment_id("https://news.example", "article-9")


class TestBuildOrchestrator:

    def test_object_store_from_config(self, tmp_path, ledger, signer, fetcher, make_text, org):
        config = EngineConfig()
        config.storage.root_dir.set(str(tmp_path))
        orchestrator = build_orchestrator(config, ledger, signer, fetcher=fetcher)
        result = orchestrator.publish_batch([make_text()], org).items[0]
        assert result.location.startswith("store://meta/")
        assert (tmp_path / "meta").is_dir()

    def test_encryption_wired_when_enabled(self, tmp_path, ledger, signer, make_text, org):
        config = EngineConfig()
        config.storage.root_dir.set(str(tmp_path))
        config.encryption.enabled.set(True)
        orchestrator = build_orchestrator(
            config, ledger, signer, encryption_factory=AesGcmEncryptionService,
        )
        assert orchestrator.publish_batch([make_text(encrypt=True)], org).ok
