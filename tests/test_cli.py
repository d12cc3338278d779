"""Tests for the verigraph command-line interface."""

import json

import pytest
import yaml

from verigraph.cli import main
from verigraph.core import sha256_text
from verigraph.ledger import encode_revert_reason

TEXT_ID = sha256_text("hello world")


@pytest.fixture
def record_file(tmp_path, builder, make_text, signer):
    record = builder.finalize(builder.build_new(make_text(), TEXT_ID), signer)
    path = tmp_path / "record.json"
    path.write_text(record.to_json(), encoding="utf-8")
    return path


def _run(capsys, *argv):
    code = main(list(argv))
    out = capsys.readouterr().out
    return code, out


class TestDeterministicIds:

    def test_segment_id(self, capsys):
        code, out = _run(capsys, "segment-id", "pqr", "license-acme")
        assert code == 0
        assert json.loads(out)["id"] == sha256_text("pqr-license-acme")

    def test_license_id_yaml(self, capsys):
        code, out = _run(capsys, "--format", "yaml", "license-id", "pqr", "acme")
        assert code == 0
        assert yaml.safe_load(out)["id"] == sha256_text("pqr-license-acme")


class TestRecords:

    def test_fingerprint(self, capsys, record_file):
        code, out = _run(capsys, "fingerprint", str(record_file))
        data = json.loads(out)
        assert code == 0
        assert data["identity"] == TEXT_ID
        assert data["history"] == 0
        assert data["fingerprint"].startswith("0x")

    def test_verify_with_root(self, capsys, record_file, signer):
        code, out = _run(capsys, "verify", TEXT_ID, str(record_file), "--root", f"{signer.address()}=did:web:pqr")
        data = json.loads(out)
        assert code == 0
        assert data["signature_verified"] and data["content_binding_verified"]
        assert data["root_identity"] == "did:web:pqr"

    def test_verify_failure_exit_code(self, capsys, record_file):
        code, out = _run(capsys, "verify", sha256_text("other"), str(record_file))
        assert code == 3
        assert json.loads(out)["content_binding_verified"] is False

    def test_bad_root_pair(self, capsys, record_file):
        code, _ = _run(capsys, "verify", TEXT_ID, str(record_file), "--root", "no-separator")
        assert code == 2

    def test_invalid_record_file(self, capsys, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text('{"version": "1.0.0"}', encoding="utf-8")
        code, _ = _run(capsys, "fingerprint", str(path))
        assert code == 2

    def test_missing_file(self, capsys, tmp_path):
        code, _ = _run(capsys, "fingerprint", str(tmp_path / "absent.json"))
        assert code == 2


class TestIdentity:

    def test_text_item_offline(self, capsys, tmp_path):
        path = tmp_path / "item.json"
        path.write_text(json.dumps({
            "type": "text",
            "uri": "news.example/a",
            "description": "d",
            "authority": {"name": "PQR"},
            "contentType": "text/html",
            "body": "hello world",
        }), encoding="utf-8")
        code, out = _run(capsys, "identity", str(path))
        assert code == 0
        assert json.loads(out) == {"identity": TEXT_ID, "kind": "text"}

    def test_invalid_item(self, capsys, tmp_path):
        path = tmp_path / "item.json"
        path.write_text(json.dumps({"type": "text", "body": "x"}), encoding="utf-8")
        code, _ = _run(capsys, "identity", str(path))
        assert code == 1


class TestUtilities:

    def test_decode_error(self, capsys):
        code, out = _run(capsys, "decode-error", encode_revert_reason("Node already exists"))
        assert code == 0
        assert json.loads(out) == {
            "kind": "revert",
            "message": "Node already exists",
            "raw_data": encode_revert_reason("Node already exists"),
            "args": [],
        }

    def test_keygen_to_file(self, capsys, tmp_path):
        out_path = tmp_path / "key.json"
        code, out = _run(capsys, "keygen", "--kid", "k9", "--out", str(out_path))
        assert code == 0
        assert json.loads(out)["address"].startswith("did:key:z")
        assert json.loads(out_path.read_text(encoding="utf-8"))["kid"] == "k9"

    def test_keygen_stdout(self, capsys):
        code, out = _run(capsys, "keygen")
        assert json.loads(out)["jwk"]["crv"] == "Ed25519"


class TestConfigCommands:

    def test_show_masks_secrets(self, capsys, monkeypatch):
        monkeypatch.setenv("VERIGRAPH_PINNING_API_SECRET", "s3cr3t")
        code, out = _run(capsys, "config", "show")
        assert code == 0
        assert json.loads(out)["storage"]["api_secret"] == "***"

    def test_get_from_file(self, capsys, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("publish:\n  batch_policy: abort\n", encoding="utf-8")
        code, out = _run(capsys, "--config", str(path), "config", "get", "publish.batch_policy")
        assert code == 0
        assert json.loads(out)["value"] == "abort"

    def test_validate_reports_errors(self, capsys, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("publish:\n  placement: dated\n", encoding="utf-8")
        code, out = _run(capsys, "--config", str(path), "config", "validate")
        assert code == 2
        assert json.loads(out)["valid"] is False

    def test_validate_ok(self, capsys):
        code, out = _run(capsys, "config", "validate")
        assert code == 0
        assert json.loads(out) == {"valid": True, "errors": []}

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
