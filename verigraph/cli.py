"""
verigraph CLI

Operator commands for inspecting records and the deterministic parts of the
engine. Nothing here talks to a ledger.

Usage:
    verigraph <command> [subcommand] [options]

Commands:
    identity        Asset identity of a content item (JSON)
    fingerprint     Identity binding and metadata fingerprint of a record
    verify          Run the verification protocol on a record
    segment-id      Hierarchy segment id of PARENT/LABEL
    license-id      License container id of ORG/LICENSOR
    decode-error    Classify raw ledger revert data
    keygen          Generate an Ed25519 signing key (JWK)
    config          Configuration management
"""

from __future__ import annotations

import argparse
import json
import pathlib
import sys
from enum import Enum
from typing import Any, Dict, List, Optional

import yaml

from verigraph import __version__
from verigraph.canonical import Canonicalizer, HttpContentFetcher
from verigraph.config import ConfigManager
from verigraph.core import canonical_digest
from verigraph.errors import InputError, decode_ledger_error
from verigraph.hierarchy import license_node_id, segment_id
from verigraph.identity import InMemoryIdentityRegistry
from verigraph.ledger import LedgerRevert
from verigraph.observability import EngineLayer, configure_logging, get_logger
from verigraph.schema import AssetRecord, item_from_dict
from verigraph.signing import did_key_from_public_bytes, b64url_decode, generate_ed25519_jwk
from verigraph.verify import verify

logger = get_logger("cli", EngineLayer.CLI)


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.YAML:
        return yaml.dump(data, default_flow_style=False, sort_keys=False)
    return json.dumps(data, indent=2, default=str)


def _load_json(path: str) -> Any:
    p = pathlib.Path(path)
    if not p.exists():
        raise CLIError(f"File not found: {path}", exit_code=2)
    try:
        return json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise CLIError(f"{path} is not valid JSON: {exc}", exit_code=2)


def _load_record(path: str) -> AssetRecord:
    try:
        return AssetRecord.from_dict(_load_json(path))
    except InputError as exc:
        raise CLIError(f"{path} is not a valid asset record: {exc.message}", exit_code=2)


def _parse_roots(pairs: List[str]) -> Dict[str, str]:
    roots: Dict[str, str] = {}
    for pair in pairs:
        signer, sep, root = pair.partition("=")
        if not sep or not signer or not root:
            raise CLIError(f"--root expects SIGNER=ROOT, got {pair!r}", exit_code=2)
        roots[signer] = root
    return roots


class VerigraphCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="verigraph",
            description="Content publish and provenance engine",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"verigraph {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--config", "-c",
            help="YAML configuration file",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress error messages",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        sub = self.subparsers

        identity = sub.add_parser("identity", help="Asset identity of a content item")
        identity.add_argument("item", help="Content item JSON file")

        fingerprint = sub.add_parser("fingerprint", help="Fingerprint of a stored record")
        fingerprint.add_argument("record", help="AssetRecord JSON file")

        verify_cmd = sub.add_parser("verify", help="Verify a stored record")
        verify_cmd.add_argument("identity", help="Expected asset identity (0x-prefixed digest)")
        verify_cmd.add_argument("record", help="AssetRecord JSON file")
        verify_cmd.add_argument(
            "--root", action="append", default=[], metavar="SIGNER=ROOT",
            help="Registered root identity of a signer (repeatable)",
        )

        seg = sub.add_parser("segment-id", help="Hierarchy segment id")
        seg.add_argument("parent", help="Parent node id")
        seg.add_argument("label", help="Segment label")

        lic = sub.add_parser("license-id", help="License container id")
        lic.add_argument("org", help="Organization node id")
        lic.add_argument("licensor", help="Licensor name")

        dec = sub.add_parser("decode-error", help="Classify raw ledger revert data")
        dec.add_argument("data", help="0x-prefixed revert data")
        dec.add_argument("--message", default="", help="Transport error message")

        keygen = sub.add_parser("keygen", help="Generate an Ed25519 signing key")
        keygen.add_argument("--kid", default="key-1", help="Key id")
        keygen.add_argument("--out", help="Write the private JWK to this file")

        config = sub.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")
        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("path", help="Config path (e.g., publish.batch_policy)")
        config_sub.add_parser("show", help="Show all configuration (secrets masked)")
        config_sub.add_parser("validate", help="Validate configuration")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            self._manager = ConfigManager()
            if parsed.config:
                self._manager.load_from_file(parsed.config)
            obs = self._manager.config.observability
            configure_logging(obs.log_level.get(), obs.log_format.get())

            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return 0

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except Exception as e:
            logger.error("Command failed", error_code=type(e).__name__, operation=parsed.command, reason=str(e))
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 1

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command.replace("-", "_")
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {args.command} {subcmd or ''}")

        return handler(args)

    def _handle_identity(self, args: argparse.Namespace) -> Any:
        item = item_from_dict(_load_json(args.item))
        item.validate()
        with HttpContentFetcher(timeout=self._manager.get("storage.timeout_seconds")) as fetcher:
            identity = Canonicalizer(fetcher).identity(item)
        return {"identity": identity, "kind": item.kind.value}

    def _handle_fingerprint(self, args: argparse.Namespace) -> Any:
        record = _load_record(args.record)
        return {
            "identity": record.identity,
            "fingerprint": Canonicalizer.fingerprint(record),
            "digest": canonical_digest(record.data_dict()),
            "history": len(record.manifest.history),
        }

    def _handle_verify(self, args: argparse.Namespace) -> Any:
        record = _load_record(args.record)
        registry = InMemoryIdentityRegistry(_parse_roots(args.root))
        result = verify(args.identity, record, registry).to_dict()
        if not (result["signature_verified"] and result["content_binding_verified"]):
            print(format_output(result, OutputFormat(args.format)))
            raise CLIError("record failed verification", exit_code=3)
        return result

    def _handle_segment_id(self, args: argparse.Namespace) -> Any:
        return {"parent": args.parent, "label": args.label, "id": segment_id(args.parent, args.label)}

    def _handle_license_id(self, args: argparse.Namespace) -> Any:
        return {"org": args.org, "licensor": args.licensor, "id": license_node_id(args.org, args.licensor)}

    def _handle_decode_error(self, args: argparse.Namespace) -> Any:
        return decode_ledger_error(LedgerRevert(args.message, args.data)).to_dict()

    def _handle_keygen(self, args: argparse.Namespace) -> Any:
        jwk = generate_ed25519_jwk(kid=args.kid)
        did = did_key_from_public_bytes(b64url_decode(jwk["x"]))
        if args.out:
            pathlib.Path(args.out).write_text(json.dumps(jwk, indent=2) + "\n", encoding="utf-8")
            return {"address": did, "kid": args.kid, "written": args.out}
        return {"address": did, "jwk": jwk}

    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        return {"path": args.path, "value": self._manager.get(args.path)}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        return self._manager.config.to_dict(redact=True)

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        errors = self._manager.validate()
        if errors:
            print(format_output({"valid": False, "errors": errors}, OutputFormat(args.format)))
            raise CLIError("configuration is invalid", exit_code=2)
        return {"valid": True, "errors": []}


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    cli = VerigraphCLI()
    return cli.run(argv)


if __name__ == "__main__":
    sys.exit(main())
