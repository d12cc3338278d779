import dataclasses
import logging
import os
import pathlib
import sys
from datetime import datetime, timedelta, timezone

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import verigraph`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from verigraph.config import EngineConfig  # noqa: E402
from verigraph.errors import CollaboratorError, DecodedError, ErrorKind  # noqa: E402
from verigraph.ledger import InMemoryLedger, NodeType  # noqa: E402
from verigraph.orchestrator import PublishOrchestrator  # noqa: E402
from verigraph.record import RecordBuilder  # noqa: E402
from verigraph.schema import Authority, ImageItem, Ownership, TextItem  # noqa: E402
from verigraph.signing import Ed25519Signer  # noqa: E402
from verigraph.storage import MemoryStorage  # noqa: E402

ORG = "org-pqr"
ARTICLE_ORIGIN = "https://news.example"
IMAGE_URI = "cdn.example/img/cat.png"
IMAGE_BYTES = b"\x89PNG\r\n\x1a\nnot-really-a-cat"


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless VERIGRAPH_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    run_slow = _env_flag('VERIGRAPH_RUN_SLOW')
    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set VERIGRAPH_RUN_SLOW=1 to enable'))


@pytest.fixture(autouse=True)
def _clean_engine_env(monkeypatch):
    """Tests start from defaults regardless of the caller's VERIGRAPH_* variables."""
    for name in list(os.environ):
        if name.startswith("VERIGRAPH_") and name != "VERIGRAPH_RUN_SLOW":
            monkeypatch.delenv(name)


@pytest.fixture(autouse=True)
def _reset_engine_logging():
    """Drop handlers installed by configure_logging so captured streams are not reused."""
    yield
    root = logging.getLogger("verigraph")
    for handler in list(root.handlers):
        root.removeHandler(handler)


class FakeClock:
    """Monotonic ISO 8601 clock, one second per call."""

    def __init__(self, start: datetime = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)):
        self.now = start
        self.calls = 0

    def __call__(self) -> str:
        self.now += timedelta(seconds=1)
        self.calls += 1
        return self.now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class StaticFetcher:
    """Content fetcher serving fixed bytes per locator."""

    def __init__(self, blobs=None):
        self.blobs = dict(blobs or {})
        self.calls = []

    def fetch(self, uri: str) -> bytes:
        self.calls.append(uri)
        if uri not in self.blobs:
            raise CollaboratorError(
                DecodedError(kind=ErrorKind.UNKNOWN, message=f"no such object: {uri}"),
                collaborator="fetcher",
            )
        return self.blobs[uri]


@pytest.fixture
def org():
    return ORG


@pytest.fixture
def image_bytes():
    return IMAGE_BYTES


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fetcher():
    return StaticFetcher({IMAGE_URI: IMAGE_BYTES})


@pytest.fixture
def signer():
    return Ed25519Signer.generate()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def ledger():
    """In-memory ledger holding only the publisher's organization node."""
    chain = InMemoryLedger()
    chain.create_node(ORG, "", NodeType.ORG)
    chain.writes.clear()
    return chain


@pytest.fixture
def builder(clock):
    return RecordBuilder(clock)


@pytest.fixture
def authority():
    return Authority(name="PQR Media", contact="desk@pqr.example")


@pytest.fixture
def make_text(authority):
    def _make(**overrides):
        item = TextItem(
            title="Hello",
            description="A greeting",
            uri="news.example/articles/hello",
            authority=authority,
            content_type="text/html",
            published="2024-03-05T10:00:00Z",
            source_id="article-1",
            origin=ARTICLE_ORIGIN,
            body="hello world",
        )
        return dataclasses.replace(item, **overrides)
    return _make


@pytest.fixture
def make_image(authority):
    def _make(**overrides):
        item = ImageItem(
            title="Cat",
            description="",
            uri=IMAGE_URI,
            authority=authority,
            content_type="image/png",
            ownership=Ownership.OWNED,
            alt="a cat",
            caption="The office cat",
        )
        return dataclasses.replace(item, **overrides)
    return _make


@pytest.fixture
def config():
    return EngineConfig()


@pytest.fixture
def make_orchestrator(ledger, storage, signer, fetcher, clock, config):
    def _make(engine_config=None, encryption=None):
        return PublishOrchestrator(
            engine_config or config,
            ledger,
            storage,
            signer,
            encryption=encryption,
            fetcher=fetcher,
            clock=clock,
        )
    return _make
