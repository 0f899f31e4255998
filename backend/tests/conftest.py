"""
Pytest configuration and fixtures for the texture service tests.
"""
import os
import tempfile

_TEST_ROOT = tempfile.mkdtemp(prefix="ridgelab-tests-")
os.environ.setdefault("RIDGELAB_STORAGE_DIR", os.path.join(_TEST_ROOT, "storage"))
os.environ.setdefault("RIDGELAB_DATABASE_URL", f"sqlite:///{os.path.join(_TEST_ROOT, 'ridgelab.db')}")
os.environ.pop("RIDGELAB_ORACLE_URL", None)
os.environ.pop("RIDGELAB_NOTIFY_URL", None)

import pytest  # noqa: E402

from ridgelab.db.session import build_engine, create_db_and_tables  # noqa: E402
from ridgelab.services.pipeline import TextureRunner  # noqa: E402
from ridgelab.services.runs import RunStore  # noqa: E402
from ridgelab.services.storage import LocalBlobStore  # noqa: E402
from ridgelab.services.texture import encode_png  # noqa: E402

from helpers import build_image  # noqa: E402


@pytest.fixture
def engine(tmp_path):
    """Fresh SQLite database per test."""
    db_engine = build_engine(f"sqlite:///{tmp_path / 'runs.db'}")
    create_db_and_tables(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def store(engine):
    return RunStore(engine)


@pytest.fixture
def blobs(tmp_path):
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def fingerprint_image():
    """8x8 print with dark ridge columns on a light background."""
    reds = []
    for y in range(8):
        for x in range(8):
            reds.append(30 + (y * 3) if x % 3 == 0 else 225 - x)
    return build_image(8, 8, reds)


@pytest.fixture
def fingerprint_png(fingerprint_image):
    return encode_png(fingerprint_image)


@pytest.fixture
def source_key(blobs, fingerprint_png):
    ref = blobs.put("case-1/sample-1/original_1700000000000_abc123_print.png", fingerprint_png, "image/png")
    return ref.key


@pytest.fixture
def make_runner(store, blobs):
    """Build a runner over the test store and blob store."""

    def _make(oracle=None, notifier=None, run_store=None, **kwargs):
        return TextureRunner(run_store or store, blobs, oracle, notifier, **kwargs)

    return _make
