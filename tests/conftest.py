import io
import os

os.environ.setdefault("ADMIN_TOKEN", "testtoken")
os.environ.setdefault("STORAGE_BACKEND", "local")

import pytest
from PIL import Image

from app.core.errors import ErrorCategory, UploadError, storage_error
from app.core.settings import MB, Settings
from app.db import Base, make_engine, make_session_factory
from app.infra.memory import MemoryPressure, MemoryStats
from app.services.storage import BlobStat, BlobStore, LocalBlobStore


@pytest.fixture
def anyio_backend():
    # Dwing anyio om alleen asyncio te gebruiken (geen Trio nodig)
    return "asyncio"


# -------------------------
# Fakes
# -------------------------
class FakeMemoryMonitor:
    """Instelbare druk; houdt cleanup-aanroepen bij."""

    def __init__(self, available_mb: float = 4096.0, pressure: MemoryPressure = MemoryPressure.low):
        self.available_mb = available_mb
        self.pressure = pressure
        self.limit_mb = 8192.0
        self.cleanups = []

    def get_stats(self) -> MemoryStats:
        return MemoryStats(
            rss_mb=self.limit_mb - self.available_mb,
            limit_mb=self.limit_mb,
            available_mb=self.available_mb,
            pressure=self.pressure,
        )

    def is_under_pressure(self) -> bool:
        return self.get_stats().under_pressure

    def emergency_cleanup(self, reason: str) -> None:
        self.cleanups.append(reason)


class FlakyStore(BlobStore):
    """Wrapper die de eerste N puts/stats laat falen of de grootte vervalst."""

    def __init__(self, inner: BlobStore, *, put_failures=0, stat_failures=0, put_error=None, size_delta=0):
        self.inner = inner
        self.put_failures = put_failures
        self.stat_failures = stat_failures
        self.put_error = put_error or storage_error("transient", code="transient")
        self.size_delta = size_delta
        self.put_calls = 0
        self.stat_calls = 0
        self.removed = []

    def ensure_bucket(self) -> None:
        self.inner.ensure_bucket()

    def put(self, key, data, content_type, metadata=None) -> None:
        self.put_calls += 1
        if self.put_calls <= self.put_failures:
            raise self.put_error
        self.inner.put(key, data, content_type, metadata)

    def get(self, key, length=None) -> bytes:
        return self.inner.get(key, length)

    def stat(self, key) -> BlobStat:
        self.stat_calls += 1
        if self.stat_calls <= self.stat_failures:
            raise storage_error(f"Object not found: {key}", code="not_found")
        st = self.inner.stat(key)
        return BlobStat(key=st.key, size=st.size + self.size_delta, content_type=st.content_type)

    def remove(self, key) -> None:
        self.removed.append(key)
        self.inner.remove(key)


@pytest.fixture
def monitor():
    return FakeMemoryMonitor()


@pytest.fixture
def blob_root(tmp_path):
    return tmp_path / "blobs"


@pytest.fixture
def local_store(blob_root):
    store = LocalBlobStore(str(blob_root), bucket="images")
    store.ensure_bucket()
    return store


def stored_keys(store: LocalBlobStore):
    bucket = store.base_path / store.bucket
    return sorted(p.name for p in bucket.iterdir()) if bucket.exists() else []


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    from app import models  # noqa: F401  (registreert de tabellen)

    Base.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        ADMIN_TOKEN="testtoken",
        STORAGE_BACKEND="local",
        LOCAL_STORAGE_ROOT=str(tmp_path / "blobs"),
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        preprocess_cleanup_pause_sec=0.0,
        strategy_retry_pause_sec=0.0,
        storage_backoff_base_sec=0.0,
        verify_backoff_base_sec=0.0,
        bulk_pause_sec=0.0,
        strategy_timeout_sec=30.0,
    )


# -------------------------
# Image helpers
# -------------------------
def make_image(fmt: str, size=(64, 48), mode="RGB", color=(200, 30, 30)) -> bytes:
    if mode == "RGBA" and len(color) == 3:
        color = color + (128,)
    img = Image.new(mode, size, color)
    buf = io.BytesIO()
    img.save(buf, fmt)
    return buf.getvalue()


def padded_jpeg(total_bytes: int) -> bytes:
    """Geldige JPEG aangevuld met nullen na de EOI-marker tot exact total_bytes."""
    data = make_image("JPEG", size=(320, 240))
    return data + b"\x00" * (total_bytes - len(data))


def split_chunks(data: bytes, chunk_size: int):
    return [data[i:i + chunk_size] for i in range(0, len(data), chunk_size)]


def processing_error(code="transform_failed") -> UploadError:
    return UploadError("boom", ErrorCategory.processing, retryable=True, code=code)


NINE_MB = 9 * MB
THREE_MB = 3 * MB
