import io
import time

import pytest
from PIL import Image

from app.core.errors import ErrorCategory, Severity, UploadError
from app.core.settings import MB
from app.infra.memory import MemoryPressure
from app.services.format_detection import detect_format
from app.services.image_strategies import (
    DEFAULT_STRATEGIES,
    ProcessingStrategy,
    StrategyRunner,
    emergency,
    format_token,
    select_strategies,
)

from conftest import FakeMemoryMonitor, make_image, processing_error


class _Sleeps:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def _runner(monitor=None, **kw):
    kw.setdefault("sleep", _Sleeps())
    return StrategyRunner(monitor or FakeMemoryMonitor(), **kw)


def _names(strategies):
    return [s.name for s in strategies]


# -------------------------
# Selectie (pure functie)
# -------------------------
def test_select_orders_by_priority():
    assert _names(select_strategies(DEFAULT_STRATEGIES, 4096, 1 * MB, "image/jpeg")) == [
        "high-quality",
        "memory-efficient",
        "emergency",
    ]


def test_select_large_jpeg_prefers_memory_efficient():
    picked = select_strategies(DEFAULT_STRATEGIES, 4096, 30 * MB, "image/jpeg")
    assert picked[0].name == "memory-efficient"


def test_select_respects_memory_headroom():
    assert _names(select_strategies(DEFAULT_STRATEGIES, 300, 1 * MB, "image/png")) == [
        "memory-efficient",
        "emergency",
    ]
    assert select_strategies(DEFAULT_STRATEGIES, 100, 1 * MB, "image/png") == []


def test_select_tiff_skips_web_tiers():
    assert _names(select_strategies(DEFAULT_STRATEGIES, 4096, 1 * MB, "image/tiff")) == [
        "format-normalizer",
        "emergency",
    ]


def test_format_token():
    assert format_token("image/JPG") == "jpeg"
    assert format_token("image/svg+xml") == "svg+xml"
    assert format_token("image/png; charset=binary") == "png"


# -------------------------
# Runner
# -------------------------
@pytest.mark.anyio
async def test_jpeg_uses_high_quality():
    result = await _runner().process(make_image("JPEG", size=(3000, 1000)), "image/jpeg")
    assert result.strategy == "high-quality"
    assert result.content_type == "image/jpeg"
    assert (result.width, result.height) == (2048, 683)
    assert result.original_size > 0
    assert result.warnings == []


@pytest.mark.anyio
async def test_png_with_alpha_stays_png():
    result = await _runner().process(make_image("PNG", mode="RGBA"), "image/png")
    assert result.strategy == "high-quality"
    assert result.content_type == "image/png"
    assert Image.open(io.BytesIO(result.data)).mode == "RGBA"


@pytest.mark.anyio
async def test_tiff_goes_through_format_normalizer():
    data = make_image("TIFF")
    detected = detect_format(data, "scan.tiff")
    assert detected.mime == "image/tiff"

    result = await _runner().process(data, detected.mime)
    assert result.strategy == "format-normalizer"
    assert result.content_type == "image/jpeg"
    assert Image.open(io.BytesIO(result.data)).format == "JPEG"
    assert any("Converted from TIFF" in w for w in result.warnings)


@pytest.mark.anyio
async def test_no_viable_strategy_forces_emergency():
    monitor = FakeMemoryMonitor(available_mb=64, pressure=MemoryPressure.low)
    result = await _runner(monitor).process(make_image("PNG", size=(1200, 900)), "image/png")
    assert result.strategy == "emergency"
    assert result.content_type == "image/jpeg"
    assert max(result.width, result.height) <= 800
    assert len(result.warnings) == 2


@pytest.mark.anyio
async def test_all_strategies_failing_is_critical():
    runner = _runner()
    with pytest.raises(UploadError) as exc:
        await runner.process(b"\xff\xd8\xff" + b"not really a jpeg" * 10, "image/jpeg")
    err = exc.value
    assert err.category == ErrorCategory.processing
    assert err.severity == Severity.critical
    assert err.retryable is False
    assert err.suggestions
    assert [a["strategy"] for a in err.details["attempts"]] == ["high-quality", "memory-efficient", "emergency"]
    # cleanup + pauze tussen pogingen
    assert runner.monitor.cleanups == ["strategy_fallback:memory-efficient", "strategy_fallback:emergency"]
    assert len(runner._sleep.calls) == 2


@pytest.mark.anyio
async def test_falls_back_after_failure():
    def failing(data):
        raise processing_error()

    registry = [
        ProcessingStrategy("flaky", 1, 10, 10 * MB, frozenset({"png"}), failing),
        ProcessingStrategy("emergency", 9, 10, 10 * MB, frozenset({"*"}), emergency),
    ]
    result = await _runner(registry=registry).process(make_image("PNG"), "image/png")
    assert result.strategy == "emergency"


@pytest.mark.anyio
async def test_strategy_timeout_falls_back():
    def slow(data):
        time.sleep(0.5)
        raise processing_error()

    registry = [
        ProcessingStrategy("slow", 1, 10, 10 * MB, frozenset({"*"}), slow),
        ProcessingStrategy("emergency", 2, 10, 10 * MB, frozenset({"*"}), emergency),
    ]
    result = await _runner(registry=registry, timeout_sec=0.05).process(make_image("JPEG"), "image/jpeg")
    assert result.strategy == "emergency"


@pytest.mark.anyio
async def test_cleanup_before_processing_under_pressure():
    monitor = FakeMemoryMonitor(available_mb=4096, pressure=MemoryPressure.high)
    sleeps = _Sleeps()
    runner = _runner(monitor, sleep=sleeps, preprocess_pause_sec=2.0)
    await runner.process(make_image("JPEG"), "image/jpeg")
    assert monitor.cleanups[0] == "pre_processing"
    assert sleeps.calls[0] == 2.0


# -------------------------
# Format detection
# -------------------------
@pytest.mark.parametrize(
    "fmt,mime",
    [("JPEG", "image/jpeg"), ("PNG", "image/png"), ("GIF", "image/gif"), ("BMP", "image/bmp"), ("WEBP", "image/webp")],
)
def test_detect_by_magic_bytes(fmt, mime):
    detected = detect_format(make_image(fmt), "whatever.bin")
    assert detected.mime == mime
    assert detected.confidence == "high"


def test_detect_falls_back_to_extension():
    detected = detect_format(b"\x00" * 64, "photo.heic")
    assert detected.mime == "image/heic"
    assert detected.confidence == "low"


def test_detect_rejects_tiny_and_unknown():
    with pytest.raises(UploadError) as exc:
        detect_format(b"\xff\xd8", "a.jpg")
    assert exc.value.category == ErrorCategory.format
    assert exc.value.retryable is False

    with pytest.raises(UploadError) as exc:
        detect_format(b"\x00" * 64, "notes.txt")
    assert exc.value.code == "unknown_format"
