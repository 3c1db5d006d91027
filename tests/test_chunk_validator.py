import pytest

from app.core.errors import ErrorCategory, UploadError
from app.core.settings import MB
from app.infra.memory import MemoryPressure, MemoryStats, classify_pressure
from app.services.assembler import assemble_chunks, missing_indices
from app.services.chunk_validator import REDUCE_CHUNK_SIZE, ChunkValidator


def _validator(**kw):
    params = dict(
        min_bytes=1,
        max_bytes=10 * MB,
        max_total_chunks=100,
        headroom_ratio=0.02,
        min_adaptive_bytes=256 * 1024,
    )
    params.update(kw)
    return ChunkValidator(**params)


def _stats(available_mb, pressure):
    return MemoryStats(rss_mb=0.0, limit_mb=2048.0, available_mb=available_mb, pressure=pressure)


@pytest.mark.parametrize(
    "index,total,size,code",
    [
        (0, 0, 10, "bad_total_chunks"),
        (0, 101, 10, "bad_total_chunks"),
        (3, 3, 10, "bad_chunk_index"),
        (-1, 3, 10, "bad_chunk_index"),
        (0, 3, 0, "bad_chunk_size"),
        (0, 3, 10 * MB + 1, "bad_chunk_size"),
    ],
)
def test_check_bounds_rejects_non_retryable(index, total, size, code):
    with pytest.raises(UploadError) as exc:
        _validator().check_bounds(index, total, size)
    assert exc.value.category == ErrorCategory.validation
    assert exc.value.retryable is False
    assert exc.value.code == code


def test_check_bounds_accepts_edges():
    v = _validator()
    v.check_bounds(0, 1, 1)
    v.check_bounds(99, 100, 10 * MB)


def test_no_adaptive_size_without_pressure():
    v = _validator()
    assert v.optimal_chunk_size(_stats(50, MemoryPressure.low)) is None
    assert v.optimal_chunk_size(_stats(50, MemoryPressure.medium)) is None


def test_optimal_size_under_high_and_critical_pressure():
    v = _validator()
    assert v.optimal_chunk_size(_stats(50, MemoryPressure.high)) == 1 * MB
    assert v.optimal_chunk_size(_stats(50, MemoryPressure.critical)) == 512 * 1024


def test_optimal_size_is_clamped():
    v = _validator()
    # 1 MB vrij -> ~20 KB, maar nooit onder het minimum
    assert v.optimal_chunk_size(_stats(1, MemoryPressure.high)) == 256 * 1024
    # veel vrij -> nooit boven de maximale chunkgrootte
    assert v.optimal_chunk_size(_stats(100_000, MemoryPressure.high)) == 10 * MB


def test_backpressure_signal():
    v = _validator()
    stats = _stats(50, MemoryPressure.high)
    assert v.backpressure(1 * MB, 1 * MB, stats) is None

    err = v.backpressure(6 * MB, 1 * MB, stats)
    assert err.category == ErrorCategory.size_limit
    assert err.retryable is True
    assert err.suggested_chunk_size == 1 * MB
    assert err.suggested_action == REDUCE_CHUNK_SIZE


def test_classify_pressure_thresholds():
    kw = dict(medium=0.60, high=0.75, critical=0.90)
    assert classify_pressure(500, 1000, **kw) == MemoryPressure.low
    assert classify_pressure(700, 1000, **kw) == MemoryPressure.medium
    assert classify_pressure(800, 1000, **kw) == MemoryPressure.high
    assert classify_pressure(950, 1000, **kw) == MemoryPressure.critical


# -------------------------
# Assembler
# -------------------------
def test_assemble_orders_by_index():
    chunks = {2: b"cc", 0: b"a", 1: b"bbb"}
    assert assemble_chunks(chunks, 3) == b"abbbcc"


def test_assemble_missing_index_is_retryable():
    with pytest.raises(UploadError) as exc:
        assemble_chunks({0: b"a", 2: b"c"}, 3)
    assert exc.value.retryable is True
    assert exc.value.code == "missing_chunks"
    assert exc.value.details["missing_chunks"] == [1]


def test_missing_indices():
    assert missing_indices({1: b"x"}, 3) == [0, 2]
    assert missing_indices({}, 0) == []


def test_assemble_checks_recorded_size():
    assert assemble_chunks({0: b"ab", 1: b"c"}, 2, expected_size=3) == b"abc"
    with pytest.raises(UploadError) as exc:
        assemble_chunks({0: b"ab", 1: b"c"}, 2, expected_size=4)
    assert exc.value.code == "assembly_length_mismatch"
    assert exc.value.category == ErrorCategory.processing
    assert exc.value.retryable is True
    assert exc.value.details == {"assembled_size": 3, "expected_size": 4}
