# app/services/image_strategies.py
"""
Prioritized image transcoding with fallback.

The registry is a list of tagged strategies; ``select_strategies`` is a pure
function of (memory headroom, input size, format). ``StrategyRunner`` walks the
selection in priority order, reclaiming memory between attempts, and raises a
critical non-retryable ``UploadError`` only when every candidate failed.
Pillow errors are classified inside the transforms.
"""
from __future__ import annotations

import asyncio
import io
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, FrozenSet, Iterator, List, Optional, Sequence, Tuple

import structlog
from PIL import Image, ImageOps, UnidentifiedImageError

from app.core.errors import ErrorCategory, Severity, UploadError
from app.core.settings import MB, Settings
from app.infra.memory import MemoryMonitor
from app.observability.metrics import strategy_counter

logger = structlog.get_logger(__name__)

WILDCARD = "*"


@dataclass
class TransformOutput:
    data: bytes
    content_type: str
    extension: str
    width: int
    height: int
    warnings: List[str] = field(default_factory=list)


@dataclass
class ProcessingResult:
    data: bytes = field(repr=False)
    content_type: str
    extension: str
    width: int
    height: int
    original_size: int
    processed_size: int
    processing_time_ms: int
    strategy: str
    warnings: List[str] = field(default_factory=list)

    @property
    def compression_ratio(self) -> float:
        if not self.original_size:
            return 0.0
        return round(1 - self.processed_size / self.original_size, 4)


@dataclass(frozen=True)
class ProcessingStrategy:
    name: str
    priority: int
    memory_required_mb: int
    max_input_bytes: int
    supported_formats: FrozenSet[str]
    transform: Callable[[bytes], TransformOutput] = field(compare=False, repr=False)

    def accepts(self, available_mb: float, size: int, mime: str) -> bool:
        if self.memory_required_mb > available_mb or size > self.max_input_bytes:
            return False
        return WILDCARD in self.supported_formats or format_token(mime) in self.supported_formats


def format_token(mime: str) -> str:
    """'image/JPG' -> 'jpeg', 'image/svg+xml' -> 'svg+xml'."""
    sub = (mime or "").split(";")[0].strip().lower().rsplit("/", 1)[-1]
    return "jpeg" if sub in ("jpg", "pjpeg") else sub


def select_strategies(
    registry: Sequence[ProcessingStrategy], available_mb: float, size: int, mime: str
) -> List[ProcessingStrategy]:
    return sorted((s for s in registry if s.accepts(available_mb, size, mime)), key=lambda s: s.priority)


# =========================
# Pillow helpers
# =========================
@contextmanager
def _pillow_errors(strategy: str) -> Iterator[None]:
    """Vertaal Pillow-fouten naar geclassificeerde UploadErrors."""
    try:
        yield
    except UploadError:
        raise
    except UnidentifiedImageError as e:
        raise UploadError(
            f"{strategy}: image cannot be decoded",
            ErrorCategory.format,
            retryable=False,
            code="undecodable",
            suggestions=["Upload a JPEG, PNG or WebP image"],
        ) from e
    except (Image.DecompressionBombError, MemoryError) as e:
        raise UploadError(
            f"{strategy}: image too large to decode",
            ErrorCategory.memory,
            retryable=True,
            code="decode_memory",
            suggestions=["Upload a smaller image"],
        ) from e
    except (OSError, ValueError, SyntaxError) as e:
        # truncated files, corrupte headers, onbekende modes
        raise UploadError(
            f"{strategy}: image processing failed: {e}",
            ErrorCategory.processing,
            retryable=True,
            code="transform_failed",
        ) from e


def _open(data: bytes, *, max_pixels: int, draft: Optional[Tuple[int, int]] = None) -> Tuple[Image.Image, str]:
    img = Image.open(io.BytesIO(data))
    source = img.format or "source format"
    w, h = img.size
    if w * h > max_pixels:
        raise UploadError(
            f"Image of {w}x{h} exceeds {max_pixels} pixel limit",
            ErrorCategory.memory,
            retryable=True,
            code="pixel_limit",
            suggestions=["Downscale the image before uploading"],
        )
    if draft:
        img.draft("RGB", draft)  # alleen JPEG ondersteunt draft; anders no-op
    img.load()
    # exif_transpose geeft een kopie zonder .format terug
    return ImageOps.exif_transpose(img), source


def _has_alpha(img: Image.Image) -> bool:
    return img.mode in ("RGBA", "LA", "PA") or (img.mode == "P" and "transparency" in img.info)


def _flatten(img: Image.Image) -> Image.Image:
    if _has_alpha(img):
        rgba = img.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    return img if img.mode == "RGB" else img.convert("RGB")


def _jpeg(img: Image.Image, quality: int, *, progressive: bool = False) -> TransformOutput:
    rgb = _flatten(img)
    buf = io.BytesIO()
    rgb.save(buf, "JPEG", quality=quality, optimize=True, progressive=progressive)
    return TransformOutput(buf.getvalue(), "image/jpeg", "jpg", rgb.width, rgb.height)


def _png(img: Image.Image) -> TransformOutput:
    rgba = img.convert("RGBA")
    buf = io.BytesIO()
    rgba.save(buf, "PNG", optimize=True)
    return TransformOutput(buf.getvalue(), "image/png", "png", rgba.width, rgba.height)


# =========================
# Transforms
# =========================
def high_quality(data: bytes) -> TransformOutput:
    with _pillow_errors("high-quality"):
        img, _ = _open(data, max_pixels=40_000_000)
        img.thumbnail((2048, 2048), Image.LANCZOS)
        if _has_alpha(img):
            return _png(img)
        return _jpeg(img, 85, progressive=True)


def memory_efficient(data: bytes) -> TransformOutput:
    with _pillow_errors("memory-efficient"):
        img, _ = _open(data, max_pixels=64_000_000, draft=(1024, 1024))
        img.thumbnail((1024, 1024), Image.BILINEAR)
        out = _jpeg(img, 75)
    out.warnings.append("Processed with reduced settings due to memory constraints")
    return out


def format_normalizer(data: bytes) -> TransformOutput:
    with _pillow_errors("format-normalizer"):
        img, source = _open(data, max_pixels=40_000_000)
        img.thumbnail((1600, 1600), Image.LANCZOS)
        out = _jpeg(img, 80)
    out.warnings.append(f"Converted from {source} to JPEG")
    return out


def emergency(data: bytes) -> TransformOutput:
    with _pillow_errors("emergency"):
        img, _ = _open(data, max_pixels=64_000_000, draft=(800, 800))
        img.thumbnail((800, 800), Image.BILINEAR)
        out = _jpeg(img, 60)
    out.warnings.append("Emergency processing applied: image quality reduced")
    return out


_WEB = frozenset({"jpeg", "png", "webp"})

DEFAULT_STRATEGIES: Tuple[ProcessingStrategy, ...] = (
    ProcessingStrategy("high-quality", 1, 512, 25 * MB, _WEB, high_quality),
    ProcessingStrategy("memory-efficient", 2, 256, 50 * MB, _WEB, memory_efficient),
    ProcessingStrategy(
        "format-normalizer",
        3,
        384,
        100 * MB,
        frozenset({"tiff", "bmp", "gif", "heic", "heif", "avif", "svg+xml", "x-icon", "vnd.microsoft.icon"}),
        format_normalizer,
    ),
    ProcessingStrategy("emergency", 4, 128, 200 * MB, frozenset({WILDCARD}), emergency),
)


# =========================
# Runner
# =========================
class StrategyRunner:
    def __init__(
        self,
        monitor: MemoryMonitor,
        *,
        registry: Sequence[ProcessingStrategy] = DEFAULT_STRATEGIES,
        timeout_sec: float = 60.0,
        retry_pause_sec: float = 1.0,
        preprocess_pause_sec: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not registry:
            raise ValueError("empty strategy registry")
        self.monitor = monitor
        self.registry = list(registry)
        self.timeout_sec = timeout_sec
        self.retry_pause_sec = retry_pause_sec
        self.preprocess_pause_sec = preprocess_pause_sec
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, monitor: MemoryMonitor) -> "StrategyRunner":
        return cls(
            monitor,
            timeout_sec=settings.strategy_timeout_sec,
            retry_pause_sec=settings.strategy_retry_pause_sec,
            preprocess_pause_sec=settings.preprocess_cleanup_pause_sec,
        )

    @property
    def fallback(self) -> ProcessingStrategy:
        # de laatste tier is de noodstrategie
        return max(self.registry, key=lambda s: s.priority)

    async def process(self, data: bytes, mime: str) -> ProcessingResult:
        stats = self.monitor.get_stats()
        if stats.under_pressure:
            self.monitor.emergency_cleanup("pre_processing")
            await self._sleep(self.preprocess_pause_sec)
            stats = self.monitor.get_stats()

        candidates = select_strategies(self.registry, stats.available_mb, len(data), mime)
        forced = not candidates
        if forced:
            candidates = [self.fallback]
            logger.warning(
                "strategy_forced_fallback",
                strategy=self.fallback.name,
                available_mb=round(stats.available_mb, 1),
                size=len(data),
                mime=mime,
            )

        attempts: List[Dict[str, str]] = []
        for i, strategy in enumerate(candidates):
            if i:
                self.monitor.emergency_cleanup(f"strategy_fallback:{strategy.name}")
                await self._sleep(self.retry_pause_sec)

            started = time.perf_counter()
            try:
                out = await asyncio.wait_for(asyncio.to_thread(strategy.transform, data), self.timeout_sec)
            except asyncio.TimeoutError:
                # de worker thread loopt door; het resultaat wordt genegeerd
                err = UploadError(
                    f"{strategy.name} timed out after {self.timeout_sec}s",
                    ErrorCategory.timeout,
                    retryable=True,
                    code="strategy_timeout",
                )
            except UploadError as exc:
                err = exc
            else:
                elapsed_ms = int((time.perf_counter() - started) * 1000)
                warnings = list(out.warnings)
                if forced:
                    warnings.insert(0, "No strategy fit the available memory; emergency processing was forced")
                strategy_counter.labels(strategy=strategy.name, result="success").inc()
                logger.info(
                    "strategy_succeeded",
                    strategy=strategy.name,
                    input_size=len(data),
                    output_size=len(out.data),
                    elapsed_ms=elapsed_ms,
                )
                return ProcessingResult(
                    data=out.data,
                    content_type=out.content_type,
                    extension=out.extension,
                    width=out.width,
                    height=out.height,
                    original_size=len(data),
                    processed_size=len(out.data),
                    processing_time_ms=elapsed_ms,
                    strategy=strategy.name,
                    warnings=warnings,
                )

            strategy_counter.labels(strategy=strategy.name, result="error").inc()
            attempts.append(
                {"strategy": strategy.name, "category": err.category.value, "code": err.code or "", "message": err.message}
            )
            logger.warning(
                "strategy_failed",
                strategy=strategy.name,
                category=err.category.value,
                code=err.code,
                remaining=len(candidates) - i - 1,
            )

        raise UploadError(
            "All processing strategies failed",
            ErrorCategory.processing,
            retryable=False,
            severity=Severity.critical,
            code="all_strategies_failed",
            suggestions=[
                "Convert the image to JPEG or PNG and try again",
                "Reduce the image dimensions or file size",
                "Retry later when the server is less busy",
            ],
            details={"attempts": attempts},
        )
