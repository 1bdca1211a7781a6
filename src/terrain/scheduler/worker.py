from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from ..errors import RasterUnavailableError
from ..tile_pyramid import TileID

logger = logging.getLogger(__name__)

# Read failures and rasters that could not be assembled may succeed on a later attempt.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (OSError, RasterUnavailableError)


@dataclass(frozen=True)
class ExponentialBackoff:
    base_seconds: float = 1.0
    factor: float = 2.0
    max_seconds: float = 60.0

    def delay_seconds(self, retry_number: int) -> float:
        if retry_number <= 0:
            return 0.0
        delay = self.base_seconds * (self.factor ** (retry_number - 1))
        return float(min(delay, self.max_seconds))


class JobStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class RasterJob:
    """Resample the elevation raster of a single tile."""

    run_id: str
    tile: TileID

    def key(self) -> str:
        return self.tile.key()


@dataclass(frozen=True)
class RasterJobResult:
    job: RasterJob
    status: JobStatus
    attempts: int
    error: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def tile(self) -> TileID:
        return self.job.tile

    @property
    def ok(self) -> bool:
        return self.status is JobStatus.SUCCESS


RasterJobHandler = Callable[[RasterJob], Optional[Mapping[str, Any]]]


class RasterWorker:
    """Runs one raster job, retrying transient failures with backoff."""

    def __init__(
        self,
        handler: RasterJobHandler,
        *,
        max_retries: int = 2,
        backoff: Optional[ExponentialBackoff] = None,
        sleep: Callable[[float], None] = time.sleep,
        retry_on: tuple[type[BaseException], ...] = TRANSIENT_ERRORS,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")

        self._handler = handler
        self._max_retries = max_retries
        self._backoff = backoff or ExponentialBackoff()
        self._sleep = sleep
        self._retry_on = retry_on

    @property
    def max_retries(self) -> int:
        return self._max_retries

    def process(self, job: RasterJob) -> RasterJobResult:
        attempt = 0
        while True:
            attempt += 1
            logger.debug(
                "raster_job_started",
                extra={"run_id": job.run_id, "job_key": job.key(), "attempt": attempt},
            )
            try:
                metadata = self._handler(job) or {}
            except Exception as exc:  # noqa: BLE001
                retryable = isinstance(exc, self._retry_on)
                if not retryable or attempt > self._max_retries:
                    logger.error(
                        "raster_job_failed",
                        extra={
                            "run_id": job.run_id,
                            "job_key": job.key(),
                            "attempt": attempt,
                            "retryable": retryable,
                            "error": str(exc),
                        },
                    )
                    return RasterJobResult(
                        job=job, status=JobStatus.FAILED, attempts=attempt, error=str(exc)
                    )

                delay = self._backoff.delay_seconds(attempt)
                logger.warning(
                    "raster_job_failed_retrying",
                    extra={
                        "run_id": job.run_id,
                        "job_key": job.key(),
                        "attempt": attempt,
                        "max_retries": self._max_retries,
                        "delay_seconds": delay,
                        "error": str(exc),
                    },
                )
                if delay > 0:
                    self._sleep(delay)
                continue

            return RasterJobResult(
                job=job, status=JobStatus.SUCCESS, attempts=attempt, metadata=dict(metadata)
            )


def build_raster_job(*, run_id: str, tile: TileID) -> RasterJob:
    run_id_norm = (run_id or "").strip()
    if run_id_norm == "":
        raise ValueError("run_id must not be empty")
    if not isinstance(tile, TileID):
        raise ValueError(f"tile must be a TileID, got {type(tile).__name__}")
    return RasterJob(run_id=run_id_norm, tile=tile)
