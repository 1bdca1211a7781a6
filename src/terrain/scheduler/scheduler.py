from __future__ import annotations

import logging
import time
from concurrent.futures import Executor, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional, Sequence

from ..tile_pyramid import TileID
from .worker import RasterJob, RasterJobResult, RasterWorker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RasterBatchSummary:
    run_id: str
    duration_s: float
    results: Sequence[RasterJobResult]

    @property
    def total_jobs(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return self.total_jobs - self.succeeded

    def failed_tiles(self) -> list[TileID]:
        return [r.tile for r in self.results if not r.ok]

    def metadata_by_tile(self) -> dict[TileID, Mapping[str, Any]]:
        return {r.tile: r.metadata for r in self.results if r.ok}


class RasterScheduler:
    """Runs independent per-tile raster jobs over a bounded worker pool.

    Jobs share nothing but the raster cache they fill; results are joined
    and sorted by tile before the batch returns.
    """

    def __init__(
        self,
        *,
        worker: RasterWorker,
        max_workers: int = 4,
        progress_log_every: int = 1,
        executor: Optional[Executor] = None,
    ) -> None:
        if max_workers <= 0:
            raise ValueError("max_workers must be > 0")
        if progress_log_every <= 0:
            raise ValueError("progress_log_every must be > 0")

        self._worker = worker
        self._max_workers = int(max_workers)
        self._progress_log_every = int(progress_log_every)
        self._executor = executor

    @property
    def max_workers(self) -> int:
        return self._max_workers

    def run(self, *, run_id: str, jobs: Iterable[RasterJob]) -> RasterBatchSummary:
        pending = list(jobs)
        if not pending:
            return RasterBatchSummary(run_id=run_id, duration_s=0.0, results=())

        t0 = time.perf_counter()
        logger.info(
            "raster_scheduler_started",
            extra={
                "run_id": run_id,
                "total_jobs": len(pending),
                "max_workers": self._max_workers,
                "max_retries": self._worker.max_retries,
            },
        )

        executor = self._executor or ThreadPoolExecutor(max_workers=self._max_workers)
        results: list[RasterJobResult] = []
        try:
            futures = [executor.submit(self._worker.process, job) for job in pending]
            for future in as_completed(futures):
                results.append(future.result())
                self._log_progress(run_id, results, len(pending))
        finally:
            if self._executor is None:
                executor.shutdown(wait=True)

        results.sort(key=lambda r: r.tile)
        summary = RasterBatchSummary(
            run_id=run_id, duration_s=time.perf_counter() - t0, results=tuple(results)
        )
        logger.info(
            "raster_scheduler_finished",
            extra={
                "run_id": run_id,
                "total_jobs": summary.total_jobs,
                "succeeded": summary.succeeded,
                "failed": summary.failed,
                "duration_s": summary.duration_s,
            },
        )
        return summary

    def _log_progress(self, run_id: str, results: Sequence[RasterJobResult], total: int) -> None:
        completed = len(results)
        if completed != total and completed % self._progress_log_every != 0:
            return
        failed = sum(1 for r in results if not r.ok)
        logger.info(
            "raster_scheduler_progress",
            extra={
                "run_id": run_id,
                "completed": completed,
                "total_jobs": total,
                "succeeded": completed - failed,
                "failed": failed,
            },
        )
