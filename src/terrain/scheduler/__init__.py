from .scheduler import RasterBatchSummary, RasterScheduler
from .worker import (
    TRANSIENT_ERRORS,
    ExponentialBackoff,
    JobStatus,
    RasterJob,
    RasterJobResult,
    RasterWorker,
    build_raster_job,
)

__all__ = [
    "ExponentialBackoff",
    "JobStatus",
    "RasterBatchSummary",
    "RasterJob",
    "RasterJobResult",
    "RasterScheduler",
    "RasterWorker",
    "TRANSIENT_ERRORS",
    "build_raster_job",
]
