"""
High‑level orchestration of the face clustering pipeline.

:class:`FaceClusterPipeline` runs the stages Scan → Extract → Cluster →
Save, one after the other, through a single :meth:`~FaceClusterPipeline.run_once`
entry point:

1. enumerate the photo library once (newest first);
2. decode and embed the assets batch by batch, publishing progress after
   every batch.  An asset whose decode or detection fails with an
   :class:`~galleryface_cluster.errors.ExtractionError` is recorded in
   :attr:`RunResult.failures` and contributes no faces; the run goes on.
   Any other exception ends the run;
3. cluster every face found in the run in one greedy pass;
4. hand the clusters to the persistence gateway, which commits them as a
   single transaction.

Failures of steps 1, 3 and 4 end the run with :attr:`RunStatus.FAILURE`.
A run may be cancelled between batches, in which case nothing is saved.
Calling ``run_once`` while a run is active returns a ``busy`` failure
immediately and leaves the active run alone.

:func:`run_pipeline` wires the folder library, the grayscale embedder and
the SQLite gateway together for the command line and records the run in
the ``runs`` table.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Sequence, Tuple, Union

from loguru import logger

from .clustering import SIM_THRESHOLD, cluster_faces
from .config import RunConfig
from .db import PersistenceGateway, SaveResult, record_run_end, record_run_start
from .embedders import Embedder, GrayscaleSamplingEmbedder
from .embeddings_io import records_from_clusters, write_features
from .errors import ExtractionError, PipelineBusyError, PipelineCancelledError
from .features import FaceCluster, FaceFeatures
from .images import AssetRef, FolderPhotoLibrary, PhotoLibrary
from .progress import ProgressReporter, Stage


class PipelineState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    EXTRACTING = "extracting"
    CLUSTERING = "clustering"
    SAVING = "saving"


class RunStatus(Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class AssetFailure:
    """An asset that was skipped because it could not be processed."""
    asset_id: str
    reason: str


@dataclass
class RunResult:
    """Terminal outcome of :meth:`FaceClusterPipeline.run_once`.

    Failed runs carry no clusters; ``failures`` lists the skipped assets in
    either case.
    """
    status: RunStatus
    error: Optional[BaseException] = None
    clusters: List[FaceCluster] = field(default_factory=list)
    failures: List[AssetFailure] = field(default_factory=list)
    persons_created: int = 0
    faces_found: int = 0
    assets_processed: int = 0
    save_result: Optional[SaveResult] = None

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.SUCCESS

    @property
    def cancelled(self) -> bool:
        return isinstance(self.error, PipelineCancelledError)


class FaceClusterPipeline:
    """Coordinator for one library scan at a time.

    Parameters
    ----------
    library: PhotoLibrary
        Source of assets and decoded images.
    extractor: Embedder
        Turns a decoded image into face features.
    gateway: PersistenceGateway
        Anything with ``save_clusters(clusters, run_id=None)``.
    batch_size: int
        Number of assets per batch (progress granularity).
    workers: int
        Maximum number of assets decoded/embedded concurrently within a
        batch.  Results are always reassembled in library order.
    sim_threshold: float
        Clustering threshold (strictly greater-than).
    target_size: (int, int)
        Decode bound in pixels.
    content_mode: str
        ``"aspect_fit"`` or ``"aspect_fill"``.
    reporter: ProgressReporter, optional
        Receives progress; a private one is created when omitted.
    """
    def __init__(self, library: PhotoLibrary, extractor: Embedder, gateway: PersistenceGateway,
                 batch_size: int = 10, workers: int = 1, sim_threshold: float = SIM_THRESHOLD,
                 target_size: Tuple[int, int] = (1024, 1024), content_mode: str = "aspect_fit",
                 reporter: Optional[ProgressReporter] = None) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.library = library
        self.extractor = extractor
        self.gateway = gateway
        self.batch_size = batch_size
        self.workers = workers
        self.sim_threshold = sim_threshold
        self.target_size = target_size
        self.content_mode = content_mode
        self.reporter = reporter if reporter is not None else ProgressReporter()
        self.last_result: Optional[RunResult] = None
        self._state = PipelineState.IDLE
        self._guard = threading.Lock()
        self._cancel_event: Optional[Any] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def state(self) -> PipelineState:
        return self._state

    def cancel(self) -> None:
        """Ask the active run (if any) to stop before its next batch.

        Safe to call from any thread.  An ``asyncio.Event`` is set on the
        loop running the pipeline.
        """
        event, loop = self._cancel_event, self._loop
        if event is None:
            return
        if isinstance(event, asyncio.Event) and loop is not None and not _running_on(loop):
            loop.call_soon_threadsafe(event.set)
        else:
            event.set()

    async def run_once(self, cancel_event: Optional[Union[threading.Event, asyncio.Event]] = None,
                       run_id: Optional[int] = None) -> RunResult:
        """Execute one full run and return its result.

        ``cancel_event`` is any object with ``is_set()``/``set()``; it is
        checked between batches.  ``run_id`` is forwarded to the gateway.
        """
        if not self._guard.acquire(blocking=False):
            logger.warning("Rejected run request: a run is already in progress")
            return RunResult(RunStatus.FAILURE, error=PipelineBusyError())
        self._cancel_event = cancel_event if cancel_event is not None else threading.Event()
        self._loop = asyncio.get_running_loop()
        try:
            result = await self._run(self._cancel_event, run_id)
        finally:
            self._state = PipelineState.IDLE
            self._cancel_event = None
            self._loop = None
            self._guard.release()
        self.last_result = result
        return result

    def _enter(self, state: PipelineState, stage: Stage) -> None:
        self._state = state
        self.reporter.update(stage=stage)
        logger.info(stage.label)

    async def _run(self, cancel_event: Any, run_id: Optional[int]) -> RunResult:
        failures: List[AssetFailure] = []
        faces: List[FaceFeatures] = []
        face_assets: List[str] = []
        processed = 0

        def failed(exc: BaseException) -> RunResult:
            return RunResult(RunStatus.FAILURE, error=exc, failures=failures,
                             faces_found=len(faces), assets_processed=processed)

        def cancelled() -> RunResult:
            logger.warning(f"Run cancelled after {processed} assets; nothing was saved")
            return failed(PipelineCancelledError())

        self._state = PipelineState.SCANNING
        self.reporter.reset(Stage.SCANNING)
        try:
            assets: List[AssetRef] = list(self.library.enumerate_assets())
        except Exception as exc:
            logger.error(f"Could not enumerate the photo library: {exc}")
            return failed(exc)
        total = len(assets)
        logger.info(f"Found {total} assets")

        self._enter(PipelineState.EXTRACTING, Stage.EXTRACTING)
        if total == 0:
            self.reporter.update(fraction=1.0)
        for start in range(0, total, self.batch_size):
            if cancel_event.is_set():
                return cancelled()
            batch = assets[start:start + self.batch_size]
            try:
                outcomes = await self._extract_batch(batch)
            except Exception as exc:
                logger.exception(f"Extraction aborted in the batch starting at asset {start}: {exc}")
                return failed(exc)
            for asset, outcome in zip(batch, outcomes):
                if isinstance(outcome, AssetFailure):
                    failures.append(outcome)
                    continue
                for face in outcome:
                    faces.append(face)
                    face_assets.append(asset.id)
            processed += len(batch)
            self.reporter.update(fraction=processed / total)
            logger.debug(f"Processed {processed}/{total} assets, {len(faces)} faces so far")
        if cancel_event.is_set():
            return cancelled()

        self._enter(PipelineState.CLUSTERING, Stage.CLUSTERING)
        try:
            clusters = cluster_faces(faces, face_assets, threshold=self.sim_threshold)
        except Exception as exc:
            logger.error(f"Clustering failed: {exc}")
            return failed(exc)
        if cancel_event.is_set():
            return cancelled()

        self._enter(PipelineState.SAVING, Stage.SAVING)
        try:
            save_result = self.gateway.save_clusters(clusters, run_id=run_id)
        except Exception as exc:
            logger.error(f"Saving {len(clusters)} clusters failed: {exc}")
            return failed(exc)

        logger.info(
            f"Run finished: {processed} assets, {len(faces)} faces, "
            f"{len(clusters)} persons, {len(failures)} skipped assets"
        )
        return RunResult(
            RunStatus.SUCCESS,
            clusters=clusters,
            failures=failures,
            persons_created=len(save_result.person_ids),
            faces_found=len(faces),
            assets_processed=processed,
            save_result=save_result,
        )

    async def _extract_batch(self, batch: Sequence[AssetRef]) -> List[Union[List[FaceFeatures], AssetFailure]]:
        semaphore = asyncio.Semaphore(self.workers)
        outcomes = await asyncio.gather(
            *(self._extract_one(asset, semaphore) for asset in batch), return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        return list(outcomes)

    async def _extract_one(self, asset: AssetRef,
                           semaphore: asyncio.Semaphore) -> Union[List[FaceFeatures], AssetFailure]:
        async with semaphore:
            try:
                image = await self.library.decode_image(asset, self.target_size, self.content_mode)
                return list(await asyncio.to_thread(self.extractor.extract_faces, image))
            except ExtractionError as exc:
                logger.warning(f"Skipping asset {asset.id}: {exc}")
                return AssetFailure(asset_id=asset.id, reason=f"{type(exc).__name__}: {exc}")


def _running_on(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False


def _run_status(result: RunResult) -> str:
    if result.succeeded:
        return "done"
    return "cancelled" if result.cancelled else "failed"


def run_pipeline(config: RunConfig, reporter: Optional[ProgressReporter] = None) -> RunResult:
    """Run the pipeline over ``config.library_dir`` and record the run.

    Parameters
    ----------
    config: RunConfig
        Configuration settings for this run.
    reporter: ProgressReporter, optional
        Progress publisher to attach observers to.

    Returns
    -------
    RunResult
        Outcome of the run; the ``runs`` row carries the same status.
    """
    gateway = PersistenceGateway.from_path(config.db_path)
    pipeline = FaceClusterPipeline(
        library=FolderPhotoLibrary(config.library_dir, use_phash=config.use_phash),
        extractor=GrayscaleSamplingEmbedder(min_face_size=config.min_face_size),
        gateway=gateway,
        batch_size=config.batch_size,
        workers=config.workers,
        sim_threshold=config.sim_threshold,
        target_size=(config.target_size, config.target_size),
        content_mode=config.content_mode,
        reporter=reporter,
    )
    with gateway.engine.connect() as conn:
        run_id = record_run_start(
            conn,
            library_dir=config.library_dir,
            parameters=config.parameters(),
            command_line=config.command_line,
        )
    result = asyncio.run(pipeline.run_once(run_id=run_id))
    notes = str(result.error) if result.error is not None else None
    if result.succeeded and config.embeddings_dir is not None:
        try:
            path = write_features(config.embeddings_dir, run_id, records_from_clusters(result.clusters))
            logger.info(f"Wrote face features to {path}")
        except (OSError, ValueError) as exc:
            logger.error(f"Could not export face features: {exc}")
            notes = f"feature export failed: {exc}"
    with gateway.engine.connect() as conn:
        record_run_end(
            conn, run_id,
            status=_run_status(result),
            n_assets=result.assets_processed,
            n_faces=result.faces_found,
            n_persons=result.persons_created,
            notes=notes,
        )
    return result
