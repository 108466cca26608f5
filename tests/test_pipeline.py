import asyncio
import math

import pytest

from galleryface_cluster.errors import PersistError, PipelineBusyError, PipelineCancelledError
from galleryface_cluster.pipeline import FaceClusterPipeline, PipelineState, RunStatus
from galleryface_cluster.progress import ProgressReporter, Stage

from conftest import FakeExtractor, FakeLibrary, make_assets, make_face
from test_db import FailingGateway


def build(library, extractor, gateway, **kwargs):
    reporter = ProgressReporter()
    events = []
    reporter.subscribe(events.append)
    pipeline = FaceClusterPipeline(library, extractor, gateway, reporter=reporter, **kwargs)
    return pipeline, events


def scenario_faces():
    c1 = (0.1 - 0.8 * 0.1) / 0.6
    c2 = math.sqrt(1.0 - 0.1 ** 2 - c1 ** 2)
    return {
        "A": [make_face(1.0, 0.0, 0.0)],
        "B": [make_face(0.8, 0.6, 0.0)],
        "C": [make_face(0.1, c1, c2)],
    }


@pytest.mark.asyncio
async def test_two_similar_photos_and_one_stranger(gateway):
    library = FakeLibrary(make_assets(["A", "B", "C"]))
    pipeline, events = build(library, FakeExtractor(scenario_faces()), gateway)

    result = await pipeline.run_once()

    assert result.status is RunStatus.SUCCESS
    assert [c.asset_ids for c in result.clusters] == [["A", "B"], ["C"]]
    assert result.persons_created == 2
    people = gateway.fetch_all()
    assert [len(p.faces) for p in people] == [2, 1]
    assert events[-1].fraction_complete == 1.0
    assert pipeline.state is PipelineState.IDLE


@pytest.mark.asyncio
async def test_empty_library_completes(gateway):
    pipeline, events = build(FakeLibrary([]), FakeExtractor({}), gateway)

    result = await pipeline.run_once()

    assert result.succeeded
    assert result.clusters == []
    assert gateway.fetch_all() == []
    assert events[-1].fraction_complete == 1.0
    stages = [e.stage for e in events]
    assert [s for i, s in enumerate(stages) if i == 0 or stages[i - 1] != s] == [
        Stage.SCANNING, Stage.EXTRACTING, Stage.CLUSTERING, Stage.SAVING,
    ]


@pytest.mark.asyncio
async def test_failed_decode_skips_only_that_photo(gateway):
    faces = {"A": [make_face(1.0, 0.0)], "B": [make_face(0.5, 0.5)], "C": [make_face(0.0, 1.0)]}
    library = FakeLibrary(make_assets(["A", "B", "C"]), broken=["B"])
    pipeline, _ = build(library, FakeExtractor(faces), gateway)

    result = await pipeline.run_once()

    assert result.succeeded
    assert result.assets_processed == 3
    assert [f.asset_id for f in result.failures] == ["B"]
    assert "DecodeError" in result.failures[0].reason
    people = gateway.fetch_all()
    assert len(people) == 2
    assert sorted(f.asset_id for p in people for f in p.faces) == ["A", "C"]


@pytest.mark.asyncio
async def test_detector_failure_is_isolated(gateway):
    faces = {"A": [make_face(1.0, 0.0)], "B": [make_face(0.0, 1.0)]}
    library = FakeLibrary(make_assets(["A", "B"]))
    pipeline, _ = build(library, FakeExtractor(faces, failing=["A"]), gateway)

    result = await pipeline.run_once()

    assert result.succeeded
    assert [f.asset_id for f in result.failures] == ["A"]
    assert [c.asset_ids for c in result.clusters] == [["B"]]


@pytest.mark.asyncio
@pytest.mark.parametrize("workers", [1, 3])
async def test_unexpected_extractor_error_fails_the_run(gateway, workers):
    class BuggyExtractor(FakeExtractor):
        def extract_faces(self, img):
            return list(self.faces[{img}])

    faces = {"A": [make_face(1.0, 0.0)]}
    library = FakeLibrary(make_assets(["A", "B", "C"]))
    pipeline, _ = build(library, BuggyExtractor(faces), gateway, workers=workers)

    result = await pipeline.run_once()

    assert result.status is RunStatus.FAILURE
    assert isinstance(result.error, TypeError)
    assert result.failures == []
    assert result.clusters == []
    assert gateway.fetch_all() == []
    assert pipeline.state is PipelineState.IDLE


@pytest.mark.asyncio
async def test_commit_failure_leaves_nothing_behind(tmp_path):
    gateway = FailingGateway.from_path(tmp_path / "faces.sqlite")
    faces = {"A": [make_face(1.0, 0.0)], "B": [make_face(0.0, 1.0)]}
    pipeline, _ = build(FakeLibrary(make_assets(["A", "B"])), FakeExtractor(faces), gateway)

    result = await pipeline.run_once()

    assert result.status is RunStatus.FAILURE
    assert isinstance(result.error, PersistError)
    assert result.clusters == []
    assert gateway.fetch_all() == []
    assert pipeline.state is PipelineState.IDLE


@pytest.mark.asyncio
async def test_second_run_while_busy_is_rejected(gateway):
    gate = asyncio.Event()
    faces = {"A": [make_face(1.0, 0.0)]}
    pipeline, _ = build(FakeLibrary(make_assets(["A"]), gate=gate), FakeExtractor(faces), gateway)

    first = asyncio.create_task(pipeline.run_once())
    while pipeline.state is not PipelineState.EXTRACTING:
        await asyncio.sleep(0)

    rejected = await pipeline.run_once()
    assert rejected.status is RunStatus.FAILURE
    assert isinstance(rejected.error, PipelineBusyError)
    assert str(rejected.error) == "busy"

    gate.set()
    result = await first
    assert result.succeeded
    assert result.persons_created == 1
    assert pipeline.last_result is result


@pytest.mark.asyncio
@pytest.mark.parametrize("count,batch_size", [(25, 10), (30, 10), (7, 3), (1, 10)])
async def test_every_asset_is_visited_once(gateway, count, batch_size):
    ids = [f"img{i:03d}" for i in range(count)]
    library = FakeLibrary(make_assets(ids))
    pipeline, events = build(library, FakeExtractor({}), gateway, batch_size=batch_size)

    result = await pipeline.run_once()

    assert result.succeeded
    assert library.decoded == ids
    assert result.assets_processed == count
    fractions = [e.fraction_complete for e in events]
    assert fractions == sorted(fractions)
    assert fractions[-1] == 1.0
    batch_fractions = sorted({f for f in fractions if f > 0})
    assert len(batch_fractions) == math.ceil(count / batch_size)


@pytest.mark.asyncio
async def test_cancel_between_batches_saves_nothing(gateway):
    ids = [f"img{i:02d}" for i in range(30)]
    faces = {asset_id: [make_face(1.0)] for asset_id in ids}
    library = FakeLibrary(make_assets(ids))
    pipeline, _ = build(library, FakeExtractor(faces), gateway, batch_size=10)
    pipeline.reporter.subscribe(lambda state: pipeline.cancel() if state.fraction_complete > 0 else None)

    result = await pipeline.run_once()

    assert result.status is RunStatus.FAILURE
    assert result.cancelled
    assert isinstance(result.error, PipelineCancelledError)
    assert len(library.decoded) == 10
    assert gateway.fetch_all() == []
    assert pipeline.state is PipelineState.IDLE


@pytest.mark.asyncio
async def test_preset_cancel_event_stops_before_first_batch(gateway):
    event = asyncio.Event()
    event.set()
    library = FakeLibrary(make_assets(["A", "B"]))
    pipeline, _ = build(library, FakeExtractor({}), gateway)

    result = await pipeline.run_once(cancel_event=event)

    assert result.cancelled
    assert library.decoded == []


@pytest.mark.asyncio
async def test_cancel_from_another_thread_sets_the_loop_event(gateway):
    gate = asyncio.Event()
    event = asyncio.Event()
    library = FakeLibrary(make_assets(["A", "B"]), gate=gate)
    pipeline, _ = build(library, FakeExtractor({}), gateway, batch_size=1)

    run = asyncio.create_task(pipeline.run_once(cancel_event=event))
    while pipeline.state is not PipelineState.EXTRACTING:
        await asyncio.sleep(0)
    await asyncio.to_thread(pipeline.cancel)
    await asyncio.wait_for(event.wait(), timeout=1)
    gate.set()

    result = await run
    assert result.cancelled
    assert library.decoded == ["A"]
    assert gateway.fetch_all() == []


@pytest.mark.asyncio
async def test_parallel_extraction_keeps_library_order(gateway):
    faces = {
        "a0": [make_face(1.0, 0.0)],
        "a1": [make_face(0.0, 1.0)],
        "a2": [make_face(1.0, 1.0)],
    }
    # The first asset finishes last
    library = FakeLibrary(make_assets(["a0", "a1", "a2"]), delays={"a0": 0.05, "a1": 0.02})
    pipeline, _ = build(library, FakeExtractor(faces), gateway, workers=3)

    result = await pipeline.run_once()

    assert result.succeeded
    assert [c.face_asset_ids for c in result.clusters] == [["a0", "a2"], ["a1"]]


@pytest.mark.asyncio
async def test_enumeration_failure_ends_run(gateway):
    class BrokenLibrary(FakeLibrary):
        def enumerate_assets(self):
            raise FileNotFoundError("library missing")

    pipeline, _ = build(BrokenLibrary([]), FakeExtractor({}), gateway)

    result = await pipeline.run_once()

    assert result.status is RunStatus.FAILURE
    assert isinstance(result.error, FileNotFoundError)
    assert pipeline.state is PipelineState.IDLE


def test_invalid_settings_are_rejected(gateway):
    with pytest.raises(ValueError):
        FaceClusterPipeline(FakeLibrary([]), FakeExtractor({}), gateway, batch_size=0)
    with pytest.raises(ValueError):
        FaceClusterPipeline(FakeLibrary([]), FakeExtractor({}), gateway, workers=0)
