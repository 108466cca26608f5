import cv2
import numpy as np
import pytest

from galleryface_cluster.embedders import (
    DetectedFace, FaceDetector, GrayscaleSamplingEmbedder, HaarFaceDetector, sample_grid,
)
from galleryface_cluster.errors import EmbeddingUnavailable, ExtractionError
from galleryface_cluster.features import EMBED_LEN, BoundingBox


class StaticDetector(FaceDetector):
    def __init__(self, faces):
        self.faces = faces

    def detect(self, img):
        return list(self.faces)


class BrokenDetector(FaceDetector):
    def detect(self, img):
        raise ExtractionError("detector unavailable")


def row_gradient(height=64, width=64):
    """RGB image whose gray value equals the row index."""
    rows = np.arange(height, dtype=np.uint8).reshape(-1, 1)
    gray = np.repeat(rows, width, axis=1)
    return np.stack([gray, gray, gray], axis=-1)


def test_no_detections_gives_empty_result():
    embedder = GrayscaleSamplingEmbedder(detector=StaticDetector([]))
    assert embedder.extract_faces(row_gradient()) == []


def test_full_frame_face_samples_expected_grid():
    face = DetectedFace(BoundingBox(0.0, 0.0, 1.0, 1.0), {"left_eye": (0.3, 0.4)})
    embedder = GrayscaleSamplingEmbedder(detector=StaticDetector([face]))
    (features,) = embedder.extract_faces(row_gradient())
    assert features.embedding.shape == (EMBED_LEN,)
    assert features.embedding.min() >= 0.0 and features.embedding.max() <= 1.0
    # Stride is 64 // 32 == 2, so grid row 5 reads pixel row 10
    assert features.embedding[5 * 32] == pytest.approx(10 / 255.0)
    assert features.embedding[5 * 32 + 17] == pytest.approx(10 / 255.0)
    assert features.landmarks["left_eye"] == (0.3, 0.4)
    assert not features.is_degraded


@pytest.mark.parametrize("size", [(33, 47), (64, 64), (200, 120), (1024, 768)])
def test_embedding_length_is_constant(size):
    height, width = size
    img = np.random.default_rng(0).integers(0, 256, size=(height, width, 3), dtype=np.uint8)
    face = DetectedFace(BoundingBox(0.0, 0.0, 1.0, 1.0))
    (features,) = GrayscaleSamplingEmbedder(detector=StaticDetector([face])).extract_faces(img)
    assert features.embedding.shape == (EMBED_LEN,)


def test_box_outside_image_degrades_to_zero_embedding():
    outside = DetectedFace(BoundingBox(1.5, 1.5, 0.2, 0.2))
    inside = DetectedFace(BoundingBox(0.0, 0.0, 1.0, 1.0))
    embedder = GrayscaleSamplingEmbedder(detector=StaticDetector([outside, inside]))
    faces = embedder.extract_faces(row_gradient())
    assert len(faces) == 2
    assert faces[0].is_degraded
    assert faces[0].embedding.shape == (EMBED_LEN,)
    assert not faces[1].is_degraded


def test_crop_smaller_than_grid_degrades_to_zero_embedding():
    tiny = DetectedFace(BoundingBox(0.0, 0.0, 0.1, 0.1))
    (features,) = GrayscaleSamplingEmbedder(detector=StaticDetector([tiny])).extract_faces(row_gradient())
    assert features.is_degraded
    assert features.embedding.shape == (EMBED_LEN,)


def test_box_partly_outside_is_clipped():
    box = DetectedFace(BoundingBox(-0.5, -0.5, 1.5, 1.5))
    (features,) = GrayscaleSamplingEmbedder(detector=StaticDetector([box])).extract_faces(row_gradient())
    assert not features.is_degraded


def test_unsupported_channels_degrade_to_zero_embedding():
    img = np.zeros((64, 64, 2), dtype=np.uint8)
    face = DetectedFace(BoundingBox(0.0, 0.0, 1.0, 1.0))
    (features,) = GrayscaleSamplingEmbedder(detector=StaticDetector([face])).extract_faces(img)
    assert features.is_degraded


def test_detector_failure_propagates():
    embedder = GrayscaleSamplingEmbedder(detector=BrokenDetector())
    with pytest.raises(ExtractionError):
        embedder.extract_faces(row_gradient())


def test_sample_grid_rejects_small_input():
    with pytest.raises(EmbeddingUnavailable):
        sample_grid(np.zeros((31, 100), dtype=np.uint8))


def test_haar_detector_finds_nothing_in_blank_image():
    detector = HaarFaceDetector()
    assert detector.detect(np.full((240, 320, 3), 127, dtype=np.uint8)) == []


def test_haar_detector_reports_opencv_errors_as_extraction_errors():
    class CrashingCascade:
        def detectMultiScale(self, *args, **kwargs):
            raise cv2.error("cascade crashed")

    detector = HaarFaceDetector()
    detector.face_cascade = CrashingCascade()
    with pytest.raises(ExtractionError):
        detector.detect(np.full((120, 160, 3), 127, dtype=np.uint8))
