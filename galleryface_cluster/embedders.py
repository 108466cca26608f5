"""
Face detection and embedding.

The :class:`Embedder` interface exposes a single method
:meth:`~Embedder.extract_faces` which takes a decoded RGB image and returns
one :class:`~galleryface_cluster.features.FaceFeatures` per detected face.

The bundled :class:`GrayscaleSamplingEmbedder` is a deliberately cheap
proxy for a learned face model: it crops each detected face, converts the
crop to luminance and samples a fixed 32×32 grid of intensities.  When any
of those steps fails for a face (box outside the image, crop too small,
conversion error) the face is still returned, with an all-zero embedding,
so clustering always receives fixed-length vectors and one bad face cannot
block a batch.

Detection is pluggable through :class:`FaceDetector`; the default
:class:`HaarFaceDetector` uses the cascades that ship with OpenCV.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import cv2
import numpy as np
from loguru import logger

from .errors import EmbeddingUnavailable, ExtractionError
from .features import GRID_SIZE, BoundingBox, FaceFeatures, Point, zero_embedding


@dataclass
class DetectedFace:
    """Raw detector output for one face, in normalised coordinates."""
    bounding_box: BoundingBox
    landmarks: Dict[str, Point] = field(default_factory=dict)


class FaceDetector:
    """Base class for face detectors."""

    def detect(self, img: np.ndarray) -> List[DetectedFace]:
        """Return the faces found in an RGB image (possibly none)."""
        raise NotImplementedError


class HaarFaceDetector(FaceDetector):
    """Frontal-face Haar cascade with eye landmarks.

    Parameters
    ----------
    min_face_size: int
        Minimum side length (in pixels) of detected faces.
    scale_factor, min_neighbors:
        Passed through to ``detectMultiScale``.
    """
    def __init__(self, min_face_size: int = 24, scale_factor: float = 1.1, min_neighbors: int = 4) -> None:
        cascade_dir = Path(cv2.data.haarcascades)
        self.face_cascade = cv2.CascadeClassifier(str(cascade_dir / "haarcascade_frontalface_default.xml"))
        self.eye_cascade = cv2.CascadeClassifier(str(cascade_dir / "haarcascade_eye.xml"))
        if self.face_cascade.empty():
            raise RuntimeError(f"Could not load the frontal face cascade from {cascade_dir}")
        self.min_face_size = min_face_size
        self.scale_factor = scale_factor
        self.min_neighbors = min_neighbors

    def detect(self, img: np.ndarray) -> List[DetectedFace]:
        try:
            gray = _to_luminance(img)
        except EmbeddingUnavailable as exc:
            raise ExtractionError(f"Cannot run face detection: {exc}") from exc
        height, width = gray.shape[:2]
        if height == 0 or width == 0:
            return []
        try:
            boxes = self.face_cascade.detectMultiScale(
                gray,
                scaleFactor=self.scale_factor,
                minNeighbors=self.min_neighbors,
                minSize=(self.min_face_size, self.min_face_size),
            )
        except cv2.error as exc:
            raise ExtractionError(f"Face detection failed: {exc}") from exc
        faces: List[DetectedFace] = []
        for (x, y, w, h) in boxes:
            x, y, w, h = int(x), int(y), int(w), int(h)
            try:
                landmarks = self._eye_landmarks(gray, x, y, w, h, width, height)
            except cv2.error as exc:
                raise ExtractionError(f"Eye detection failed: {exc}") from exc
            landmarks["face_center"] = ((x + w / 2.0) / width, (y + h / 2.0) / height)
            faces.append(DetectedFace(
                bounding_box=BoundingBox(x / width, y / height, w / width, h / height),
                landmarks=landmarks,
            ))
        return faces

    def _eye_landmarks(self, gray: np.ndarray, x: int, y: int, w: int, h: int,
                       width: int, height: int) -> Dict[str, Point]:
        if self.eye_cascade.empty():
            return {}
        # Eyes sit in the upper half of the face box
        roi = gray[y:y + h // 2, x:x + w]
        eyes = self.eye_cascade.detectMultiScale(roi, scaleFactor=1.1, minNeighbors=5)
        centres = sorted(
            ((x + ex + ew / 2.0) / width, (y + ey + eh / 2.0) / height)
            for (ex, ey, ew, eh) in eyes
        )[:2]
        if len(centres) == 2:
            return {"left_eye": centres[0], "right_eye": centres[1]}
        if len(centres) == 1:
            return {"eye": centres[0]}
        return {}


class Embedder:
    """Base class for all embedders."""

    def extract_faces(self, img: np.ndarray) -> List[FaceFeatures]:
        """Detect and embed faces from an RGB image.

        Subclasses must return one record per detected face and raise only
        for failures affecting the whole image.
        """
        raise NotImplementedError


def _to_luminance(img: np.ndarray) -> np.ndarray:
    """Convert an RGB, RGBA or single-channel image to 8-bit luminance."""
    arr = np.asarray(img)
    if arr.dtype != np.uint8:
        arr = np.clip(arr, 0, 255).astype(np.uint8)
    try:
        if arr.ndim == 2:
            return arr
        if arr.ndim == 3 and arr.shape[2] == 1:
            return arr[:, :, 0]
        if arr.ndim == 3 and arr.shape[2] == 3:
            return cv2.cvtColor(arr, cv2.COLOR_RGB2GRAY)
        if arr.ndim == 3 and arr.shape[2] == 4:
            return cv2.cvtColor(arr, cv2.COLOR_RGBA2GRAY)
    except cv2.error as exc:
        raise EmbeddingUnavailable(f"Luminance conversion failed: {exc}") from exc
    raise EmbeddingUnavailable(f"Unsupported image shape {arr.shape}")


def crop_face(img: np.ndarray, box: BoundingBox) -> np.ndarray:
    """Crop ``img`` to a normalised box, clipped to the image bounds."""
    height, width = img.shape[:2]
    x1, y1, x2, y2 = box.to_pixels(width, height)
    x1, y1 = max(0, x1), max(0, y1)
    x2, y2 = min(width, x2), min(height, y2)
    if x2 <= x1 or y2 <= y1:
        raise EmbeddingUnavailable(f"Face box {box} lies outside the {width}x{height} image")
    return img[y1:y2, x1:x2]


def sample_grid(gray: np.ndarray, grid_size: int = GRID_SIZE) -> np.ndarray:
    """Sample a ``grid_size``×``grid_size`` grid of intensities scaled to [0, 1].

    The stride along each axis is ``floor(dimension / grid_size)``.
    """
    height, width = gray.shape[:2]
    step_y = height // grid_size
    step_x = width // grid_size
    if step_x == 0 or step_y == 0:
        raise EmbeddingUnavailable(f"Crop of {width}x{height} is smaller than the sampling grid")
    samples = gray[0:grid_size * step_y:step_y, 0:grid_size * step_x:step_x]
    return (samples.astype(np.float32) / 255.0).reshape(-1)


class GrayscaleSamplingEmbedder(Embedder):
    """Embed faces by sampling a luminance grid over each face crop.

    Parameters
    ----------
    detector: FaceDetector, optional
        Detector used to locate faces.  Defaults to :class:`HaarFaceDetector`.
    min_face_size: int
        Forwarded to the default detector.
    """
    def __init__(self, detector: Optional[FaceDetector] = None, min_face_size: int = 24) -> None:
        self.detector = detector if detector is not None else HaarFaceDetector(min_face_size=min_face_size)

    def embed(self, img: np.ndarray, box: BoundingBox) -> np.ndarray:
        """Return the embedding for one face, raising :class:`EmbeddingUnavailable` on failure."""
        crop = crop_face(img, box)
        gray = _to_luminance(crop)
        return sample_grid(gray)

    def extract_faces(self, img: np.ndarray) -> List[FaceFeatures]:
        detections = self.detector.detect(img)
        results: List[FaceFeatures] = []
        for det in detections:
            try:
                embedding = self.embed(img, det.bounding_box)
            except EmbeddingUnavailable as exc:
                logger.debug(f"Using zero embedding for face at {det.bounding_box}: {exc}")
                embedding = zero_embedding()
            results.append(FaceFeatures(
                landmarks=det.landmarks,
                embedding=embedding,
                bounding_box=det.bounding_box,
            ))
        return results
