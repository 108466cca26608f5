"""
Value types shared by the extraction, clustering and persistence stages.

A :class:`FaceFeatures` record is produced for every detected face.  Its
embedding always has exactly :data:`EMBED_LEN` float32 entries: faces for
which no signal could be sampled carry an all-zero vector of that length
instead of a shorter or empty one, so every vector in a run has the same
dimension.

Coordinates are normalised to the unit square with the origin in the
top-left corner of the image (x grows to the right, y grows downwards).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

#: Side of the luminance sampling grid.
GRID_SIZE = 32
#: Length of every face embedding (``GRID_SIZE ** 2``).
EMBED_LEN = GRID_SIZE * GRID_SIZE

Point = Tuple[float, float]


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned rectangle in normalised image coordinates."""
    x: float
    y: float
    width: float
    height: float

    def to_pixels(self, image_width: int, image_height: int) -> Tuple[int, int, int, int]:
        """Scale to pixel space and return ``(x1, y1, x2, y2)`` (unclipped)."""
        x1 = int(np.floor(self.x * image_width))
        y1 = int(np.floor(self.y * image_height))
        x2 = int(np.floor((self.x + self.width) * image_width))
        y2 = int(np.floor((self.y + self.height) * image_height))
        return x1, y1, x2, y2

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BoundingBox":
        return cls(float(data["x"]), float(data["y"]), float(data["width"]), float(data["height"]))


def zero_embedding() -> np.ndarray:
    """Return the all-zero embedding used for faces without a usable signal."""
    return np.zeros(EMBED_LEN, dtype=np.float32)


@dataclass(frozen=True, eq=False)
class FaceFeatures:
    """Landmarks, embedding and bounding box of a single detected face.

    Instances are immutable: the landmark mapping is read-only and the
    embedding array is flagged non-writeable.
    """
    landmarks: Mapping[str, Point]
    embedding: np.ndarray
    bounding_box: BoundingBox

    def __post_init__(self) -> None:
        embedding = np.array(self.embedding, dtype=np.float32).reshape(-1)
        if embedding.shape[0] != EMBED_LEN:
            raise ValueError(f"Embedding must have {EMBED_LEN} entries, got {embedding.shape[0]}")
        if not np.all(np.isfinite(embedding)):
            raise ValueError("Embedding contains NaN or infinite values")
        embedding.flags.writeable = False
        landmarks = {str(name): (float(pt[0]), float(pt[1])) for name, pt in self.landmarks.items()}
        object.__setattr__(self, "embedding", embedding)
        object.__setattr__(self, "landmarks", MappingProxyType(landmarks))

    @property
    def is_degraded(self) -> bool:
        """True when the embedding is the all-zero placeholder."""
        return not np.any(self.embedding)

    def to_dict(self) -> Dict[str, Any]:
        """Serialise to a JSON-compatible dictionary."""
        return {
            "landmarks": {name: [pt[0], pt[1]] for name, pt in self.landmarks.items()},
            "embedding": [float(v) for v in self.embedding],
            "bounding_box": self.bounding_box.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FaceFeatures":
        return cls(
            landmarks={name: (pt[0], pt[1]) for name, pt in data.get("landmarks", {}).items()},
            embedding=np.asarray(data["embedding"], dtype=np.float32),
            bounding_box=BoundingBox.from_dict(data["bounding_box"]),
        )


@dataclass
class FaceCluster:
    """Faces judged to belong to one person during a single run.

    Clusters only grow; ``face_asset_ids[i]`` is the asset that ``faces[i]``
    was extracted from (``None`` when unknown).
    """
    faces: List[FaceFeatures] = field(default_factory=list)
    face_asset_ids: List[Optional[str]] = field(default_factory=list)

    def append(self, face: FaceFeatures, asset_id: Optional[str] = None) -> None:
        self.faces.append(face)
        self.face_asset_ids.append(asset_id)

    @property
    def asset_ids(self) -> List[str]:
        """Distinct contributing asset ids, in order of first contribution."""
        seen: Dict[str, None] = {}
        for asset_id in self.face_asset_ids:
            if asset_id is not None:
                seen.setdefault(asset_id, None)
        return list(seen)

    def __len__(self) -> int:
        return len(self.faces)

    def members(self) -> Sequence[Tuple[Optional[str], FaceFeatures]]:
        return list(zip(self.face_asset_ids, self.faces))
