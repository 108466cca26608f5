import asyncio
from typing import Dict, Iterable, List, Optional, Set

import numpy as np
import pytest

from galleryface_cluster.db import PersistenceGateway
from galleryface_cluster.embedders import Embedder
from galleryface_cluster.errors import DecodeError, ExtractionError
from galleryface_cluster.features import EMBED_LEN, BoundingBox, FaceFeatures
from galleryface_cluster.images import AssetRef, PhotoLibrary


def make_face(*components: float, box: Optional[BoundingBox] = None) -> FaceFeatures:
    """Face whose embedding starts with ``components`` and is zero elsewhere."""
    embedding = np.zeros(EMBED_LEN, dtype=np.float32)
    embedding[:len(components)] = components
    return FaceFeatures(
        landmarks={"face_center": (0.5, 0.5)},
        embedding=embedding,
        bounding_box=box or BoundingBox(0.25, 0.25, 0.5, 0.5),
    )


def make_assets(ids: Iterable[str]) -> List[AssetRef]:
    ids = list(ids)
    # Newest first, as a real library enumerates them
    return [AssetRef(id=asset_id, created_at=float(len(ids) - idx)) for idx, asset_id in enumerate(ids)]


class FakeLibrary(PhotoLibrary):
    """Library whose decoded "image" is simply the asset id."""

    def __init__(self, assets: List[AssetRef], broken: Iterable[str] = (),
                 delays: Optional[Dict[str, float]] = None, gate: Optional[asyncio.Event] = None) -> None:
        self.assets = assets
        self.broken: Set[str] = set(broken)
        self.delays = delays or {}
        self.gate = gate
        self.decoded: List[str] = []

    def enumerate_assets(self) -> List[AssetRef]:
        return list(self.assets)

    async def decode_image(self, asset, target_size, content_mode="aspect_fit"):
        self.decoded.append(asset.id)
        if self.gate is not None:
            await self.gate.wait()
        if asset.id in self.delays:
            await asyncio.sleep(self.delays[asset.id])
        if asset.id in self.broken:
            raise DecodeError(f"cannot decode {asset.id}")
        return asset.id


class FakeExtractor(Embedder):
    """Returns pre-arranged faces per asset id."""

    def __init__(self, faces: Dict[str, List[FaceFeatures]], failing: Iterable[str] = ()) -> None:
        self.faces = faces
        self.failing = set(failing)

    def extract_faces(self, img):
        if img in self.failing:
            raise ExtractionError(f"detector crashed on {img}")
        return list(self.faces.get(img, []))


@pytest.fixture
def gateway(tmp_path):
    return PersistenceGateway.from_path(tmp_path / "faces.sqlite")
