"""
Similarity scoring and greedy clustering of face embeddings.

Faces are grouped with a single pass, first-match, single-link algorithm:
each face joins the earliest-created cluster holding any member whose
cosine similarity with it is strictly greater than the threshold, and
otherwise opens a new cluster at the end of the list.  The result depends
on input order, which is why the pipeline hands faces over in a stable
order.

The cost is O(n·k·d) for n faces, k clusters and embedding length d.  This
is fine for personal photo libraries but is a known scaling limit; a
different policy (k-means, graph clustering) would change which faces end
up together and is deliberately not used here.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

import numpy as np

from .features import FaceCluster, FaceFeatures

#: Minimum similarity (exclusive) for a face to join an existing cluster.
SIM_THRESHOLD = 0.6


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity of two vectors, ``0.0`` when either has zero magnitude.

    Computed in float64 and clipped to ``[-1, 1]``.  Vectors containing NaN or
    infinity also score ``0.0``.
    """
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError("Embedding shapes do not match")
    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    sim = float(np.dot(a, b)) / (norm_a * norm_b)
    if not np.isfinite(sim):
        return 0.0
    return max(-1.0, min(1.0, sim))


def similarity(a: FaceFeatures, b: FaceFeatures) -> float:
    """Cosine similarity between the embeddings of two faces."""
    return cosine_similarity(a.embedding, b.embedding)


def _matches(face: FaceFeatures, cluster: FaceCluster, threshold: float) -> bool:
    return any(similarity(face, member) > threshold for member in cluster.faces)


def cluster_faces(faces: Sequence[FaceFeatures],
                  asset_ids: Optional[Sequence[Optional[str]]] = None,
                  threshold: float = SIM_THRESHOLD) -> List[FaceCluster]:
    """Group faces into clusters in a single greedy pass.

    Parameters
    ----------
    faces: sequence of FaceFeatures
        Faces in the order they were extracted.
    asset_ids: sequence of str, optional
        Source asset of each face, aligned with ``faces``.
    threshold: float
        A face joins a cluster only if some member scores strictly above it.

    Returns
    -------
    list of FaceCluster
        Clusters in creation order; every face belongs to exactly one.
    """
    if asset_ids is not None and len(asset_ids) != len(faces):
        raise ValueError("asset_ids must be aligned with faces")
    clusters: List[FaceCluster] = []
    for idx, face in enumerate(faces):
        asset_id = asset_ids[idx] if asset_ids is not None else None
        for cluster in clusters:
            if _matches(face, cluster, threshold):
                cluster.append(face, asset_id)
                break
        else:
            new_cluster = FaceCluster()
            new_cluster.append(face, asset_id)
            clusters.append(new_cluster)
    return clusters


def assign_names(clusters: Sequence[FaceCluster], start: int = 1) -> List[str]:
    """Assign display names (``Person 1``, ``Person 2``, …) in cluster order."""
    return [f"Person {start + idx}" for idx in range(len(clusters))]
