"""
Parquet export of the faces found in a run.

Each run writes a single ``features.parquet`` under ``run_<id>`` in the
export directory.  Each row corresponds to a clustered face and includes
the embedding vector along with its source asset, bounding box and the
index of the cluster it was assigned to.  The export is a diagnostic
snapshot; the database remains the record of persons and faces.

We use PyArrow's Parquet support to write and read these files.
Embeddings are stored as lists of floats in an ``embedding`` column.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, List, Sequence

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from .features import FaceCluster

FEATURES_FILE = "features.parquet"


def _run_dir(base: Path, run_id: int) -> Path:
    return base / f"run_{run_id:06d}"


def records_from_clusters(clusters: Sequence[FaceCluster]) -> List[Dict[str, Any]]:
    """Flatten clusters into one export record per face."""
    records: List[Dict[str, Any]] = []
    for cluster_index, cluster in enumerate(clusters):
        for asset_id, face in cluster.members():
            box = face.bounding_box
            records.append({
                "face_index": len(records),
                "asset_id": asset_id,
                "cluster_index": cluster_index,
                "bbox_x": box.x,
                "bbox_y": box.y,
                "bbox_w": box.width,
                "bbox_h": box.height,
                "embedding": face.embedding.tolist(),
            })
    return records


def write_features(base: Path, run_id: int, records: Iterable[Dict[str, Any]]) -> Path:
    """Write face records for a run and return the Parquet file path.

    Parameters
    ----------
    base: Path
        Export root directory (``--embeddings-dir``).
    run_id: int
        Identifier of the run.
    records: iterable of dict
        Rows as produced by :func:`records_from_clusters`.
    """
    run_path = _run_dir(base, run_id)
    run_path.mkdir(parents=True, exist_ok=True)
    out_path = run_path / FEATURES_FILE
    df = pd.DataFrame(list(records), columns=[
        "face_index", "asset_id", "cluster_index",
        "bbox_x", "bbox_y", "bbox_w", "bbox_h", "embedding",
    ])
    table = pa.Table.from_pandas(df, preserve_index=False)
    pq.write_table(table, out_path)
    return out_path


def read_features(base: Path, run_id: int) -> pd.DataFrame:
    """Read the exported faces of a run, or an empty DataFrame if there are none."""
    path = _run_dir(base, run_id) / FEATURES_FILE
    if not path.exists():
        return pd.DataFrame()
    return pq.read_table(path).to_pandas()
