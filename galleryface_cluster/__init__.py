"""
Top‑level package for the gallery face clustering pipeline.

The functionality is organised into smaller modules:

- :mod:`galleryface_cluster.config` – dataclass for run configuration and argument parsing.
- :mod:`galleryface_cluster.features` – face feature, bounding box and cluster value types.
- :mod:`galleryface_cluster.images` – photo library enumeration and asynchronous image decoding.
- :mod:`galleryface_cluster.embedders` – face detection and grayscale-sampling embeddings.
- :mod:`galleryface_cluster.clustering` – cosine similarity and greedy clustering of faces.
- :mod:`galleryface_cluster.progress` – progress state published to observers during a run.
- :mod:`galleryface_cluster.db` – SQLite schema and the persistence gateway for persons and faces.
- :mod:`galleryface_cluster.embeddings_io` – Parquet export of the faces found in a run.
- :mod:`galleryface_cluster.pipeline` – orchestrates a run, tying together all modules.
- :mod:`galleryface_cluster.errors` – exception types.

You can run the pipeline from the command line using the ``galleryface`` script
installed by this package.
"""

__all__ = [
    "config",
    "features",
    "images",
    "embedders",
    "clustering",
    "progress",
    "db",
    "embeddings_io",
    "pipeline",
    "errors",
]
