"""
Configuration structures for running the face clustering pipeline.

We use :class:`dataclasses.dataclass` to describe the parameters accepted by the
command line interface and stored in the ``runs`` table.  Each field
corresponds to a user‑controllable tuning parameter, with sensible defaults.

The :func:`parse_args` function converts command line arguments into a
:class:`RunConfig` instance.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from .clustering import SIM_THRESHOLD
from .images import CONTENT_MODES

LOG_LEVELS = ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL")


@dataclass
class RunConfig:
    """Parameters controlling a single pipeline run.

    Attributes
    ----------
    library_dir: Path
        Directory containing the photo library.  It is scanned recursively.
    db_path: Path
        Path to the SQLite database holding persons, faces and runs.  It
        will be created automatically if it does not exist.
    embeddings_dir: Optional[Path]
        When set, the faces of each successful run are exported to
        ``<embeddings_dir>/run_<id>/features.parquet``.
    batch_size: int
        Number of photos processed between two progress updates.
    workers: int
        Number of photos decoded and embedded concurrently within a batch.
    sim_threshold: float
        A face joins an existing person only when its cosine similarity
        with one of that person's faces is strictly greater than this.
    target_size: int
        Photos are decoded to fit (or fill) a square of this many pixels.
    content_mode: str
        ``"aspect_fit"`` or ``"aspect_fill"``.
    min_face_size: int
        Minimum side length (in pixels) of detected faces.
    use_phash: bool
        Whether to compute perceptual hashes of images and skip duplicates.
    log_level: str
        Minimum level written to stderr.
    command_line: Optional[str]
        Full original command line invocation, recorded for reproducibility.
    """
    library_dir: Path
    db_path: Path
    embeddings_dir: Optional[Path] = None
    batch_size: int = 10
    workers: int = 1
    sim_threshold: float = SIM_THRESHOLD
    target_size: int = 1024
    content_mode: str = "aspect_fit"
    min_face_size: int = 24
    use_phash: bool = False
    log_level: str = "INFO"
    command_line: Optional[str] = None
    # Additional fields can be stored as needed
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        problem = validate(self)
        if problem:
            raise ValueError(problem)

    def parameters(self) -> Dict[str, Any]:
        """JSON‑serialisable tuning parameters recorded with each run."""
        return {
            "batch_size": self.batch_size,
            "workers": self.workers,
            "sim_threshold": self.sim_threshold,
            "target_size": self.target_size,
            "content_mode": self.content_mode,
            "min_face_size": self.min_face_size,
            "use_phash": self.use_phash,
        }


def validate(config: RunConfig) -> Optional[str]:
    """Return a description of the first invalid setting, or ``None``."""
    if config.batch_size < 1:
        return "batch size must be at least 1"
    if config.workers < 1:
        return "workers must be at least 1"
    if config.target_size < 1:
        return "target size must be positive"
    if not -1.0 <= config.sim_threshold <= 1.0:
        return "similarity threshold must lie in [-1, 1]"
    if config.content_mode not in CONTENT_MODES:
        return f"content mode must be one of {', '.join(CONTENT_MODES)}"
    if config.log_level.upper() not in LOG_LEVELS:
        return f"log level must be one of {', '.join(LOG_LEVELS)}"
    return None


def parse_args(argv: Optional[list[str]] = None) -> RunConfig:
    """Parse command line arguments and return a :class:`RunConfig` instance.

    Parameters
    ----------
    argv: list of str, optional
        List of command line arguments.  If omitted, :mod:`sys.argv` will be
        used.  This parameter facilitates testing.

    Returns
    -------
    RunConfig
        Populated configuration object.
    """
    parser = argparse.ArgumentParser(
        prog="galleryface",
        description="Group the faces of a photo library into people",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--library", dest="library_dir", type=Path, required=False,
                        help="Path to the photo library folder")
    parser.add_argument("--db", dest="db_path", type=Path, required=True,
                        help="Path to SQLite database file")
    parser.add_argument("--embeddings-dir", dest="embeddings_dir", type=Path, default=None,
                        help="Directory to export per-run face features as Parquet")
    parser.add_argument("--batch-size", dest="batch_size", type=int, default=10,
                        help="Number of photos per progress batch")
    parser.add_argument("--workers", dest="workers", type=int, default=1,
                        help="Photos decoded and embedded concurrently")
    parser.add_argument("--sim-threshold", dest="sim_threshold", type=float, default=SIM_THRESHOLD,
                        help="Cosine similarity a face must exceed to join a person")
    parser.add_argument("--target-size", dest="target_size", type=int, default=1024,
                        help="Decode photos to fit this many pixels per side")
    parser.add_argument("--content-mode", dest="content_mode", choices=CONTENT_MODES,
                        default="aspect_fit", help="How photos are scaled to the target size")
    parser.add_argument("--min-face-size", dest="min_face_size", type=int, default=24,
                        help="Discard faces smaller than this many pixels")
    parser.add_argument("--use-phash", dest="use_phash", action="store_true",
                        help="Compute perceptual hashes of images to skip duplicates")
    parser.add_argument("--log-level", dest="log_level", type=str.upper, choices=LOG_LEVELS,
                        default="INFO", help="Minimum log level")
    parser.add_argument("--list-people", dest="list_people", action="store_true",
                        help="List the people stored in the database and exit")
    args = parser.parse_args(argv)

    if not args.list_people and args.library_dir is None:
        parser.error("--library must be provided unless --list-people is given")

    config_kwargs = dict(
        library_dir=args.library_dir if args.library_dir else Path("."),
        db_path=args.db_path,
        embeddings_dir=args.embeddings_dir,
        batch_size=args.batch_size,
        workers=args.workers,
        sim_threshold=args.sim_threshold,
        target_size=args.target_size,
        content_mode=args.content_mode,
        min_face_size=args.min_face_size,
        use_phash=args.use_phash,
        log_level=args.log_level,
        command_line=" ".join([parser.prog] + list(argv or [])),
        extra={"list_people": args.list_people},
    )
    try:
        return RunConfig(**config_kwargs)
    except ValueError as exc:
        parser.error(str(exc))
        raise
