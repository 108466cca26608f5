"""
Command‑line entry point for the face clustering pipeline.

This module parses command line arguments, constructs a :class:`RunConfig`
object and either runs the pipeline once (showing progress with tqdm) or
lists the people already stored in the database.
"""

from __future__ import annotations

import sys
from typing import Optional

from loguru import logger
from tqdm import tqdm

from .config import RunConfig, parse_args
from .db import PersistenceGateway
from .pipeline import RunResult, run_pipeline
from .progress import ProgressReporter, ProgressState


def configure_logging(level: str = "INFO") -> None:
    """Send log records at ``level`` and above to stderr."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(),
               format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name} | {message}")


def list_people(cfg: RunConfig) -> int:
    gateway = PersistenceGateway.from_path(cfg.db_path)
    people = gateway.fetch_all()
    if not people:
        print("No people stored yet.")
        return 0
    for person in people:
        assets = {face.asset_id for face in person.faces if face.asset_id}
        print(f"{person.id:>5}  {person.name:<16} {len(person.faces):>4} faces in {len(assets)} photos")
    return 0


def _print_summary(result: RunResult) -> None:
    if result.succeeded:
        print(f"Processed {result.assets_processed} photos: {result.faces_found} faces, "
              f"{result.persons_created} people.")
    else:
        print(f"Run failed: {result.error}", file=sys.stderr)
    if result.failures:
        print(f"{len(result.failures)} photos were skipped:", file=sys.stderr)
        for failure in result.failures:
            print(f"  {failure.asset_id}: {failure.reason}", file=sys.stderr)


def run_with_progress(cfg: RunConfig) -> RunResult:
    reporter = ProgressReporter()
    with tqdm(total=100, unit="%", bar_format="{desc}: {percentage:3.0f}%|{bar}|") as bar:
        def on_progress(state: ProgressState) -> None:
            bar.set_description_str(state.stage_label)
            bar.n = round(state.fraction_complete * 100)
            bar.refresh()
        reporter.subscribe(on_progress)
        return run_pipeline(cfg, reporter=reporter)


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point called by the ``galleryface`` script."""
    cfg = parse_args(argv)
    configure_logging(cfg.log_level)
    if cfg.extra.get("list_people"):
        return list_people(cfg)
    result = run_with_progress(cfg)
    _print_summary(result)
    return 0 if result.succeeded else 1


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
