"""
Exception types raised by the face clustering pipeline.

Per-asset problems (:class:`ExtractionError` and its subclasses) are caught
by the pipeline and recorded against the asset; the remaining errors end a
run and are reported through :class:`galleryface_cluster.pipeline.RunResult`.
"""

from __future__ import annotations


class GalleryFaceError(Exception):
    """Base class for all pipeline errors."""


class ExtractionError(GalleryFaceError):
    """Decoding or face detection failed for a single asset."""


class DecodeError(ExtractionError):
    """An asset could not be decoded into a pixel buffer."""


class EmbeddingUnavailable(GalleryFaceError):
    """No embedding could be sampled for a detected face.

    Never escapes :meth:`galleryface_cluster.embedders.Embedder.extract_faces`;
    the face is kept with an all-zero embedding instead.
    """


class PersistError(GalleryFaceError):
    """A batch of Person/FaceInstance records could not be committed."""


class PipelineBusyError(GalleryFaceError):
    """``run_once`` was called while another run was in progress."""

    def __init__(self, message: str = "busy") -> None:
        super().__init__(message)


class PipelineCancelledError(GalleryFaceError):
    """The run was stopped by its cancellation signal."""

    def __init__(self, message: str = "cancelled") -> None:
        super().__init__(message)
