# indyvision/core/pipeline.py
# Operation dispatch over a pristine source image
# Every apply() starts from a fresh copy of the source, so repeated or switched
# operations never accumulate.

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Tuple, Union

import numpy as np

from . import backend as bk
from .backend import GeometricModel, ImagingBackend, Match, OpenCvBackend
from .blobs import Blob, blob_drawings, filter_blobs, measure_blobs
from .errors import BackendFailure, InvalidRegion, NoImageLoaded
from .params import (
    PARAMETER_TYPES,
    AdaptiveThresholdParams,
    BlobParams,
    EdgeParams,
    GeometricMatchParams,
    MorphologyParams,
    OperationKind,
    ParameterSet,
    ThresholdParams,
)
from .regions import Rect, RoiRect, cropWithRect, regionToRect

logger = logging.getLogger(__name__)

ImageArray = np.ndarray

NO_IMAGE_MESSAGE = "No image loaded."
COMPLETE_MESSAGE = "Processing complete."
NO_MODEL_MESSAGE = "No model defined."
MODEL_DEFINITION_MESSAGE = "Model definition in progress; train the model first."

Outcome = Tuple[str, ImageArray]  # (status, display buffer)


class Pipeline:
    """
    Owns the source/working images and runs one operation at a time.

    Not re-entrant: callers must serialize apply/crop/load on one instance.
    """

    def __init__(self, backend: Optional[ImagingBackend] = None):
        self.backend: ImagingBackend = backend if backend is not None else OpenCvBackend()
        self.source: Optional[ImageArray] = None
        self.working: Optional[ImageArray] = None
        self.show_original = False
        self.last_failed = False  # True when the latest apply hit a BackendFailure

        self.blobs: List[Blob] = []
        self.total_blobs = 0
        self.matches: List[Match] = []

        self.model: Optional[GeometricModel] = None
        self.model_image: Optional[ImageArray] = None
        self.model_definition_mode = False

        self._original: Optional[ImageArray] = None
        self._processed: Optional[ImageArray] = None

        self._handlers: Dict[OperationKind, Callable[[ParameterSet], Outcome]] = {
            OperationKind.THRESHOLD: self._threshold,
            OperationKind.MORPHOLOGY: self._morphology,
            OperationKind.EDGE: self._edge,
            OperationKind.ADAPTIVE_THRESHOLD: self._adaptive,
            OperationKind.BLOB: self._blob,
            OperationKind.GEOMETRIC_MATCH: self._geometric_match,
        }

    # -------- Source management --------

    def load_image(self, path: str) -> None:
        """Load a file through the backend as the new grayscale source."""
        raw = self.backend.load_image(path)
        self.set_source(raw)
        logger.info("Loaded %s (%dx%d)", path, self.source.shape[1], self.source.shape[0])

    def set_source(self, image: ImageArray) -> None:
        self.source = self.backend.to_grayscale(image)
        self._reset_from_source()
        self.show_original = True

    def _reset_from_source(self) -> None:
        self.working = self.source.copy()
        self._original = self.source
        self._processed = self.working
        self.blobs = []
        self.total_blobs = 0
        self.matches = []

    def _require_source(self) -> ImageArray:
        if self.source is None:
            raise NoImageLoaded(NO_IMAGE_MESSAGE)
        return self.source

    # -------- Display --------

    def get_original(self) -> Optional[ImageArray]:
        return self._original

    def get_processed(self) -> Optional[ImageArray]:
        return self._processed

    @property
    def current_image(self) -> Optional[ImageArray]:
        """Original or last result depending on show_original; never recomputes."""
        return self._original if self.show_original else self._processed

    # -------- Apply --------

    def apply(self, operation: Union[str, OperationKind, None], params: Optional[ParameterSet]) -> str:
        """Run `operation` on a fresh copy of the source and cache the display result."""
        try:
            source = self._require_source()
        except NoImageLoaded as e:
            logger.warning("apply(%r) skipped: %s", operation, e)
            return str(e)

        self.working = source.copy()
        self.last_failed = False
        self.blobs = []
        self.total_blobs = 0
        self.matches = []

        kind = OperationKind.parse(operation)
        handler = self._handlers.get(kind) if kind is not None else None
        expected = PARAMETER_TYPES.get(kind) if kind is not None else None

        if handler is None or expected is None or not isinstance(params, expected):
            logger.debug("apply(%r): nothing to run", operation)
            message, display = COMPLETE_MESSAGE, self.working
        else:
            logger.debug("apply %s %s", kind.value, params.as_dict())
            try:
                message, display = handler(params)
            except BackendFailure as e:
                logger.error("%s failed: %s", kind.value, e)
                self.last_failed = True
                return f"{kind.value} failed: {e}"

        self._processed = display
        self.show_original = False
        logger.info("%s", message)
        return message

    # -------- Operation arms --------

    def _threshold(self, p: ThresholdParams) -> Outcome:
        self.working = self.backend.binarize(self.working, bk.RANGE, p.threshold_min, p.threshold_max)
        return COMPLETE_MESSAGE, self.working

    def _morphology(self, p: MorphologyParams) -> Outcome:
        mask = self.backend.binarize(self.working, bk.BIMODAL)
        self.working = self.backend.morph_op(mask, p.mode, p.total_iterations)
        return COMPLETE_MESSAGE, self.working

    def _edge(self, p: EdgeParams) -> Outcome:
        self.working = self.backend.edge_filter(self.working, p.method)
        if p.strength > 0:
            self.working = self.backend.binarize(self.working, bk.FIXED, p.strength)
        return COMPLETE_MESSAGE, self.working

    def _adaptive(self, p: AdaptiveThresholdParams) -> Outcome:
        mode = bk.ADAPTIVE_GREATER if p.mode == "Bright" else bk.ADAPTIVE_LESS
        self.working = self.backend.binarize(self.working, mode, p.offset, window=p.window_size)
        return COMPLETE_MESSAGE, self.working

    def _blob(self, p: BlobParams) -> Outcome:
        self.working = self.backend.binarize(self.working, bk.RANGE, p.threshold_min, p.threshold_max)
        labels = self.backend.label(self.working)
        found = measure_blobs(labels)
        self.blobs = filter_blobs(found, p.min_area)
        self.total_blobs = len(found)

        display = self.working
        if p.draw_box:
            display = self.backend.draw_blobs(self.working, blob_drawings(self.blobs, self.working.shape))
        return f"Detected {len(self.blobs)} blob(s) ({self.total_blobs} total).", display

    def _geometric_match(self, p: GeometricMatchParams) -> Outcome:
        if self.model_definition_mode:
            return MODEL_DEFINITION_MESSAGE, self.working
        if self.model is None:
            return NO_MODEL_MESSAGE, self.working

        self.matches = self.backend.geometric_search(self.model, self.working, p.min_score)
        if not self.matches:
            return f"No match found (min score {p.min_score:g}%).", self.working
        display = self.backend.draw_matches(self.working, self.matches)
        return f"Found {len(self.matches)} match(es) (min score {p.min_score:g}%).", display

    # -------- Geometric model --------

    def load_model(self, path: str) -> None:
        self.set_model(self.backend.load_image(path))
        logger.info("Loaded model image %s", path)

    def set_model(self, image: ImageArray) -> None:
        """Enter model-definition mode with `image` as the model."""
        self.model_image = self.backend.to_grayscale(image)
        self.model = None
        self.model_definition_mode = True
        self._processed = self.model_image
        self.show_original = False

    def preview_model(self, params: GeometricMatchParams) -> bool:
        """Show the model's edges at the given smoothness; False without a model image."""
        if self.model_image is None:
            return False
        preview = self.backend.define_model(self.model_image, params.smoothness)
        self._processed = preview.edges
        self.show_original = False
        return True

    def train_model(self, params: GeometricMatchParams) -> bool:
        """Finalize the model and return to the source image."""
        if self.model_image is None:
            return False
        self.model = self.backend.define_model(self.model_image, params.smoothness)
        self.model_definition_mode = False
        if self.source is not None:
            self.working = self.source.copy()
            self._processed = self.working
        logger.info("Model trained (smoothness %g)", params.smoothness)
        return True

    # -------- Regions --------

    def _region(self, x: int, y: int, w: int, h: int) -> Rect:
        return regionToRect(x, y, w, h, self._require_source().shape)

    def crop(self, x: int, y: int, w: int, h: int) -> bool:
        """Replace the source with a copy of the region. False (no-op) if invalid."""
        try:
            rect = self._region(x, y, w, h)
        except (NoImageLoaded, InvalidRegion) as e:
            logger.info("Crop skipped: %s", e)
            return False
        self.source = cropWithRect(self.source, rect)
        self._reset_from_source()
        logger.info("Cropped to %s", rect)
        return True

    def save_region(self, path: str, x: int, y: int, w: int, h: int) -> bool:
        """Export a region of the source. False (no-op) if invalid; backend
        errors propagate as BackendFailure."""
        try:
            rect = self._region(x, y, w, h)
        except (NoImageLoaded, InvalidRegion) as e:
            logger.info("Save skipped: %s", e)
            return False
        self.backend.export_region(self.source, rect, path)
        logger.info("Saved region %s to %s", rect, path)
        return True

    def crop_roi(self, roi: Optional[RoiRect]) -> bool:
        if roi is None or roi.is_empty:
            return False
        return self.crop(*roi.to_pixels())

    def save_roi(self, path: str, roi: Optional[RoiRect]) -> bool:
        if roi is None or roi.is_empty:
            return False
        return self.save_region(path, *roi.to_pixels())
