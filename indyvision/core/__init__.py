# indyvision/core/__init__.py
# Core package - pure callables and classes with no GUI dependencies
# Safe for headless testing

from .backend import (
    SEARCH_DEFAULTS,
    GeometricModel,
    ImagingBackend,
    Match,
    OpenCvBackend,
)
from .blobs import (
    BOX_PADDING,
    Blob,
    BlobDrawing,
    blob_drawing,
    blob_drawings,
    extract_blobs,
    filter_blobs,
    measure_blobs,
    save_blobs_csv,
)
from .errors import (
    BackendFailure,
    IndyVisionError,
    InvalidRegion,
    NoImageLoaded,
)
from .params import (
    DEFAULTS,
    AdaptiveThresholdParams,
    BlobParams,
    EdgeParams,
    GeometricMatchParams,
    MorphologyParams,
    OperationKind,
    ParameterSet,
    RoiParams,
    ThresholdParams,
    select_operation,
)
from .pipeline import Pipeline
from .regions import (
    RegionView,
    RoiRect,
    clampRectToImage,
    cropWithRect,
    regionToRect,
)
from .viewport import (
    FIT_MARGIN,
    ZOOM_STEP,
    Gesture,
    ViewportState,
    ViewportTransform,
)

__all__ = [
    # params
    "DEFAULTS",
    "OperationKind",
    "ParameterSet",
    "ThresholdParams",
    "MorphologyParams",
    "EdgeParams",
    "AdaptiveThresholdParams",
    "BlobParams",
    "GeometricMatchParams",
    "RoiParams",
    "select_operation",
    # blobs
    "BOX_PADDING",
    "Blob",
    "BlobDrawing",
    "measure_blobs",
    "filter_blobs",
    "extract_blobs",
    "blob_drawing",
    "blob_drawings",
    "save_blobs_csv",
    # viewport
    "FIT_MARGIN",
    "ZOOM_STEP",
    "Gesture",
    "ViewportState",
    "ViewportTransform",
    # regions
    "RoiRect",
    "RegionView",
    "clampRectToImage",
    "regionToRect",
    "cropWithRect",
    # backend
    "SEARCH_DEFAULTS",
    "ImagingBackend",
    "OpenCvBackend",
    "GeometricModel",
    "Match",
    # pipeline
    "Pipeline",
    # errors
    "IndyVisionError",
    "NoImageLoaded",
    "InvalidRegion",
    "BackendFailure",
]
