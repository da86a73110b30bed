# indyvision/__init__.py
# IndyVision package root
"""
IndyVision - interactive image inspection core

Subpackages:
    core - operation parameters, pipeline, blob statistics, viewport math

Quick start:
    python -m indyvision ops                      # list operations
    python -m indyvision apply part.png Blob --set min_area=20

    # Or use the core directly:
    from indyvision.core import Pipeline, select_operation
    pipe = Pipeline()
    pipe.load_image("part.png")
    print(pipe.apply("Blob", select_operation("Blob")))
"""

__version__ = "0.1.0"

# Re-export commonly used items from core for convenience
from .core import (
    DEFAULTS,
    Blob,
    OpenCvBackend,
    OperationKind,
    ParameterSet,
    Pipeline,
    RoiRect,
    ViewportTransform,
    extract_blobs,
    select_operation,
)

__all__ = [
    "DEFAULTS",
    "OperationKind",
    "ParameterSet",
    "select_operation",
    "Pipeline",
    "OpenCvBackend",
    "Blob",
    "extract_blobs",
    "RoiRect",
    "ViewportTransform",
]
