# indyvision/core/errors.py
# Error taxonomy shared by the pipeline and the imaging backend

from __future__ import annotations


class IndyVisionError(Exception):
    """Base class for all IndyVision errors."""


class NoImageLoaded(IndyVisionError):
    """Apply/crop/save attempted before any source image was loaded."""


class InvalidRegion(IndyVisionError):
    """Region has no area or lies outside the image."""


class BackendFailure(IndyVisionError):
    """An imaging backend primitive reported an error."""

    def __init__(self, primitive: str, reason: str):
        super().__init__(f"{primitive}: {reason}")
        self.primitive = primitive
        self.reason = reason
