# indyvision/core/regions.py
# ROI rectangles, clamping and crop views - pure callables with no GUI dependencies

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from .errors import InvalidRegion

# Type aliases for clarity
Rect = Tuple[int, int, int, int]  # (x0, y0, x1, y1) inclusive-exclusive style
ImageArray = np.ndarray  # np.uint8, shape (H,W) grayscale or (H,W,3) BGR
ShapeHW = Tuple[int, int]  # (height, width)


@dataclass(frozen=True)
class RoiRect:
    """Axis-aligned rectangle in image pixel space. Width/height never negative."""
    x: float
    y: float
    width: float
    height: float

    @classmethod
    def from_points(cls, x0: float, y0: float, x1: float, y1: float) -> "RoiRect":
        """Normalize two corners regardless of drag direction."""
        return cls(min(x0, x1), min(y0, y1), abs(x1 - x0), abs(y1 - y0))

    @property
    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    def to_pixels(self) -> Tuple[int, int, int, int]:
        """Integer (x, y, w, h) for crop/export. Extents come from the truncated
        far edge so a fractional rect keeps every pixel it reaches into."""
        x0, y0 = int(self.x), int(self.y)
        return (x0, y0, int(self.x + self.width) - x0, int(self.y + self.height) - y0)


def clampRectToImage(rect: Rect, shape: ShapeHW) -> Optional[Rect]:
    """Clamp (x0,y0,x1,y1) to image bounds. Returns None if the rect is degenerate
    or lies entirely outside the image."""
    h, w = shape[:2]
    x0, y0, x1, y1 = rect
    if x1 <= x0 or y1 <= y0:
        return None
    if x0 >= w or y0 >= h or x1 <= 0 or y1 <= 0:
        return None
    x0 = max(0, min(x0, w - 1))
    y0 = max(0, min(y0, h - 1))
    x1 = max(1, min(x1, w))
    y1 = max(1, min(y1, h))
    if x1 <= x0 or y1 <= y0:
        return None
    return (x0, y0, x1, y1)


def regionToRect(x: int, y: int, w: int, h: int, shape: ShapeHW) -> Rect:
    """Validate an (x, y, w, h) region against an image shape.
    Raises InvalidRegion for empty regions and for any region that does not
    lie entirely inside the image; the rect is never substituted."""
    if w <= 0 or h <= 0:
        raise InvalidRegion(f"region {w}x{h} has no area")
    rect = (int(x), int(y), int(x) + int(w), int(y) + int(h))
    if clampRectToImage(rect, shape) != rect:
        raise InvalidRegion(f"region ({x}, {y}, {w}, {h}) is outside the {shape[1]}x{shape[0]} image")
    return rect


@dataclass(frozen=True)
class RegionView:
    """(offset, extent) window over a backing image.

    view() aliases the parent's pixels; materialize() returns an
    independent copy that may outlive the parent.
    """
    parent: ImageArray
    rect: Rect

    @property
    def offset(self) -> Tuple[int, int]:
        return (self.rect[0], self.rect[1])

    @property
    def extent(self) -> Tuple[int, int]:
        x0, y0, x1, y1 = self.rect
        return (x1 - x0, y1 - y0)

    def view(self) -> ImageArray:
        x0, y0, x1, y1 = self.rect
        return self.parent[y0:y1, x0:x1]

    def materialize(self) -> ImageArray:
        return self.view().copy()


def cropWithRect(img: ImageArray, rect: Rect) -> ImageArray:
    """Crop using absolute rect (x0,y0,x1,y1); the result owns its pixels."""
    return RegionView(img, rect).materialize()
