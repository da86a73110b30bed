# indyvision/core/viewport.py
# Image <-> display coordinate mapping, zoom/pan and the ROI drawing gesture
# Pure math: the presentation shell feeds it mouse positions and sizes

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from .regions import RoiRect

logger = logging.getLogger(__name__)

ZOOM_STEP = 1.2      # one wheel notch
FIT_MARGIN = 0.95    # fraction of the viewport used by fit-to-screen

Point = Tuple[float, float]


@dataclass
class ViewportState:
    scale_x: float = 1.0
    scale_y: float = 1.0
    translate_x: float = 0.0
    translate_y: float = 0.0


class Gesture(Enum):
    IDLE = "idle"
    DRAWING = "drawing"
    PANNING = "panning"


class ViewportTransform:
    """Maps image pixel (x, y) to display (x*s + tx, y*s + ty).

    Also owns the single active pointer gesture: ROI drawing or panning,
    never both at once.
    """

    def __init__(self, state: Optional[ViewportState] = None):
        self.state = state if state is not None else ViewportState()
        self.gesture = Gesture.IDLE
        self.roi: Optional[RoiRect] = None

        self._pan_start: Point = (0.0, 0.0)
        self._pan_origin: Point = (0.0, 0.0)
        self._roi_start: Point = (0.0, 0.0)
        self._image_size: Tuple[int, int] = (0, 0)

    # -------- State shortcuts --------

    @property
    def scale(self) -> float:
        return self.state.scale_x

    @property
    def translation(self) -> Point:
        return (self.state.translate_x, self.state.translate_y)

    def reset(self) -> None:
        self.state = ViewportState()

    # -------- Fit / zoom / pan --------

    def fit_to_screen(self, image_w: float, image_h: float, viewport_w: float, viewport_h: float) -> bool:
        """Shrink (never enlarge) and center the image. False when any extent is zero."""
        if image_w <= 0 or image_h <= 0 or viewport_w <= 0 or viewport_h <= 0:
            return False
        scale = min(viewport_w / float(image_w), viewport_h / float(image_h))
        scale = min(scale, 1.0) * FIT_MARGIN
        self.state = ViewportState(
            scale_x=scale,
            scale_y=scale,
            translate_x=(viewport_w - image_w * scale) / 2.0,
            translate_y=(viewport_h - image_h * scale) / 2.0,
        )
        logger.debug("fit %sx%s into %sx%s -> scale %.4f", image_w, image_h, viewport_w, viewport_h, scale)
        return True

    def zoom_at_point(self, cx: float, cy: float, factor: float) -> None:
        """Scale by factor keeping the display point (cx, cy) over the same image pixel."""
        if factor <= 0:
            raise ValueError("zoom factor must be positive")
        s = self.state
        s.scale_x *= factor
        s.scale_y *= factor
        s.translate_x = cx - (cx - s.translate_x) * factor
        s.translate_y = cy - (cy - s.translate_y) * factor

    def zoom_step(self, cx: float, cy: float, delta: float) -> None:
        """Mouse-wheel zoom: positive delta zooms in one step, otherwise out."""
        self.zoom_at_point(cx, cy, ZOOM_STEP if delta > 0 else 1.0 / ZOOM_STEP)

    def begin_pan(self, sx: float, sy: float) -> bool:
        if self.gesture is not Gesture.IDLE:
            return False
        self.gesture = Gesture.PANNING
        self._pan_start = (sx, sy)
        self._pan_origin = self.translation
        return True

    def pan(self, dx: float, dy: float) -> None:
        """Translation = value at gesture start + (dx, dy)."""
        if self.gesture is not Gesture.PANNING:
            return
        self.state.translate_x = self._pan_origin[0] + dx
        self.state.translate_y = self._pan_origin[1] + dy

    def pan_to(self, sx: float, sy: float) -> None:
        self.pan(sx - self._pan_start[0], sy - self._pan_start[1])

    def end_pan(self) -> None:
        if self.gesture is Gesture.PANNING:
            self.gesture = Gesture.IDLE

    # -------- Coordinate mapping --------

    def screen_to_image(self, sx: float, sy: float) -> Point:
        s = self.state
        return ((sx - s.translate_x) / s.scale_x, (sy - s.translate_y) / s.scale_y)

    def image_to_screen(self, ix: float, iy: float) -> Point:
        s = self.state
        return (ix * s.scale_x + s.translate_x, iy * s.scale_y + s.translate_y)

    def image_rect_to_screen(self, rect: RoiRect) -> Tuple[float, float, float, float]:
        """(left, top, width, height) of an image-space rect on the display."""
        left, top = self.image_to_screen(rect.x, rect.y)
        return (left, top, rect.width * self.state.scale_x, rect.height * self.state.scale_y)

    def image_point_label(self, sx: float, sy: float, image_w: int, image_h: int) -> str:
        """Cursor readout in image pixels; (0, 0) when outside the image."""
        ix, iy = self.screen_to_image(sx, sy)
        x, y = int(ix), int(iy)
        if 0 <= ix < image_w and 0 <= iy < image_h:
            return f"(X: {x}, Y: {y})"
        return "(X: 0, Y: 0)"

    # -------- ROI gesture --------

    def begin_roi(self, sx: float, sy: float, image_w: int, image_h: int) -> bool:
        """Start drawing when the display point lands inside the image."""
        if self.gesture is not Gesture.IDLE:
            return False
        ix, iy = self.screen_to_image(sx, sy)
        if not (0 <= ix < image_w and 0 <= iy < image_h):
            return False
        self.gesture = Gesture.DRAWING
        self._image_size = (image_w, image_h)
        self._roi_start = (ix, iy)
        self.roi = RoiRect(ix, iy, 0.0, 0.0)
        return True

    def update_roi(self, sx: float, sy: float) -> Optional[RoiRect]:
        if self.gesture is not Gesture.DRAWING:
            return self.roi
        iw, ih = self._image_size
        ix, iy = self.screen_to_image(sx, sy)
        ix = min(max(ix, 0.0), float(iw))
        iy = min(max(iy, 0.0), float(ih))
        self.roi = RoiRect.from_points(self._roi_start[0], self._roi_start[1], ix, iy)
        return self.roi

    def end_roi(self) -> Optional[RoiRect]:
        if self.gesture is Gesture.DRAWING:
            self.gesture = Gesture.IDLE
            logger.debug("ROI finished: %s", self.roi)
        return self.roi

    def clear_roi(self) -> None:
        self.roi = None
