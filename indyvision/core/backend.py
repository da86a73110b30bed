# indyvision/core/backend.py
# Imaging backend: the primitive interface the pipeline calls, plus an OpenCV implementation
# The pipeline never touches pixels except through these calls

from __future__ import annotations

import abc
import functools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Sequence, Tuple

import cv2
import numpy as np
from PIL import Image

from .blobs import BlobDrawing
from .errors import BackendFailure
from .regions import Rect, RegionView

logger = logging.getLogger(__name__)

ImageArray = np.ndarray  # np.uint8, shape (H,W) grayscale or (H,W,3) BGR
LabelMap = np.ndarray  # np.int32, shape (H,W), 0=background, 1..N=objects

# Binarize modes
FIXED = "fixed"                    # v > lo
RANGE = "range"                    # lo <= v <= hi
BIMODAL = "bimodal"                # Otsu, v > t
ADAPTIVE_GREATER = "adaptive_greater"  # v > local mean + lo
ADAPTIVE_LESS = "adaptive_less"        # v < local mean - lo

# --------------------- Search defaults (edit freely) --------------
SEARCH_DEFAULTS: Dict[str, Any] = {
    "scale_factors": (0.8, 0.9, 1.0, 1.1, 1.2),
    "overlap": 0.5,          # peaks closer than overlap * model size are merged
    "max_matches": 100,
    "edge_low": 50,          # Canny hysteresis for model edges
    "edge_high": 150,
}
# ------------------------------------------------------------------

# BGR colors for overlays
RED = (0, 0, 255)
GREEN = (0, 255, 0)
BLUE = (255, 0, 0)
YELLOW = (0, 255, 255)


@dataclass(frozen=True)
class Match:
    x: float        # model center, image pixels
    y: float
    score: float    # 0..100
    width: int = 0  # matched footprint
    height: int = 0


@dataclass
class GeometricModel:
    template: ImageArray   # smoothed gray model
    edges: ImageArray      # edge map shown in previews
    smoothness: float


# --------------------- Internal helpers ---------------------------

def _forceOdd(k: int) -> int:
    k = int(max(1, k))
    return k if k % 2 == 1 else k + 1


def _toUint8(img: np.ndarray) -> np.ndarray:
    if img.dtype != np.uint8:
        img = cv2.normalize(img.astype(np.float32), None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)
    return img


def _primitive(name: str) -> Callable:
    """Re-raise OpenCV/IO errors from a primitive as BackendFailure."""
    def _decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        def _wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return fn(*args, **kwargs)
            except (cv2.error, OSError) as e:
                logger.error("Backend primitive %s failed: %s", name, e)
                raise BackendFailure(name, str(e)) from e
        return _wrapper
    return _decorator


def _peakPositions(res: np.ndarray, thr: float, tw: int, th: int) -> List[Tuple[int, int]]:
    """(y, x) of local maxima in a correlation map that reach thr.

    A position is a peak when nothing within overlap * template size scores
    higher. At most max_matches peaks are kept, best first.
    """
    overlap = float(SEARCH_DEFAULTS["overlap"])
    cap = int(SEARCH_DEFAULTS["max_matches"])
    kw = max(3, _forceOdd(int(overlap * tw)))
    kh = max(3, _forceOdd(int(overlap * th)))
    res = res.astype(np.float32, copy=False)
    local_max = cv2.dilate(res, np.ones((kh, kw), np.uint8))
    ys, xs = np.nonzero((res >= thr) & (res >= local_max))
    if ys.size > cap:
        keep = np.argpartition(res[ys, xs], -cap)[-cap:]
        ys, xs = ys[keep], xs[keep]
    order = np.argsort(-res[ys, xs], kind="stable")
    return [(int(ys[i]), int(xs[i])) for i in order]


def _smoothingKernel(smoothness: float) -> int:
    # 0 -> no blur, 100 -> 11x11
    return _forceOdd(1 + int(round(float(smoothness) / 10.0)))


# --------------------- Interface ----------------------------------

class ImagingBackend(abc.ABC):
    """Primitives consumed by the pipeline. Implementations own all pixel math."""

    @abc.abstractmethod
    def load_image(self, path: str) -> ImageArray: ...

    @abc.abstractmethod
    def to_grayscale(self, img: ImageArray) -> ImageArray: ...

    @abc.abstractmethod
    def binarize(self, img: ImageArray, mode: str, lo: float = 0, hi: float = 255,
                 window: int = 35) -> ImageArray: ...

    @abc.abstractmethod
    def morph_op(self, img: ImageArray, op: str, iterations: int) -> ImageArray: ...

    @abc.abstractmethod
    def edge_filter(self, img: ImageArray, kind: str) -> ImageArray: ...

    @abc.abstractmethod
    def label(self, mask: ImageArray) -> LabelMap: ...

    @abc.abstractmethod
    def define_model(self, img: ImageArray, smoothness: float) -> GeometricModel: ...

    @abc.abstractmethod
    def geometric_search(self, model: GeometricModel, img: ImageArray, min_score: float) -> List[Match]: ...

    @abc.abstractmethod
    def export_region(self, img: ImageArray, rect: Rect, path: str) -> None: ...

    @abc.abstractmethod
    def draw_blobs(self, img: ImageArray, drawings: Sequence[BlobDrawing]) -> ImageArray: ...

    @abc.abstractmethod
    def draw_matches(self, img: ImageArray, matches: Sequence[Match]) -> ImageArray: ...

    def to_display_buffer(self, img: ImageArray) -> Tuple[np.ndarray, int]:
        """Rows padded to a 4-byte stride, as most toolkits expect.
        Returns (HxStride uint8 buffer, stride)."""
        h, w = img.shape[:2]
        channels = 1 if img.ndim == 2 else img.shape[2]
        row = w * channels
        stride = (row + 3) & ~3
        buf = np.zeros((h, stride), dtype=np.uint8)
        buf[:, :row] = img.reshape(h, row)
        return buf, stride

    def to_pil(self, img: ImageArray) -> Image.Image:
        """BGR/gray array -> PIL image for toolkits that take PIL."""
        if img.ndim == 2:
            return Image.fromarray(img)
        if img.shape[2] == 4:
            return Image.fromarray(cv2.cvtColor(img, cv2.COLOR_BGRA2RGBA))
        return Image.fromarray(cv2.cvtColor(img, cv2.COLOR_BGR2RGB))


# --------------------- OpenCV implementation ----------------------

class OpenCvBackend(ImagingBackend):

    @_primitive("load_image")
    def load_image(self, path: str) -> ImageArray:
        img = cv2.imread(path, cv2.IMREAD_UNCHANGED)
        if img is None:
            raise BackendFailure("load_image", f"could not read image: {path}")
        return _toUint8(img)

    @_primitive("to_grayscale")
    def to_grayscale(self, img: ImageArray) -> ImageArray:
        if img.ndim == 3:
            code = cv2.COLOR_BGRA2GRAY if img.shape[2] == 4 else cv2.COLOR_BGR2GRAY
            img = cv2.cvtColor(img, code)
        else:
            img = img.copy()
        return _toUint8(img)

    @_primitive("binarize")
    def binarize(self, img: ImageArray, mode: str, lo: float = 0, hi: float = 255,
                 window: int = 35) -> ImageArray:
        if mode == FIXED:
            _, out = cv2.threshold(img, float(lo), 255, cv2.THRESH_BINARY)
        elif mode == RANGE:
            out = cv2.inRange(img, int(lo), int(hi))
        elif mode == BIMODAL:
            _, out = cv2.threshold(img, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
        elif mode in (ADAPTIVE_GREATER, ADAPTIVE_LESS):
            blk = max(3, _forceOdd(int(window)))
            if mode == ADAPTIVE_GREATER:
                # THRESH_BINARY keeps v > mean - C
                out = cv2.adaptiveThreshold(img, 255, cv2.ADAPTIVE_THRESH_MEAN_C,
                                            cv2.THRESH_BINARY, blk, -float(lo))
            else:
                # THRESH_BINARY_INV keeps v <= mean - C
                out = cv2.adaptiveThreshold(img, 255, cv2.ADAPTIVE_THRESH_MEAN_C,
                                            cv2.THRESH_BINARY_INV, blk, float(lo))
        else:
            raise ValueError(f"Unknown binarize mode: {mode}")
        return out.astype(np.uint8)

    @_primitive("morph_op")
    def morph_op(self, img: ImageArray, op: str, iterations: int) -> ImageArray:
        ops = {
            "Erode": cv2.MORPH_ERODE,
            "Dilate": cv2.MORPH_DILATE,
            "Open": cv2.MORPH_OPEN,
            "Close": cv2.MORPH_CLOSE,
        }
        if op not in ops:
            raise ValueError(f"Unknown morphology op: {op}")
        if iterations <= 0:
            return img.copy()
        krn = np.ones((3, 3), np.uint8)
        return cv2.morphologyEx(img, ops[op], krn, iterations=int(iterations))

    @_primitive("edge_filter")
    def edge_filter(self, img: ImageArray, kind: str) -> ImageArray:
        src = img.astype(np.float32)
        if kind == "Sobel":
            gx = cv2.Sobel(src, cv2.CV_32F, 1, 0, ksize=3)
            gy = cv2.Sobel(src, cv2.CV_32F, 0, 1, ksize=3)
            mag = cv2.magnitude(gx, gy)
        elif kind == "Prewitt":
            kx = np.array([[-1, 0, 1], [-1, 0, 1], [-1, 0, 1]], np.float32)
            gx = cv2.filter2D(src, cv2.CV_32F, kx)
            gy = cv2.filter2D(src, cv2.CV_32F, kx.T)
            mag = cv2.magnitude(gx, gy)
        elif kind == "Laplacian":
            mag = np.abs(cv2.Laplacian(src, cv2.CV_32F, ksize=1))
        else:
            raise ValueError(f"Unknown edge kernel: {kind}")
        return np.clip(mag, 0, 255).astype(np.uint8)

    @_primitive("label")
    def label(self, mask: ImageArray) -> LabelMap:
        fg = (mask > 0).astype(np.uint8)
        _, labels = cv2.connectedComponents(fg, connectivity=8)
        return labels.astype(np.int32)

    @_primitive("define_model")
    def define_model(self, img: ImageArray, smoothness: float) -> GeometricModel:
        gray = self.to_grayscale(img)
        h, w = gray.shape[:2]
        if w > 4 and h > 4:
            # drop the 1px frame so border artifacts do not become model edges
            gray = RegionView(gray, (1, 1, w - 1, h - 1)).materialize()
        k = _smoothingKernel(smoothness)
        smooth = cv2.GaussianBlur(gray, (k, k), 0) if k >= 3 else gray
        edges = cv2.Canny(smooth, SEARCH_DEFAULTS["edge_low"], SEARCH_DEFAULTS["edge_high"])
        return GeometricModel(template=smooth, edges=edges, smoothness=float(smoothness))

    @_primitive("geometric_search")
    def geometric_search(self, model: GeometricModel, img: ImageArray, min_score: float) -> List[Match]:
        """Multi-scale normalized correlation; returns non-overlapping peaks >= min_score."""
        gray = self.to_grayscale(img)
        k = _smoothingKernel(model.smoothness)
        if k >= 3:
            gray = cv2.GaussianBlur(gray, (k, k), 0)
        ih, iw = gray.shape[:2]
        thr = float(min_score) / 100.0

        candidates: List[Match] = []
        for factor in SEARCH_DEFAULTS["scale_factors"]:
            tpl = model.template
            if factor != 1.0:
                tw = max(1, int(round(tpl.shape[1] * factor)))
                th = max(1, int(round(tpl.shape[0] * factor)))
                tpl = cv2.resize(tpl, (tw, th), interpolation=cv2.INTER_LINEAR)
            th, tw = tpl.shape[:2]
            if th > ih or tw > iw:
                continue
            res = cv2.matchTemplate(gray, tpl, cv2.TM_CCOEFF_NORMED)
            res = np.nan_to_num(res, nan=0.0, posinf=0.0, neginf=0.0)
            for y, x in _peakPositions(res, thr, tw, th):
                candidates.append(Match(x=x + tw / 2.0, y=y + th / 2.0,
                                        score=float(res[y, x]) * 100.0, width=tw, height=th))

        # greedy suppression, best score first
        candidates.sort(key=lambda m: m.score, reverse=True)
        kept: List[Match] = []
        overlap = float(SEARCH_DEFAULTS["overlap"])
        for m in candidates:
            if len(kept) >= int(SEARCH_DEFAULTS["max_matches"]):
                break
            if all(abs(m.x - o.x) >= overlap * o.width or abs(m.y - o.y) >= overlap * o.height
                   for o in kept):
                kept.append(m)
        return kept

    @_primitive("export_region")
    def export_region(self, img: ImageArray, rect: Rect, path: str) -> None:
        ok = cv2.imwrite(path, RegionView(img, rect).view())
        if not ok:
            raise BackendFailure("export_region", f"could not write image: {path}")

    @_primitive("draw_blobs")
    def draw_blobs(self, img: ImageArray, drawings: Sequence[BlobDrawing]) -> ImageArray:
        out = cv2.cvtColor(img, cv2.COLOR_GRAY2BGR) if img.ndim == 2 else img.copy()
        for d in drawings:
            x0, y0, x1, y1 = d.box
            cv2.rectangle(out, (x0, y0), (x1, y1), RED, 1)
            cv2.circle(out, d.center, 3, BLUE, -1)
            cv2.putText(out, d.text, (d.center[0] + 10, d.center[1]),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.4, GREEN, 1, cv2.LINE_AA)
        return out

    @_primitive("draw_matches")
    def draw_matches(self, img: ImageArray, matches: Sequence[Match]) -> ImageArray:
        out = cv2.cvtColor(img, cv2.COLOR_GRAY2BGR) if img.ndim == 2 else img.copy()
        for m in matches:
            cx, cy = int(m.x), int(m.y)
            x0 = int(round(m.x - m.width / 2.0))
            y0 = int(round(m.y - m.height / 2.0))
            cv2.rectangle(out, (x0, y0), (x0 + m.width - 1, y0 + m.height - 1), RED, 2)
            cv2.line(out, (cx - 20, cy), (cx + 20, cy), BLUE, 1)
            cv2.line(out, (cx, cy - 20), (cx, cy + 20), BLUE, 1)
            cv2.putText(out, f"Score: {m.score:.1f}%", (cx + 25, cy),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.5, YELLOW, 1, cv2.LINE_AA)
        return out
