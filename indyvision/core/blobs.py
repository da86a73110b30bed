# indyvision/core/blobs.py
# Per-component statistics from a label image + drawing geometry + CSV export
# Pure callables with no GUI dependencies - safe for headless testing

from __future__ import annotations

import csv
import logging
from dataclasses import asdict, dataclass, fields
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

BOX_PADDING = 5  # px around each drawn bounding box

ShapeHW = Tuple[int, int]  # (height, width)


# ---------- Data Model ----------

@dataclass(frozen=True)
class Blob:
    id: int
    min_x: int
    max_x: int
    min_y: int
    max_y: int
    area: int    # pixel count, >= 1
    sum_x: int
    sum_y: int

    @property
    def centroid(self) -> Tuple[int, int]:
        # floor division
        return (self.sum_x // self.area, self.sum_y // self.area)

    @property
    def width(self) -> int:
        return self.max_x - self.min_x + 1

    @property
    def height(self) -> int:
        return self.max_y - self.min_y + 1

    @property
    def label_text(self) -> str:
        cx, cy = self.centroid
        return f"({cx}, {cy}, {self.area})"


@dataclass(frozen=True)
class BlobDrawing:
    """What a renderer needs for one blob; the analyzer never draws."""
    blob_id: int
    box: Tuple[int, int, int, int]  # x0, y0, x1, y1 inclusive
    center: Tuple[int, int]
    text: str


# ---------- Public API ----------

def measure_blobs(labels: np.ndarray, shape_hw: Optional[ShapeHW] = None) -> List[Blob]:
    """
    Aggregate bbox, area and coordinate sums for every label > 0.
    - labels: HxW integer label image (0 = background), or a flat buffer
      together with shape_hw=(H, W)
    Returns one Blob per distinct label, ordered by label id.

    Vectorized: a single pass over the foreground pixels using np.unique +
    bincount for areas/sums and ufunc.at for the extents.
    """
    if labels is None:
        return []
    lab = np.asarray(labels)
    if lab.ndim == 1:
        if shape_hw is None:
            raise ValueError("measure_blobs: flat label buffer needs shape_hw")
        h, w = shape_hw
        if lab.size != h * w:
            raise ValueError(f"measure_blobs: buffer of {lab.size} px does not match {w}x{h}")
        lab = lab.reshape(h, w)
    elif lab.ndim != 2:
        raise ValueError("measure_blobs: labels must be HxW")

    lab = lab.astype(np.int64, copy=False)
    ys, xs = np.nonzero(lab > 0)
    if ys.size == 0:
        return []
    ids = lab[ys, xs]

    # compact possibly sparse label ids to 0..n-1
    uniq, inv = np.unique(ids, return_inverse=True)
    inv = inv.ravel()
    n = uniq.size

    areas = np.bincount(inv, minlength=n)
    sum_x = np.bincount(inv, weights=xs, minlength=n)
    sum_y = np.bincount(inv, weights=ys, minlength=n)

    min_x = np.full(n, np.iinfo(np.int64).max, dtype=np.int64)
    min_y = np.full(n, np.iinfo(np.int64).max, dtype=np.int64)
    max_x = np.full(n, -1, dtype=np.int64)
    max_y = np.full(n, -1, dtype=np.int64)
    np.minimum.at(min_x, inv, xs)
    np.minimum.at(min_y, inv, ys)
    np.maximum.at(max_x, inv, xs)
    np.maximum.at(max_y, inv, ys)

    return [
        Blob(
            id=int(uniq[i]),
            min_x=int(min_x[i]), max_x=int(max_x[i]),
            min_y=int(min_y[i]), max_y=int(max_y[i]),
            area=int(areas[i]),
            sum_x=int(round(sum_x[i])), sum_y=int(round(sum_y[i])),
        )
        for i in range(n)
    ]


def filter_blobs(blobs: Iterable[Blob], min_area: int) -> List[Blob]:
    """Keep blobs with area >= min_area (inclusive)."""
    return [b for b in blobs if b.area >= min_area]


def extract_blobs(
    labels: np.ndarray,
    min_area: int = 0,
    shape_hw: Optional[ShapeHW] = None
) -> List[Blob]:
    """measure_blobs() followed by filter_blobs()."""
    return filter_blobs(measure_blobs(labels, shape_hw=shape_hw), min_area)


def blob_drawing(blob: Blob, width: int, height: int, pad: int = BOX_PADDING) -> BlobDrawing:
    """Padded box clamped to the image (no mirroring) plus centroid and label."""
    x0 = max(0, blob.min_x - pad)
    y0 = max(0, blob.min_y - pad)
    x1 = min(width - 1, blob.max_x + pad)
    y1 = min(height - 1, blob.max_y + pad)
    return BlobDrawing(
        blob_id=blob.id,
        box=(x0, y0, x1, y1),
        center=blob.centroid,
        text=blob.label_text,
    )


def blob_drawings(blobs: Sequence[Blob], shape_hw: ShapeHW, pad: int = BOX_PADDING) -> List[BlobDrawing]:
    h, w = shape_hw[:2]
    return [blob_drawing(b, w, h, pad) for b in blobs]


def save_blobs_csv(path: str, blobs: Iterable[Blob]) -> None:
    """
    Write blob statistics to a CSV (flat columns, centroid included).
    """
    header = [f.name for f in fields(Blob)] + ["centroid_x", "centroid_y"]
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=header)
        writer.writeheader()
        count = 0
        for b in blobs:
            row = asdict(b)
            row["centroid_x"], row["centroid_y"] = b.centroid
            writer.writerow(row)
            count += 1
    logger.info("Wrote %d blob rows to %s", count, path)
