# indyvision/core/params.py
# Per-operation tunables with change notification - no GUI dependencies
# A presentation shell binds its controls to these objects via subscribe()

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

# --------------------- Defaults (edit freely) ---------------------
DEFAULTS: Dict[str, Dict[str, Union[int, float, bool, str]]] = {
    "Threshold": {
        "threshold_min": 128,
        "threshold_max": 255,    # 255 keeps pure white in range
    },
    "Morphology": {
        "iterations": 1,
        "kernel_size": 3,        # odd; each (k-1)/2 adds one pass
        "mode": "Erode",         # "Erode" | "Dilate" | "Open" | "Close"
    },
    "Edge": {
        "method": "Sobel",       # "Sobel" | "Prewitt" | "Laplacian"
        "strength": 25,          # 0 disables post-binarize
    },
    "AdaptiveThreshold": {
        "window_size": 35,
        "offset": 10,
        "mode": "Bright",        # "Bright" | "Dark"
    },
    "Blob": {
        "threshold_min": 50,
        "threshold_max": 200,
        "min_area": 100,         # px; smaller components are ignored
        "draw_box": True,
    },
    "GeometricMatch": {
        "smoothness": 50.0,      # 0..100, higher ignores fine edges
        "min_score": 60.0,       # 0..100 acceptance
    },
    "Roi": {},
}
# ------------------------------------------------------------------

ChangeCallback = Callable[["ParameterSet", str], None]

_MISSING = object()


class OperationKind(str, Enum):
    THRESHOLD = "Threshold"
    MORPHOLOGY = "Morphology"
    EDGE = "Edge"
    ADAPTIVE_THRESHOLD = "AdaptiveThreshold"
    BLOB = "Blob"
    GEOMETRIC_MATCH = "GeometricMatch"
    ROI = "Roi"
    GRAY = "Gray"

    @classmethod
    def parse(cls, name: Union[str, "OperationKind", None]) -> Optional["OperationKind"]:
        """Resolve a display/CLI name to a kind. None for empty or unknown names.

        Matching ignores case, spaces, dashes and underscores, so
        "adaptive_threshold" and "Adaptive Threshold" both resolve.
        """
        if isinstance(name, cls):
            return name
        if not name:
            return None
        key = _normalize(str(name))
        for kind in cls:
            if _normalize(kind.value) == key:
                return kind
        return None


def _normalize(name: str) -> str:
    return "".join(ch for ch in name.lower() if ch not in " _-")


# --------------------- Field descriptors --------------------------

class Tunable:
    """Validated, observable field of a ParameterSet.

    Writes that leave the value unchanged are dropped silently; any other
    write stores the value and notifies the owner's subscribers.
    """

    def __init__(self, convert: Callable[[Any], Any], doc: str = ""):
        self.convert = convert
        self.__doc__ = doc
        self.name = ""

    def __set_name__(self, owner, name):
        self.name = name

    def __get__(self, obj, objtype=None):
        if obj is None:
            return self
        return obj.__dict__[self.name]

    def __set__(self, obj, value):
        value = self.convert(value)
        old = obj.__dict__.get(self.name, _MISSING)
        if old is not _MISSING and old == value:
            return
        obj.__dict__[self.name] = value
        if old is not _MISSING:
            obj._notify(self.name)


def _ranged_int(lo: Optional[int] = None, hi: Optional[int] = None) -> Callable[[Any], int]:
    def convert(value: Any) -> int:
        v = int(value)
        if lo is not None and v < lo:
            raise ValueError(f"value {v} is below minimum {lo}")
        if hi is not None and v > hi:
            raise ValueError(f"value {v} is above maximum {hi}")
        return v
    return convert


def _percent(value: Any) -> float:
    v = float(value)
    if not 0.0 <= v <= 100.0:
        raise ValueError(f"value {v} must be within 0..100")
    return v


def _choice(*options: str) -> Callable[[Any], str]:
    def convert(value: Any) -> str:
        v = str(value)
        if v not in options:
            raise ValueError(f"{v!r} is not one of {', '.join(options)}")
        return v
    return convert


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


_byte = _ranged_int(0, 255)

MORPH_MODES = ("Erode", "Dilate", "Open", "Close")
EDGE_METHODS = ("Sobel", "Prewitt", "Laplacian")
ADAPTIVE_MODES = ("Bright", "Dark")


# --------------------- Parameter sets -----------------------------

class ParameterSet:
    """Base for every operation's tunables.

    Instances are fully populated from DEFAULTS on construction. Observers
    registered with subscribe() receive (params, field_name) for every
    effective change.
    """

    kind: OperationKind = OperationKind.ROI

    def __init__(self, **overrides: Any):
        self._subscribers: List[Tuple[Optional[str], ChangeCallback]] = []
        values = dict(DEFAULTS.get(self.kind.value, {}))
        unknown = set(overrides) - set(self.fields())
        if unknown:
            raise ValueError(f"{self.kind.value} has no field(s): {', '.join(sorted(unknown))}")
        values.update(overrides)
        for name in self.fields():
            setattr(self, name, values[name])

    @classmethod
    def fields(cls) -> Tuple[str, ...]:
        names: List[str] = []
        for klass in reversed(cls.__mro__):
            for name, attr in vars(klass).items():
                if isinstance(attr, Tunable) and name not in names:
                    names.append(name)
        return tuple(names)

    def subscribe(self, callback: ChangeCallback, field: Optional[str] = None) -> ChangeCallback:
        """Register callback for all fields, or only `field` when given."""
        if field is not None and field not in self.fields():
            raise ValueError(f"{self.kind.value} has no field {field!r}")
        self._subscribers.append((field, callback))
        return callback

    def unsubscribe(self, callback: ChangeCallback) -> None:
        self._subscribers = [(f, cb) for f, cb in self._subscribers if cb is not callback]

    def _notify(self, name: str) -> None:
        logger.debug("%s.%s -> %r", self.kind.value, name, self.__dict__[name])
        for field, callback in list(self._subscribers):
            if field is None or field == name:
                callback(self, name)

    def update(self, **values: Any) -> List[str]:
        """Set several fields; returns the names that actually changed."""
        changed = []
        for name, value in values.items():
            if name not in self.fields():
                raise ValueError(f"{self.kind.value} has no field {name!r}")
            before = getattr(self, name)
            setattr(self, name, value)
            if getattr(self, name) != before:
                changed.append(name)
        return changed

    def as_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.fields()}

    def __repr__(self) -> str:
        body = ", ".join(f"{k}={v!r}" for k, v in self.as_dict().items())
        return f"{type(self).__name__}({body})"


class ThresholdParams(ParameterSet):
    kind = OperationKind.THRESHOLD
    threshold_min = Tunable(_byte, "Lower bound of the kept gray range.")
    threshold_max = Tunable(_byte, "Upper bound of the kept gray range.")


class MorphologyParams(ParameterSet):
    kind = OperationKind.MORPHOLOGY
    iterations = Tunable(_ranged_int(0))
    kernel_size = Tunable(_ranged_int(1))
    mode = Tunable(_choice(*MORPH_MODES))

    @property
    def total_iterations(self) -> int:
        """Passes actually run: iterations x max(1, (kernel_size - 1) // 2)."""
        return self.iterations * max(1, (self.kernel_size - 1) // 2)


class EdgeParams(ParameterSet):
    kind = OperationKind.EDGE
    method = Tunable(_choice(*EDGE_METHODS))
    strength = Tunable(_byte, "Post-binarize cutoff on edge magnitude; 0 keeps raw magnitude.")


class AdaptiveThresholdParams(ParameterSet):
    kind = OperationKind.ADAPTIVE_THRESHOLD
    window_size = Tunable(_ranged_int(1))
    offset = Tunable(int)
    mode = Tunable(_choice(*ADAPTIVE_MODES))


class BlobParams(ParameterSet):
    kind = OperationKind.BLOB
    threshold_min = Tunable(_byte)
    threshold_max = Tunable(_byte)
    min_area = Tunable(_ranged_int(0))
    draw_box = Tunable(_flag)


class GeometricMatchParams(ParameterSet):
    kind = OperationKind.GEOMETRIC_MATCH
    smoothness = Tunable(_percent)
    min_score = Tunable(_percent)


class RoiParams(ParameterSet):
    kind = OperationKind.ROI


PARAMETER_TYPES: Dict[OperationKind, type] = {
    OperationKind.THRESHOLD: ThresholdParams,
    OperationKind.MORPHOLOGY: MorphologyParams,
    OperationKind.EDGE: EdgeParams,
    OperationKind.ADAPTIVE_THRESHOLD: AdaptiveThresholdParams,
    OperationKind.BLOB: BlobParams,
    OperationKind.GEOMETRIC_MATCH: GeometricMatchParams,
    OperationKind.ROI: RoiParams,
}


def select_operation(name: Union[str, OperationKind, None]) -> Optional[ParameterSet]:
    """Fresh default-initialized parameters for `name`, or None when the
    name is unknown or needs no parameters."""
    kind = OperationKind.parse(name)
    cls = PARAMETER_TYPES.get(kind) if kind is not None else None
    if cls is None:
        logger.debug("No parameters for operation %r", name)
        return None
    return cls()


def parse_assignments(items: List[str]) -> Dict[str, str]:
    """Turn ["min_area=20", "draw_box=false"] into a dict for ParameterSet.update()."""
    out: Dict[str, str] = {}
    for item in items:
        if "=" not in item:
            raise ValueError(f"expected field=value, got {item!r}")
        key, value = item.split("=", 1)
        out[key.strip()] = value.strip()
    return out
