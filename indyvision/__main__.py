# indyvision/__main__.py
# Entry point for running IndyVision as a module: python -m indyvision
"""
IndyVision - interactive image inspection core

Usage:
    python -m indyvision ops
    python -m indyvision apply IMAGE OPERATION [--set field=value ...]
                         [--out PATH] [--csv PATH] [--model PATH]
    python -m indyvision crop IMAGE X Y W H --out PATH
"""
from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from .core.blobs import save_blobs_csv
from .core.errors import BackendFailure
from .core.params import (
    DEFAULTS,
    GeometricMatchParams,
    OperationKind,
    parse_assignments,
    select_operation,
)
from .core.pipeline import Pipeline

logger = logging.getLogger("indyvision")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="indyvision", description=__doc__,
                                     formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("ops", help="list operations and their default parameters")

    ap = sub.add_parser("apply", help="run one operation on an image")
    ap.add_argument("image")
    ap.add_argument("operation")
    ap.add_argument("--set", dest="assignments", action="append", default=[],
                    metavar="FIELD=VALUE", help="override a parameter (repeatable)")
    ap.add_argument("--out", help="write the result image here")
    ap.add_argument("--csv", help="write blob statistics here (Blob only)")
    ap.add_argument("--model", help="model image for GeometricMatch")

    cp = sub.add_parser("crop", help="export a region of an image")
    cp.add_argument("image")
    cp.add_argument("x", type=int)
    cp.add_argument("y", type=int)
    cp.add_argument("w", type=int)
    cp.add_argument("h", type=int)
    cp.add_argument("--out", required=True)
    return parser


def _list_ops() -> int:
    for kind in OperationKind:
        defaults = DEFAULTS.get(kind.value)
        if defaults is None:
            print(f"{kind.value}: (no parameters)")
            continue
        body = ", ".join(f"{k}={v}" for k, v in defaults.items()) or "(no parameters)"
        print(f"{kind.value}: {body}")
    return 0


def _apply(args: argparse.Namespace) -> int:
    params = select_operation(args.operation)
    known = OperationKind.parse(args.operation) is not None
    if args.assignments:
        if params is None or not params.fields():
            what = "takes no parameters" if known else "is not a known operation"
            raise ValueError(f"--set given but {args.operation!r} {what}")
        params.update(**parse_assignments(args.assignments))
    if not known:
        logger.warning("Unknown operation %r; image is passed through unchanged", args.operation)

    pipe = Pipeline()
    pipe.load_image(args.image)
    if args.model:
        pipe.load_model(args.model)
        model_params = params if isinstance(params, GeometricMatchParams) else GeometricMatchParams()
        pipe.train_model(model_params)

    message = pipe.apply(args.operation, params)
    print(message)

    if args.out:
        pipe.backend.to_pil(pipe.get_processed()).save(args.out)
        logger.info("Wrote %s", args.out)
    if args.csv:
        save_blobs_csv(args.csv, pipe.blobs)
    return 1 if pipe.last_failed else 0


def _crop(args: argparse.Namespace) -> int:
    pipe = Pipeline()
    pipe.load_image(args.image)
    if not pipe.save_region(args.out, args.x, args.y, args.w, args.h):
        print("Region is empty or outside the image.", file=sys.stderr)
        return 1
    print(f"Saved {args.out}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(levelname)s %(name)s: %(message)s")

    try:
        if args.command == "ops":
            return _list_ops()
        if args.command == "apply":
            return _apply(args)
        if args.command == "crop":
            return _crop(args)
    except BackendFailure as e:
        print(f"Backend error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Invalid parameter: {e}", file=sys.stderr)
        return 2

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
