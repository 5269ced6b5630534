from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from tangramtrack.api.model_io import load_tangram_models
from tangramtrack.cli.run_labels import run_labels
from tangramtrack.config import load_pipeline_config


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="tangramtrack")
    parser.add_argument(
        "--log-level",
        type=str,
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity.",
    )
    sub = parser.add_subparsers(dest="cmd", required=True)

    vm = sub.add_parser("validate-models", help="Load a tangram models JSON and print a summary.")
    vm.add_argument("models", type=Path)

    rl = sub.add_parser(
        "run-labels",
        help="Track label polygons of a test directory (images/ + labels/) frame by frame.",
    )
    rl.add_argument("--models", type=Path, required=True)
    rl.add_argument("--test-dir", type=Path, required=True)
    rl.add_argument("--images", type=str, default="", help="Comma-separated image names (default: all labels, sorted).")
    rl.add_argument("--config", type=Path, default=None, help="Pipeline config JSON (tangramtrack.config.v0).")
    rl.add_argument("--out", type=Path, default=None, help="Write one JSON line per frame.")
    rl.add_argument("--no-locking", action="store_true", help="Disable homography locking.")

    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s %(name)s: %(message)s")

    if args.cmd == "validate-models":
        models = load_tangram_models(args.models)
        for name, m in sorted(models.items()):
            print(f"{name}: type={m.type} vertices={m.vertices.shape[0]} color_bgr={m.color_bgr}")
        return 0

    if args.cmd == "run-labels":
        config = load_pipeline_config(args.config) if args.config is not None else None
        names = [s.strip() for s in args.images.split(",") if s.strip()]
        records = run_labels(
            models_path=args.models,
            test_dir=args.test_dir,
            image_names=names or None,
            config=config,
            locking=not args.no_locking,
            out_jsonl=args.out,
        )
        if args.out is not None:
            print(f"Wrote {args.out}")
        else:
            for rec in records:
                print(json.dumps(rec, sort_keys=True))
        return 0

    raise AssertionError(f"Unhandled cmd: {args.cmd}")


if __name__ == "__main__":
    raise SystemExit(main())
