from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from .config import AnalysisConfig
from .heuristic import HeuristicEngine
from .io import load_model, load_reference_cdf


def _existing_path(value: str) -> Path:
    path = Path(value)
    if not path.exists():
        raise argparse.ArgumentTypeError(f"File not found: {value}")
    return path


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="blockcdf", add_help=True)
    parser.add_argument("--config", required=True, type=_existing_path, help="Path to analysis config.yaml")
    parser.add_argument(
        "--model",
        required=True,
        help="Model factory as package.module:callable or path/to/file.py:callable",
    )
    parser.add_argument(
        "--reference",
        type=_existing_path,
        default=None,
        help="Reference CDF (json|yaml) to compare the estimate against",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Write report JSON to this path (default: stdout)",
    )
    parser.add_argument("--verbose", action="store_true", help="Log every analysis decision")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        config = AnalysisConfig.from_yaml(args.config)
        if args.verbose:
            config = config.model_copy(update={"verbose": True})
        model = load_model(args.model)
        reference = load_reference_cdf(args.reference) if args.reference is not None else None
        report = HeuristicEngine(config).run(
            model,
            reference=reference,
            paths={
                "config": str(args.config),
                "model": args.model,
                "reference": str(args.reference) if args.reference is not None else None,
            },
        )
    except Exception as exc:  # noqa: BLE001
        print(f"error: {exc}", file=sys.stderr)
        return 2

    payload = report.model_dump(mode="json")
    text = json.dumps(payload, indent=2, sort_keys=True)
    if args.output is None:
        print(text)
        return 0

    args.output.parent.mkdir(parents=True, exist_ok=True)
    args.output.write_text(text + "\n", encoding="utf-8")
    return 0
