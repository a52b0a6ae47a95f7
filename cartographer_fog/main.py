"""Command-line fog calculation for a set of revealed areas."""

from __future__ import annotations

import argparse
from dataclasses import asdict
import json
import logging
from pathlib import Path
from typing import Any, List, Optional, Sequence

from .fog_calculation import FogCalculationOptions, FogCalculator, FogResult
from .geometry.operations import buffer_point


def _setup_logging(verbose: bool = False) -> None:
    if not logging.getLogger().hasHandlers():
        logging.basicConfig(
            level=logging.DEBUG if verbose else logging.INFO,
            format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        )


def _build_parser() -> argparse.ArgumentParser:
    """Return the CLI argument parser for the fog calculator."""

    parser = argparse.ArgumentParser(
        description=(
            "Compute the fog overlay (unexplored area) for a viewport from"
            " GeoJSON revealed areas."
        )
    )
    parser.add_argument(
        "--areas",
        type=Path,
        help="GeoJSON Feature, FeatureCollection or list of Features",
    )
    parser.add_argument(
        "--points",
        type=Path,
        help="JSON list of [lon, lat] GPS points to buffer into revealed areas",
    )
    parser.add_argument(
        "--radius",
        type=float,
        default=100.0,
        help="Buffer radius in metres for --points (default: 100)",
    )
    parser.add_argument(
        "--bbox",
        type=float,
        nargs=4,
        metavar=("MINLON", "MINLAT", "MAXLON", "MAXLAT"),
        help="Viewport bounds; omit for world fog",
    )
    parser.add_argument("--zoom", type=float, help="Map zoom level for level of detail")
    parser.add_argument("--mode", choices=("fast", "accurate"), default="accurate")
    parser.add_argument(
        "--fallback", choices=("viewport", "world", "none"), default="viewport"
    )
    parser.add_argument("--output", type=Path, help="Write JSON here instead of stdout")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def _load_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def _buffered_points(points: Sequence[Any], radius_m: float) -> List[dict]:
    areas: List[dict] = []
    for index, point in enumerate(points):
        outcome = buffer_point(point, radius_m, "meters")
        if outcome.result is None:
            logging.warning("Skipping point %d: %s", index, "; ".join(outcome.errors))
            continue
        areas.append(outcome.result.to_geojson())
    return areas


def _as_feature_list(payload: Any) -> List[Any]:
    if isinstance(payload, dict) and payload.get("type") == "FeatureCollection":
        return list(payload.get("features") or [])
    if isinstance(payload, dict):
        return [payload]
    return list(payload or [])


def _render(result: FogResult) -> str:
    document = {
        "fog": result.fog_geojson,
        "calculation_time_ms": result.calculation_time_ms,
        "metrics": asdict(result.metrics),
        "errors": result.errors,
        "warnings": result.warnings,
    }
    return json.dumps(document, indent=2)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI entry point used via ``python -m cartographer_fog``."""

    parser = _build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    areas: List[Any] = []
    try:
        if args.areas is not None:
            areas.extend(_as_feature_list(_load_json(args.areas)))
        if args.points is not None:
            areas.extend(_buffered_points(_load_json(args.points), args.radius))
    except (OSError, ValueError) as exc:
        logging.error("Failed to load input: %s", exc)
        return 1

    options = FogCalculationOptions(
        viewport_bounds=tuple(args.bbox) if args.bbox else None,
        use_viewport_optimization=args.bbox is not None,
        performance_mode=args.mode,
        fallback_strategy=args.fallback,
        zoom_level=args.zoom,
    )
    result = FogCalculator().calculate(areas, options)
    logging.info(
        "Fog computed by %s tier in %.1f ms (%d feature(s), %s)",
        result.metrics.tier,
        result.calculation_time_ms,
        len(result.features),
        result.metrics.performance_level,
    )
    for message in result.errors:
        logging.warning("%s", message)

    rendered = _render(result)
    if args.output is not None:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(rendered + "\n", encoding="utf-8")
        logging.info("Fog written to %s", args.output)
    else:
        print(rendered)
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
