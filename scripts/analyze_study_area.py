#!/usr/bin/env python3
"""
Soil breakdown of a study area from USDA Soil Data Access.

Usage:
    python scripts/analyze_study_area.py                       # sample polygon near Lawrence, KS
    python scripts/analyze_study_area.py --geojson area.json   # your own FeatureCollection
    python scripts/analyze_study_area.py --max-results 10 --output results.json
"""

import argparse
import json
import logging
import sys

import requests

from soil_app.services.errors import SoilAnalysisError
from soil_app.services.run_context import ProgressEvent
from soil_app.services.soil_pipeline import AnalysisOptions, run_analysis

# ── SAMPLE STUDY AREA ─────────────────────────────────────────────────────
# Agricultural field near Lawrence, Kansas
SAMPLE_STUDY_AREA = {
    "type": "FeatureCollection",
    "features": [
        {
            "type": "Feature",
            "properties": {},
            "geometry": {
                "type": "Polygon",
                "coordinates": [[
                    [-95.320923, 39.587342],
                    [-95.32088, 39.585573],
                    [-95.312769, 39.580893],
                    [-95.311654, 39.58119],
                    [-95.311589, 39.582034],
                    [-95.311611, 39.584283],
                    [-95.311632, 39.587193],
                    [-95.311868, 39.587408],
                    [-95.314829, 39.587408],
                    [-95.319786, 39.587442],
                    [-95.320923, 39.587342],
                ]],
            },
        }
    ],
}


def print_progress(event: ProgressEvent):
    print(f"  [{event.percentage:3d}%] {event.message}")


def print_report(result):
    print("\n=== FINAL RESULTS ===")
    print(f"Total soil units found: {result.mapunit_count}")
    if not result.units:
        return

    total = result.total_area_acres
    print(f"Total area analyzed: {total:.3f} acres")
    print(f"Study area size: {result.study_area_acres:.3f} acres")
    cov = result.coverage()
    print(f"Coverage: {cov['coverage_percent']:.1f}% of study area")
    if cov["coverage_warning"]:
        print(f"WARNING: intersection total ({total:.3f} acres) differs from the study "
              f"area ({result.study_area_acres:.3f} acres) - overlapping soil polygons "
              "or missing coverage")
    else:
        print("Total area matches study area within acceptable tolerance")
    if result.truncated:
        print(f"NOTE: only {result.mapunits_analyzed} of {result.mapunits_found} map units analysed")

    print("\nSoil units by area:")
    for i, unit in enumerate(result.units, 1):
        s = unit.summary()
        print(f"{i}. {s.get('muname') or 'Unknown'} ({s['mukey']})")
        print(f"   Area: {s['area_acres']:.3f} acres")
        print(f"   Taxonomic Order: {s.get('taxorder') or 'N/A'}")
        print(f"   Drainage Class: {s.get('drainagecl') or 'N/A'}")
        print(f"   Texture: {s.get('texture') or 'N/A'}")
        if s.get("ph1to1h2o_r") is not None:
            print(f"   pH: {s['ph1to1h2o_r']}")
        if s.get("om_r") is not None:
            print(f"   Organic Matter: {s['om_r']}%")
        print(f"   Features: {s['feature_count']} polygons\n")


def main():
    parser = argparse.ArgumentParser(description="Analyse soil map units inside a study area")
    parser.add_argument("--geojson", help="GeoJSON file (FeatureCollection, Feature or Polygon)")
    parser.add_argument("--max-results", type=int, default=100,
                        help="Max map units to analyse (0 = no limit)")
    parser.add_argument("--output", help="Write the result FeatureCollection to this file")
    parser.add_argument("--debug", action="store_true", help="Verbose per-polygon logging")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO if args.debug else logging.WARNING,
                        format="%(levelname)s %(message)s")

    if args.geojson:
        with open(args.geojson, "r", encoding="utf-8") as f:
            study = json.load(f)
    else:
        study = SAMPLE_STUDY_AREA

    print("=" * 50)
    print("US Soil Information Analysis")
    print("=" * 50)

    opts = AnalysisOptions(max_results=args.max_results, debug=args.debug,
                           progress_callback=print_progress)
    try:
        result = run_analysis(study, opts)
    except (SoilAnalysisError, requests.RequestException) as e:
        print(f"Error in soil analysis: {e}")
        sys.exit(1)

    print_report(result)

    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            json.dump(result.to_geojson(), f, indent=2)
        print(f"Results saved to: {args.output}")


if __name__ == "__main__":
    main()
