#!/usr/bin/env python3
"""
Pumpsheet Scenario Harness
===========================
Replays edit scenarios against a running Pumpsheet service's
/api/pump/recalculate endpoint and checks the calculated fields.
Needs no datasheet backend: the recalculation route is stateless.

Usage:
    python3 tests/run_tests.py                              # local service
    python3 tests/run_tests.py --url http://staging:8000    # other target
    python3 tests/run_tests.py --case discharge-sum         # single scenario
    python3 tests/run_tests.py --group suction              # one group
    python3 tests/run_tests.py --verbose                    # show final records
    python3 tests/run_tests.py --output results.json        # save results to file
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from datetime import datetime
from pathlib import Path

import requests

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------
DEFAULT_URL = "http://localhost:8000"
FIXTURES_PATH = Path(__file__).parent / "fixtures.json"
REQUEST_TIMEOUT = 10  # seconds


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def compare_fields(record: dict, expected: dict) -> dict:
    """Expected vs. actual for each listed field. `null` means "must be absent"."""
    mismatches = {}
    for name, want in expected.items():
        got = record.get(name)
        if got != want:
            mismatches[name] = {"expected": want, "actual": got}
    return mismatches


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

def run_scenario(base_url: str, scenario: dict) -> dict:
    """Apply each step in order, carrying the record forward."""
    url = f"{base_url.rstrip('/')}/api/pump/recalculate"
    record = dict(scenario.get("initial", {}))

    start = time.time()
    try:
        for step in scenario["steps"]:
            record[step["field"]] = step["value"]
            resp = requests.post(
                url,
                json={"record": record, "changed_field": step["field"]},
                timeout=REQUEST_TIMEOUT,
            )
            resp.raise_for_status()
            record = resp.json()["record"]
    except requests.RequestException as e:
        return {
            "id": scenario["id"],
            "title": scenario["title"],
            "status": "ERROR",
            "error": str(e),
            "elapsed_s": round(time.time() - start, 2),
        }

    mismatches = compare_fields(record, scenario["expected"])
    return {
        "id": scenario["id"],
        "group": scenario.get("group", ""),
        "title": scenario["title"],
        "status": "FAIL" if mismatches else "PASS",
        "elapsed_s": round(time.time() - start, 2),
        "mismatches": mismatches,
        "record": record,
    }


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

PASS_ICON = "✅"
FAIL_ICON = "❌"
ERROR_ICON = "🔴"


def print_result(result: dict, verbose: bool = False):
    icon = {"PASS": PASS_ICON, "FAIL": FAIL_ICON}.get(result["status"], ERROR_ICON)
    print(f"\n{icon} [{result['id']}] {result['title']}  |  {result.get('elapsed_s', '?')}s")

    if result["status"] == "ERROR":
        print(f"   {ERROR_ICON} ERROR: {result.get('error', '')}")
        return

    for name, diff in result.get("mismatches", {}).items():
        print(f"   ✗ {name}: expected {diff['expected']!r}, got {diff['actual']!r}")

    if verbose:
        calculated = {k: v for k, v in result["record"].items() if isinstance(v, str)}
        print(f"   Record: {json.dumps(calculated, sort_keys=True)}")


def print_summary(results: list[dict]):
    total = len(results)
    passed = sum(1 for r in results if r["status"] == "PASS")

    print("\n" + "=" * 70)
    print("SUMMARY")
    print("=" * 70)
    print(f"  Total:  {total}")
    print(f"  {PASS_ICON} Pass:   {passed}  ({100 * passed // total if total else 0}%)")
    print(f"  {FAIL_ICON} Fail:   {sum(1 for r in results if r['status'] == 'FAIL')}")
    print(f"  {ERROR_ICON} Error:  {sum(1 for r in results if r['status'] == 'ERROR')}")

    by_group: dict[str, list] = {}
    for r in results:
        by_group.setdefault(r.get("group") or "other", []).append(r)

    print("\n  By group:")
    for group, rs in sorted(by_group.items()):
        p = sum(1 for r in rs if r["status"] == "PASS")
        print(f"    {group}: {p}/{len(rs)} passed")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main():
    parser = argparse.ArgumentParser(description="Pumpsheet scenario harness")
    parser.add_argument("--url", default=DEFAULT_URL, help="Base URL of the Pumpsheet API")
    parser.add_argument("--case", help="Run a single scenario by ID")
    parser.add_argument("--group", help="Run all scenarios in a group (e.g. suction)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show calculated fields")
    parser.add_argument("--output", "-o", help="Save results to JSON file")
    parser.add_argument("--fixtures", default=str(FIXTURES_PATH), help="Path to fixtures.json")
    args = parser.parse_args()

    fixtures_path = Path(args.fixtures)
    if not fixtures_path.exists():
        print(f"ERROR: Fixtures file not found: {fixtures_path}", file=sys.stderr)
        sys.exit(1)

    with open(fixtures_path) as f:
        scenarios = json.load(f)["scenarios"]

    if args.case:
        scenarios = [s for s in scenarios if s["id"] == args.case]
    elif args.group:
        scenarios = [s for s in scenarios if s.get("group") == args.group]
    if not scenarios:
        print("ERROR: No matching scenarios", file=sys.stderr)
        sys.exit(1)

    print("Pumpsheet Scenario Harness")
    print(f"Target: {args.url}")
    print(f"Cases:  {len(scenarios)}")
    print(f"Time:   {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("=" * 70)

    results = []
    for scenario in scenarios:
        result = run_scenario(args.url, scenario)
        print_result(result, verbose=args.verbose)
        results.append(result)

    print_summary(results)

    if args.output:
        output_path = Path(args.output)
        with open(output_path, "w") as f:
            json.dump({
                "run_at": datetime.now().isoformat(),
                "target_url": args.url,
                "total": len(results),
                "passed": sum(1 for r in results if r["status"] == "PASS"),
                "results": results,
            }, f, indent=2)
        print(f"\nResults saved to: {output_path}")

    sys.exit(0 if all(r["status"] == "PASS" for r in results) else 1)


if __name__ == "__main__":
    main()
