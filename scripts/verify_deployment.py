#!/usr/bin/env python3
"""Deployment smoke test: service readiness and HubSpot connectivity.

Usage:
    python scripts/verify_deployment.py --base-url https://sync.example.com

Exit code 0 if all checks pass, 1 if any fail.
"""

import argparse
import sys
from typing import Tuple

import httpx

TIMEOUT = 15.0


def _get_json(url: str) -> Tuple[httpx.Response | None, str]:
    try:
        return httpx.get(url, timeout=TIMEOUT, follow_redirects=True), ""
    except httpx.TimeoutException:
        return None, "Request timed out"
    except httpx.ConnectError as exc:
        return None, f"Connection failed: {exc}"
    except httpx.HTTPError as exc:
        return None, f"HTTP error: {exc}"


def check_ready(base_url: str) -> Tuple[bool, str]:
    """/health/ready returns 200 with status=ready."""
    response, error = _get_json(base_url.rstrip("/") + "/health/ready")
    if response is None:
        return False, error
    try:
        data = response.json()
    except ValueError:
        return False, f"HTTP {response.status_code}, response is not valid JSON"

    if response.status_code == 200 and data.get("status") == "ready":
        token = data.get("checks", {}).get("hubspot_token", "unknown")
        return True, f"Database ok, HubSpot token {token}"
    failed = [
        name for name, value in data.get("checks", {}).items()
        if value == "error"
    ]
    return False, f"Degraded: {', '.join(failed) or data.get('status', 'unknown')}"


def check_hubspot(base_url: str) -> Tuple[bool, str]:
    """/api/v1/hubspot/test-connection returns success=true."""
    response, error = _get_json(base_url.rstrip("/") + "/api/v1/hubspot/test-connection")
    if response is None:
        return False, error
    try:
        data = response.json()
    except ValueError:
        return False, f"HTTP {response.status_code}, response is not valid JSON"

    if response.status_code == 200 and data.get("success"):
        return True, f"Authenticated, {data.get('contactsCount', 0)} contact(s) visible"
    return False, f"HTTP {response.status_code}: {data.get('error', 'unknown error')}"


def print_results(results: list) -> None:
    """Print a formatted table of check results."""
    separator = "-" * 70
    print()
    print(separator)
    print(f"{'CHECK':<25} {'STATUS':<10} {'DETAIL'}")
    print(separator)
    for name, passed, detail in results:
        print(f"{name:<25} {'PASS' if passed else 'FAIL':<10} {detail}")
    print(separator)
    print()


def main() -> None:
    parser = argparse.ArgumentParser(description="Verify an enrollment-crm-sync deployment")
    parser.add_argument("--base-url", required=True, help="Base URL of the deployed service")
    parser.add_argument(
        "--skip-hubspot",
        action="store_true",
        help="Skip the HubSpot connection check (e.g. before OAuth is completed)",
    )
    args = parser.parse_args()

    results = [("Readiness", *check_ready(args.base_url))]
    if not args.skip_hubspot:
        results.append(("HubSpot connection", *check_hubspot(args.base_url)))

    print_results(results)

    all_passed = all(passed for _, passed, _ in results)
    print("All checks passed." if all_passed else "Some checks FAILED.")
    sys.exit(0 if all_passed else 1)


if __name__ == "__main__":
    main()
