"""
Probe the /health endpoint of every service.

Exits non-zero when any service is down or degraded.

Usage: python scripts/health_check.py
"""

import requests
import os
import sys
from typing import Dict, List


SERVICES = {
    "Catalog Service": os.getenv("CATALOG_SERVICE_URL", "http://localhost:8002") + "/health",
    "Reservations Service": os.getenv("RESERVATIONS_SERVICE_URL", "http://localhost:8003") + "/health",
    "Moderation Service": os.getenv("MODERATION_SERVICE_URL", "http://localhost:8004") + "/health",
    "Usage Service": os.getenv("USAGE_SERVICE_URL", "http://localhost:8005") + "/health",
}


def _result(name: str, state: str, response=None, error=None) -> Dict:
    return {"name": name, "status": state, "response": response, "error": error}


def check_service(name: str, url: str) -> Dict:
    """
    Check if a service is healthy.

    A service is healthy when /health answers 200 with
    ``{"status": "healthy"}``.
    """
    try:
        response = requests.get(url, timeout=5)
        if response.status_code != 200:
            return _result(name, "UNHEALTHY", error=f"Status code: {response.status_code}")
        data = response.json()
        if data.get("status") != "healthy":
            return _result(name, "UNHEALTHY", response=data, error="Service reports a degraded state")
        return _result(name, "HEALTHY", response=data)
    except requests.exceptions.ConnectionError:
        return _result(name, "OFFLINE", error="Connection refused - service may not be running")
    except requests.exceptions.Timeout:
        return _result(name, "TIMEOUT", error="Request timed out")
    except (requests.exceptions.RequestException, ValueError) as e:
        return _result(name, "ERROR", error=str(e))


def report(results: List[Dict]) -> int:
    """Print one line per service and return the number that are down."""
    width = max(len(r["name"]) for r in results)
    down = 0
    for r in results:
        detail = r["error"] or (r["response"] or {}).get("service", "")
        print(f"  {r['name']:<{width}}  {r['status']:<9}  {detail}")
        if r["status"] != "HEALTHY":
            down += 1
    return down


def main():
    print("Facility reservation services")
    print("-" * 70)

    results = [check_service(name, url) for name, url in SERVICES.items()]
    down = report(results)

    print("-" * 70)
    print(f"{len(results) - down} of {len(results)} services healthy")
    if down:
        print("Start a service with: python services/<name>_service.py")
        print("Point the check elsewhere with <NAME>_SERVICE_URL, e.g. USAGE_SERVICE_URL")
        sys.exit(1)
    sys.exit(0)


if __name__ == "__main__":
    main()
