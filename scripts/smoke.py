#!/usr/bin/env python3
from __future__ import annotations

import json
import os
import sys
import time

from urllib.request import Request, urlopen
from urllib.error import URLError

SAMPLE_SESSION = {
    "intent": "A warm, unhurried identity for a neighbourhood tea shop",
    "puzzle_type": "CLARIFY",
    "fragments": [
        {"id": "smoke-1", "title": "Morning ritual", "content": "The first pour of the day is a slow ritual."},
        {"id": "smoke-2", "title": "Shelf", "content": "Labels must stay legible on a crowded shelf."},
    ],
}


def main() -> int:
    base_url = os.getenv("PUZZLEFORGE_API_URL", "http://localhost:8000").rstrip("/")
    headers = {"Content-Type": "application/json"}
    api_key = os.getenv("PUZZLEFORGE_API_KEY")
    if api_key:
        headers["X-API-Key"] = api_key
    try:
        with urlopen(f"{base_url}/healthz", timeout=5) as r:
            print("/healthz:", r.read().decode("utf-8"))
        # Give the service a moment to finish boot
        time.sleep(0.5)
        with urlopen(f"{base_url}/healthz/ready", timeout=5) as r2:
            print("/healthz/ready:", r2.read().decode("utf-8"))
        request = Request(
            f"{base_url}/sessions",
            data=json.dumps(SAMPLE_SESSION).encode("utf-8"),
            headers=headers,
            method="POST",
        )
        with urlopen(request, timeout=60) as r3:
            session = json.loads(r3.read().decode("utf-8"))
        counts = {mode: len(pool) for mode, pool in session["pieces"].items()}
        print("/sessions:", session["status"], session["focal_question"], counts)
    except (URLError, KeyError, ValueError) as exc:
        print(f"Smoke test failed: {exc}", file=sys.stderr)
        return 1
    if session["status"] == "failed":
        print("Smoke test failed: every quadrant failed", file=sys.stderr)
        return 1
    print("Smoke test passed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
