import os
import sys

import requests


def get(endpoint: str):
    url = f"{BASE_URL}{endpoint}"
    try:
        res = requests.get(url, timeout=10)
    except requests.RequestException as exc:
        print(f"FAIL {endpoint}: request error {exc}")
        return None
    if res.status_code != 200:
        print(f"FAIL {endpoint}: HTTP {res.status_code}")
        return None
    return res.json()


def check_health() -> bool:
    body = get("/health")
    if body is None:
        return False
    if body.get("status") != "ok":
        print(f"FAIL /health: status={body.get('status')}")
        return False
    print("OK   /health")
    return True


def check_jobs() -> bool:
    body = get("/jobs/status")
    if body is None:
        return False
    total = body.get("global", {}).get("total", {})
    stuck = body.get("stuck", 0)
    label = "WARN" if stuck or total.get("failed") else "OK  "
    print(
        f"{label} /jobs/status: pending={total.get('pending')} failed={total.get('failed')} stuck={stuck}"
    )
    return True


BASE_URL = os.getenv("FIELDSYNC_API_BASE_URL", "http://127.0.0.1:8000/api")

ok = True
ok = check_health() and ok
ok = check_jobs() and ok

sys.exit(0 if ok else 1)
