#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
import uuid
from typing import Any
from urllib import error, request


class NoRedirect(request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):  # type: ignore[override]
        return None


def call(
    base_url: str,
    method: str,
    path: str,
    payload: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    follow_redirects: bool = True,
) -> tuple[int, dict[str, Any] | str, dict[str, str]]:
    body = None
    req_headers = {"Accept": "application/json", **(headers or {})}
    if payload is not None:
        body = json.dumps(payload).encode("utf-8")
        req_headers["Content-Type"] = "application/json"

    req = request.Request(f"{base_url.rstrip('/')}{path}", data=body, headers=req_headers, method=method)
    opener = request.build_opener() if follow_redirects else request.build_opener(NoRedirect)
    try:
        with opener.open(req, timeout=15) as resp:
            raw = resp.read().decode("utf-8")
            parsed = json.loads(raw) if raw and raw.startswith(("{", "[")) else raw
            return resp.status, parsed, dict(resp.headers)
    except error.HTTPError as exc:
        raw = exc.read().decode("utf-8")
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = raw
        return exc.code, parsed, dict(exc.headers or {})


def check(label: str, ok: bool, detail: Any = "") -> bool:
    print(f"[{'PASS' if ok else 'FAIL'}] {label}" + (f" -> {detail}" if not ok and detail != "" else ""))
    return ok


def main() -> int:
    parser = argparse.ArgumentParser(description="Share-link smoke test against a running server")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--email", required=True)
    parser.add_argument("--password", required=True)
    args = parser.parse_args()
    base = args.base_url

    status, body, _ = call(base, "GET", "/health")
    if not check("health", status == 200, body):
        return 1

    status, body, _ = call(base, "POST", "/api/auth/login", {"email": args.email, "password": args.password})
    if not check("owner login", status == 200 and isinstance(body, dict) and "token" in body, body):
        return 1
    owner = {"x-session-token": body["token"]}

    slug = f"smoke-{uuid.uuid4().hex[:8]}"
    status, view, _ = call(
        base, "POST", "/api/views", {"slug": slug, "name": "Smoke", "visibility": "unlisted"}, headers=owner
    )
    if not check("create unlisted view", status == 201 and isinstance(view, dict), view):
        return 1

    failures = 0
    try:
        status, body, _ = call(base, "POST", "/api/share/generate", {"view_id": view["id"], "name": "smoke"}, owner)
        if not check("generate share token", status == 201 and isinstance(body, dict), body):
            return 1
        token = body["token"]

        status, body, _ = call(base, "GET", f"/api/view/{slug}/access")
        failures += not check("anonymous access is 404", status == 404, body)

        status, body, _ = call(base, "GET", f"/api/view/{slug}/access", headers={"x-share-token": token})
        failures += not check("share token opens view", status == 200, body)

        status, _, headers = call(base, "GET", f"/s/{token}", follow_redirects=False)
        location = headers.get("location") or headers.get("Location") or ""
        failures += not check("share link redirects", status == 302 and location.endswith(f"/{slug}"), status)

        status, body, _ = call(base, "GET", "/s/not-a-real-token", follow_redirects=False)
        failures += not check("unknown share link is 404", status == 404, body)
    finally:
        status, body, _ = call(base, "DELETE", f"/api/views/{view['id']}", headers=owner)
        failures += not check("delete view", status == 200, body)

    print("share smoke " + ("passed" if failures == 0 else f"failed ({failures})"))
    return 0 if failures == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
