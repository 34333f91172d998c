"""HTTP smoke probes against a locally started application."""

from __future__ import annotations

import json
import logging
import re
import socket
import time
from collections.abc import Iterable
from dataclasses import asdict, dataclass
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from repo_agent.schemas import Endpoint

logger = logging.getLogger(__name__)

DEFAULT_PROBE_PATHS: tuple[str, ...] = ("/", "/health", "/api", "/api/health")
BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})

_PATH_PARAM = re.compile(r"\{[^/{}]+\}|:[A-Za-z_]\w*")


@dataclass(frozen=True, slots=True)
class ProbeResult:
    """Outcome of one request; ``reachable`` means any status below 500."""

    method: str
    path: str
    status: int | None = None
    reachable: bool = False
    error: str = ""
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def substitute_path_params(path: str, value: str = "1") -> str:
    """Replace ``{id}`` and ``:id`` style parameters with a concrete value."""
    return _PATH_PARAM.sub(value, path)


def probe_plan(endpoints: Iterable[Endpoint] = ()) -> list[tuple[str, str]]:
    """Return (method, path) pairs: the defaults, then declared endpoints, deduplicated."""
    plan: list[tuple[str, str]] = []
    seen: set[tuple[str, str]] = set()
    candidates = [("GET", path) for path in DEFAULT_PROBE_PATHS]
    candidates += [(ep.method, ep.path) for ep in endpoints]
    for method, path in candidates:
        normalized_path = substitute_path_params(path.strip() or "/")
        if not normalized_path.startswith("/"):
            normalized_path = "/" + normalized_path
        key = ((method or "GET").strip().upper(), normalized_path)
        if key not in seen:
            seen.add(key)
            plan.append(key)
    return plan


def wait_for_port(host: str, port: int, timeout: float) -> bool:
    """Poll until something accepts TCP connections on *port*."""
    deadline = time.monotonic() + max(0.0, timeout)
    while True:
        try:
            with socket.create_connection((host, port), timeout=0.5):
                return True
        except OSError:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.1)


def probe(base_url: str, method: str, path: str, *, timeout: float = 10.0) -> ProbeResult:
    """Send one request; body-carrying methods send an empty JSON object."""
    method = method.upper()
    data = json.dumps({}).encode("utf-8") if method in BODY_METHODS else None
    headers = {"User-Agent": "repo-agent/1.0", "Accept": "*/*"}
    if data is not None:
        headers["Content-Type"] = "application/json"
    request_obj = Request(base_url.rstrip("/") + path, data=data, method=method, headers=headers)

    started = time.monotonic()
    try:
        with urlopen(request_obj, timeout=timeout) as response:
            _ = response.read()
            status = int(response.status)
    except HTTPError as exc:
        status = int(exc.code)
    except URLError as exc:
        reason = str(getattr(exc, "reason", exc) or "").strip()
        return ProbeResult(
            method=method,
            path=path,
            error=f"network error: {reason or exc}",
            duration_seconds=time.monotonic() - started,
        )
    except (OSError, ValueError) as exc:
        return ProbeResult(
            method=method,
            path=path,
            error=f"request failed: {exc}",
            duration_seconds=time.monotonic() - started,
        )

    return ProbeResult(
        method=method,
        path=path,
        status=status,
        reachable=status < 500,
        duration_seconds=time.monotonic() - started,
    )


def probe_all(
    base_url: str,
    plan: Iterable[tuple[str, str]],
    *,
    timeout: float = 10.0,
) -> list[ProbeResult]:
    results = []
    for method, path in plan:
        result = probe(base_url, method, path, timeout=timeout)
        logger.debug("%s %s -> %s", method, path, result.status or result.error)
        results.append(result)
    return results
