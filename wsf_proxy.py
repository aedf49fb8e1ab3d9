#!/usr/bin/env python3
# WSF schedule proxy: known IDs + fallback scan + direction support.

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
import datetime
from dataclasses import dataclass, field
import json
import logging
import os
import re
import threading
import time
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple, TypedDict
from zoneinfo import ZoneInfo

from dotenv import load_dotenv
from flask import Flask, make_response, request, Response
import requests

load_dotenv()

log = logging.getLogger("wsf_proxy")
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


WSF_BASE = os.getenv("WSF_BASE_URL", "http://www.wsdot.wa.gov/Ferries/API/Schedule/rest").rstrip("/")
WSDOT_KEY = os.getenv("WSDOT_KEY")

WSF_CONNECT_TIMEOUT_SEC = env_float("WSF_CONNECT_TIMEOUT_SEC", 3.0)
WSF_READ_TIMEOUT_SEC = env_float("WSF_READ_TIMEOUT_SEC", 6.0)
WSF_TOTAL_TIMEOUT_SEC = env_float("WSF_TOTAL_TIMEOUT_SEC", 6.0)
WSF_MAX_WORKERS = max(1, env_int("WSF_MAX_WORKERS", 32))

WSF_SCAN_MAX_ID = max(1, env_int("WSF_SCAN_MAX_ID", 30))
WSF_SCAN_BATCH_SIZE = max(1, env_int("WSF_SCAN_BATCH_SIZE", 6))

CACHE_BUCKET_MS = max(1, env_int("CACHE_BUCKET_MS", 60000))
CACHE_TTL_SEC = max(1, env_int("CACHE_TTL_SEC", 60))
MAX_CACHE = env_int("MAX_CACHE", 2000)

ENABLE_HSTS = env_bool("ENABLE_HSTS", False)
HSTS_MAX_AGE_SEC = env_int("HSTS_MAX_AGE_SEC", 15552000)

APP_HOST = os.getenv("APP_HOST", "127.0.0.1")
APP_PORT = env_int("APP_PORT", 5010)

PACIFIC = ZoneInfo("America/Los_Angeles")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET,OPTIONS",
    "Access-Control-Allow-Headers": "*",
    "Access-Control-Max-Age": "86400",
}

# Upstream container fields searched for TerminalCombos, in order.
COMBO_CONTAINER_FIELDS = ("Results", "Data", "Payload", "Schedule", "ScheduleData")
MAX_SEARCH_DEPTH = 8

WSDOT_DATE_RE = re.compile(r"/Date\((\d+)([+-]\d{4})?\)/")
EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)

JsonDict = Dict[str, Any]


@dataclass(frozen=True)
class RouteDefinition:
    key: str
    dep: str
    arr: str
    ids: Tuple[int, ...]


ROUTES: Mapping[str, RouteDefinition] = MappingProxyType(
    {
        route.key: route
        for route in (
            RouteDefinition("seattle-bainbridge", "Seattle", "Bainbridge Island", (5,)),
            RouteDefinition("seattle-bremerton", "Seattle", "Bremerton", (3, 2, 6)),
            RouteDefinition("edmonds-kingston", "Edmonds", "Kingston", (13, 12)),
            RouteDefinition("mukilteo-clinton", "Mukilteo", "Clinton", (7,)),
            RouteDefinition("fauntleroy-vashon", "Fauntleroy", "Vashon Island", (1, 4)),
            RouteDefinition("fauntleroy-southworth", "Fauntleroy", "Southworth", (1, 4)),
            RouteDefinition("port-townsend-coupeville", "Port Townsend", "Coupeville", (9, 10, 11)),
            RouteDefinition("anacortes-friday-harbor", "Anacortes", "Friday Harbor", (14, 15)),
        )
    }
)

DEFAULT_ROUTE = os.getenv("DEFAULT_ROUTE", "seattle-bainbridge").strip().lower()
if DEFAULT_ROUTE not in ROUTES:
    DEFAULT_ROUTE = "seattle-bainbridge"


class TerminalTime(TypedDict, total=False):
    DepartingTime: str
    ArrivingTime: str
    VesselName: str


class TerminalCombo(TypedDict, total=False):
    DepartingTerminalName: str
    ArrivingTerminalName: str
    Times: List[TerminalTime]


class Sailing(TypedDict):
    dep: Optional[str]
    arr: Optional[str]
    vessel: Optional[str]
    notes: str
    cancel: bool


@dataclass
class CacheEntry:
    data: str
    expires_at: float


@dataclass(frozen=True)
class FetchResult:
    sailings: List[Sailing] = field(default_factory=list)
    failure: Optional[str] = None


@dataclass(frozen=True)
class ProbeResult:
    id: int
    sailings: List[Sailing] = field(default_factory=list)
    failures: Tuple[str, ...] = ()


@dataclass(frozen=True)
class UsedSource:
    type: str
    id: int

    def as_json(self) -> JsonDict:
        return {"type": self.type, "id": self.id}


class UpstreamError(Exception):
    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status


class MissingConfig(Exception):
    def __init__(self, message: str):
        super().__init__(message)


class CacheStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str, ttl_sec: int) -> None:
        ...


class MemoryCacheStore:
    """Process-local key/value store with per-entry TTL."""

    def __init__(self, max_entries: int = MAX_CACHE) -> None:
        self.max_entries = max(1, max_entries)
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        now = time.time()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= now:
                self._entries.pop(key, None)
                return None
            return entry.data

    def set(self, key: str, value: str, ttl_sec: int) -> None:
        now = time.time()
        with self._lock:
            self._prune(now)
            self._entries[key] = CacheEntry(data=value, expires_at=now + max(1, ttl_sec))

    # Bounds protect memory under request spikes.
    def _prune(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            self._entries.pop(key, None)
        if len(self._entries) >= self.max_entries:
            self._entries.clear()


app = Flask(__name__)
session = requests.Session()
upstream_pool = ThreadPoolExecutor(max_workers=WSF_MAX_WORKERS, thread_name_prefix="wsf-upstream")
cache_store: CacheStore = MemoryCacheStore()


def now_ms() -> int:
    return int(time.time() * 1000)


def pacific_date_str(now: Optional[datetime.datetime] = None) -> str:
    if now is None:
        now = datetime.datetime.now(datetime.timezone.utc)
    return now.astimezone(PACIFIC).strftime("%Y-%m-%d")


def norm(value: Any) -> str:
    return str(value or "").lower()


# ---- route resolver ----


def resolve_route(route_key: Optional[str]) -> RouteDefinition:
    key = norm(route_key).strip()
    return ROUTES.get(key) or ROUTES[DEFAULT_ROUTE]


def resolve_direction(route: RouteDefinition, from_param: Optional[str]) -> Tuple[str, str]:
    wanted = norm(from_param).strip()
    if wanted and wanted == route.arr.lower():
        return route.arr, route.dep
    return route.dep, route.arr


# ---- payload normalizer ----


def parse_wsdot_date(value: Any) -> Optional[str]:
    """Convert ``/Date(1700000000000-0800)/`` into an ISO-8601 UTC timestamp.

    The offset suffix is informational only; the epoch milliseconds are
    already absolute.
    """
    if not value or not isinstance(value, str):
        return None
    match = WSDOT_DATE_RE.search(value)
    if not match:
        return None
    millis = int(match.group(1))
    try:
        moment = EPOCH + datetime.timedelta(milliseconds=millis)
    except OverflowError:
        return None
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{millis % 1000:03d}Z"


def find_terminal_combos(obj: Any, depth: int = 0) -> Optional[List[TerminalCombo]]:
    if obj is None or depth > MAX_SEARCH_DEPTH:
        return None
    if isinstance(obj, list):
        for item in obj:
            combos = find_terminal_combos(item, depth + 1)
            if combos:
                return combos
        return None
    if not isinstance(obj, dict):
        return None

    combos = obj.get("TerminalCombos")
    if isinstance(combos, list) and combos:
        return combos
    for name in COMBO_CONTAINER_FIELDS:
        found = find_terminal_combos(obj.get(name), depth + 1)
        if found:
            return found
    return None


def match_combo(
    combos: List[TerminalCombo], dep_wanted: str, arr_wanted: str
) -> Optional[TerminalCombo]:
    dep_wanted = norm(dep_wanted)
    arr_wanted = norm(arr_wanted)
    for combo in combos:
        if not isinstance(combo, dict):
            continue
        if dep_wanted in norm(combo.get("DepartingTerminalName")) and arr_wanted in norm(
            combo.get("ArrivingTerminalName")
        ):
            return combo
    return None


def normalize_times(times: List[TerminalTime]) -> List[Sailing]:
    sailings: List[Sailing] = []
    for entry in times:
        if not isinstance(entry, dict):
            continue
        dep = parse_wsdot_date(entry.get("DepartingTime"))
        if dep is None:
            continue
        sailings.append(
            {
                "dep": dep,
                "arr": parse_wsdot_date(entry.get("ArrivingTime")),
                "vessel": entry.get("VesselName") or None,
                "notes": "",
                "cancel": False,
            }
        )
    sailings.sort(key=lambda s: s["dep"] or "")
    return sailings


def extract_sailings(payload: Any, from_terminal: str, to_terminal: str) -> List[Sailing]:
    combos = find_terminal_combos(payload)
    if not combos:
        return []
    combo = match_combo(combos, from_terminal, to_terminal)
    if combo is None:
        return []
    times = combo.get("Times")
    if not isinstance(times, list):
        return []
    return normalize_times(times)


# ---- upstream fetcher ----


def read_json_body(resp: requests.Response, deadline: float, service_name: str) -> Any:
    chunks: List[bytes] = []
    try:
        for chunk in resp.iter_content(chunk_size=1024):
            if time.monotonic() > deadline:
                raise UpstreamError(504, f"{service_name} response exceeded deadline")
            chunks.append(chunk)
    except requests.RequestException as exc:
        raise UpstreamError(504, f"{service_name} request failed") from exc

    try:
        return json.loads(b"".join(chunks))
    except ValueError as exc:
        raise UpstreamError(502, f"{service_name} invalid JSON") from exc


def get_json(
    url: str,
    params: Optional[Dict[str, str]],
    timeout: Optional[Tuple[float, float]],
    deadline: float,
    service_name: str,
) -> Any:
    try:
        resp = session.get(
            url,
            params=params,
            timeout=timeout,
            headers={"Accept": "application/json"},
            stream=True,
        )
    except requests.RequestException as exc:
        raise UpstreamError(504, f"{service_name} request failed") from exc

    try:
        if resp.status_code >= 400:
            raise UpstreamError(resp.status_code, f"{service_name} upstream error")
        return read_json_body(resp, deadline, service_name)
    finally:
        resp.close()


def request_json(
    url: str,
    *,
    params: Optional[Dict[str, str]] = None,
    timeout: Optional[Tuple[float, float]] = None,
    total_timeout: Optional[float] = None,
    service_name: str = "upstream",
) -> Any:
    """GET ``url`` and decode its JSON body.

    ``timeout`` bounds connect and each socket read. ``total_timeout`` bounds
    the whole call: the caller stops waiting once it expires and the worker
    gives up reading at the same deadline.
    """
    if total_timeout is None:
        return get_json(url, params, timeout, float("inf"), service_name)

    deadline = time.monotonic() + total_timeout
    future = upstream_pool.submit(get_json, url, params, timeout, deadline, service_name)
    try:
        return future.result(timeout=total_timeout)
    except FutureTimeout as exc:
        future.cancel()
        raise UpstreamError(504, f"{service_name} request timed out") from exc


def wsf_get_json(path: str, params: Optional[Dict[str, str]] = None) -> Any:
    if not WSDOT_KEY:
        raise MissingConfig("missing WSDOT_KEY")
    query: Dict[str, str] = dict(params or {})
    query["apiaccesscode"] = WSDOT_KEY
    query["format"] = "json"
    return request_json(
        f"{WSF_BASE}{path}",
        params=query,
        timeout=(WSF_CONNECT_TIMEOUT_SEC, WSF_READ_TIMEOUT_SEC),
        total_timeout=WSF_TOTAL_TIMEOUT_SEC,
        service_name="WSF",
    )


def today_request(schedule_id: int) -> Tuple[str, Dict[str, str]]:
    return f"/scheduletoday/{schedule_id}/true", {}


def dated_request(schedule_id: int, date_str: str) -> Tuple[str, Dict[str, str]]:
    return f"/schedule/{date_str}/{schedule_id}", {"showCancelledSailings": "true"}


def fetch_sailings(
    path: str, params: Dict[str, str], from_terminal: str, to_terminal: str
) -> FetchResult:
    try:
        payload = wsf_get_json(path, params)
        return FetchResult(sailings=extract_sailings(payload, from_terminal, to_terminal))
    except (UpstreamError, MissingConfig) as exc:
        log.debug("WSF %s failed: %s", path, exc)
        return FetchResult(failure=str(exc))
    except Exception as exc:
        log.warning("WSF %s unexpected failure: %s", path, exc)
        return FetchResult(failure=f"unexpected: {exc.__class__.__name__}")


def probe_id(schedule_id: int, from_terminal: str, to_terminal: str, date_str: str) -> ProbeResult:
    failures: List[str] = []
    for path, params in (today_request(schedule_id), dated_request(schedule_id, date_str)):
        result = fetch_sailings(path, params, from_terminal, to_terminal)
        if result.sailings:
            return ProbeResult(id=schedule_id, sailings=result.sailings, failures=tuple(failures))
        if result.failure:
            failures.append(result.failure)
    return ProbeResult(id=schedule_id, failures=tuple(failures))


def try_known_ids(
    route: RouteDefinition, from_terminal: str, to_terminal: str, date_str: str
) -> Optional[ProbeResult]:
    for schedule_id in route.ids:
        result = probe_id(schedule_id, from_terminal, to_terminal, date_str)
        if result.sailings:
            return result
    return None


def scan_ids(from_terminal: str, to_terminal: str, date_str: str) -> Optional[ProbeResult]:
    ids = list(range(1, WSF_SCAN_MAX_ID + 1))
    with ThreadPoolExecutor(max_workers=WSF_SCAN_BATCH_SIZE) as pool:
        for start in range(0, len(ids), WSF_SCAN_BATCH_SIZE):
            batch = ids[start : start + WSF_SCAN_BATCH_SIZE]
            results = list(
                pool.map(lambda i: probe_id(i, from_terminal, to_terminal, date_str), batch)
            )
            for result in results:
                if result.sailings:
                    return result
    return None


def find_sailings(
    route: RouteDefinition, from_terminal: str, to_terminal: str, date_str: str
) -> Tuple[List[Sailing], Optional[UsedSource]]:
    hit = try_known_ids(route, from_terminal, to_terminal, date_str)
    if hit is not None:
        log.info("%s from %s: known id %s", route.key, from_terminal, hit.id)
        return hit.sailings, UsedSource("known", hit.id)

    hit = scan_ids(from_terminal, to_terminal, date_str)
    if hit is not None:
        log.info("%s from %s: scan found id %s", route.key, from_terminal, hit.id)
        return hit.sailings, UsedSource("scan", hit.id)

    log.warning("%s from %s: no sailings from known ids or scan", route.key, from_terminal)
    return [], None


# ---- cache-aside ----


def cache_key(route_key: str, from_terminal: str, at_ms: int) -> str:
    return f"wsf:{route_key}:{from_terminal}:{at_ms // CACHE_BUCKET_MS}"


def store_cached_body(key: str, body: str) -> None:
    try:
        cache_store.set(key, body, CACHE_TTL_SEC)
    except Exception as exc:
        log.warning("Cache write failed for %s: %s", key, exc)


def run_in_background(target: Callable[..., None], *args: Any) -> threading.Thread:
    thread = threading.Thread(target=target, args=args, daemon=True)
    thread.start()
    return thread


def lookup_cached_body(key: str) -> Optional[str]:
    try:
        return cache_store.get(key)
    except Exception as exc:
        log.warning("Cache read failed for %s: %s", key, exc)
        return None


# ---- http ----


def json_response(body: str, status: int = 200) -> Response:
    resp = make_response(body, status)
    resp.headers["Content-Type"] = "application/json"
    return resp


def build_payload(
    route: RouteDefinition,
    from_terminal: str,
    sailings: List[Sailing],
    used: Optional[UsedSource],
    date_str: str,
    debug: bool,
) -> JsonDict:
    if debug:
        return {
            "ok": True,
            "route": route.key,
            "from": from_terminal,
            "count": len(sailings),
            "_debug": {
                "used": used.as_json() if used else None,
                "dateStr": date_str,
                "knownIds": list(route.ids),
            },
            "sailings": sailings,
        }
    return {
        "ok": True,
        "source": "WSF",
        "route": route.key,
        "from": from_terminal,
        "sailings": sailings,
        "_debug": {"count": len(sailings)},
    }


@app.before_request
def answer_preflight() -> Optional[Response]:
    if request.method == "OPTIONS":
        resp = make_response("", 204)
        resp.headers["Content-Type"] = "application/json"
        return resp
    return None


@app.after_request
def add_common_headers(resp: Response) -> Response:
    for name, value in CORS_HEADERS.items():
        resp.headers[name] = value

    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers.setdefault("Referrer-Policy", "no-referrer")

    if ENABLE_HSTS and request.is_secure:
        resp.headers.setdefault(
            "Strict-Transport-Security",
            f"max-age={HSTS_MAX_AGE_SEC}; includeSubDomains",
        )
    return resp


@app.route("/", methods=["GET"])
def sailings_endpoint() -> Response:
    if not WSDOT_KEY:
        return json_response(
            json.dumps({"ok": False, "error": "missing WSDOT_KEY", "sailings": []})
        )

    route = resolve_route(request.args.get("route"))
    from_terminal, to_terminal = resolve_direction(route, request.args.get("from"))
    debug = request.args.get("debug") == "1"
    date_str = pacific_date_str()

    key = cache_key(route.key, from_terminal, now_ms())
    cached = lookup_cached_body(key)
    if cached is not None:
        resp = json_response(cached)
        resp.headers["X-Cache"] = "HIT"
        return resp

    sailings, used = find_sailings(route, from_terminal, to_terminal, date_str)
    body = json.dumps(build_payload(route, from_terminal, sailings, used, date_str, debug))

    resp = json_response(body)
    resp.headers["X-Cache"] = "MISS"
    run_in_background(store_cached_body, key, body)
    return resp


if __name__ == "__main__":
    app.run(host=APP_HOST, port=APP_PORT)
