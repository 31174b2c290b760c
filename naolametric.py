#!/usr/bin/env python3
# Naolib (TAN) -> LaMetric Time proxy.

from dataclasses import dataclass
import logging
import os
import threading
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, TypedDict
from urllib.parse import quote

from dotenv import load_dotenv
from flask import Flask, jsonify, make_response, request, Response
import requests

__version__ = "0.1.0"

load_dotenv()

log = logging.getLogger("naolametric")
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
    return parse_bool(value)


def parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


NAOLIB_BASE = os.getenv("NAOLIB_BASE_URL", "https://open.tan.fr/ewp").rstrip("/")

STOPS_CONNECT_TIMEOUT_SEC = env_float("STOPS_CONNECT_TIMEOUT_SEC", 3.0)
STOPS_READ_TIMEOUT_SEC = env_float("STOPS_READ_TIMEOUT_SEC", 10.0)
DEPARTURES_CONNECT_TIMEOUT_SEC = env_float("DEPARTURES_CONNECT_TIMEOUT_SEC", 3.0)
DEPARTURES_READ_TIMEOUT_SEC = env_float("DEPARTURES_READ_TIMEOUT_SEC", 5.0)

STOP_CACHE_TTL_SEC = 3600
CACHE_LOCK_TIMEOUT_SEC = env_float("CACHE_LOCK_TIMEOUT_SEC", 2.0)

DEFAULT_STOP_CODE = os.getenv("NAOLIB_STOP_CODE", "")
DEFAULT_LINE = os.getenv("NAOLIB_LINE", "")
DEFAULT_DIRECTION = os.getenv("NAOLIB_DIRECTION", "")
DEFAULT_LIMIT = env_int("NAOLIB_LIMIT", 2)
DEFAULT_SHOW_TERMINUS = env_bool("NAOLIB_SHOW_TERMINUS", False)

MIN_LIMIT = 1
MAX_LIMIT = 10
MAX_STOPS_LIMIT = 500
TERMINUS_MAX_CHARS = 12

ICON_TRAM = "8958"
ICON_BUS = "7956"
ICON_BOAT = "12186"
ICON_ERROR = "555"
NO_RESULTS_TEXT = "Aucun"

APP_HOST = os.getenv("APP_HOST", "0.0.0.0")
APP_PORT = env_int("PORT", 8080)

POPULAR_STOPS: List[Dict[str, str]] = [
    {"code": "COMM", "name": "Commerce"},
    {"code": "GSNO", "name": "Gare Nord - Jardin des Plantes"},
    {"code": "CRQU", "name": "Place du Cirque"},
    {"code": "HVNA", "name": "Hôtel de Ville"},
    {"code": "OGVA", "name": "Orvault Grand Val"},
    {"code": "NETR", "name": "Neustrie"},
    {"code": "VTOU", "name": "Vertou"},
    {"code": "SDON", "name": "St-Donatien"},
    {"code": "OTAG", "name": "50 Otages"},
    {"code": "BOFA", "name": "Bouffay"},
    {"code": "DCAN", "name": "Duchesse Anne - Château"},
    {"code": "BJOI", "name": "Beaujoire"},
    {"code": "FMIT", "name": "François Mitterrand"},
    {"code": "HALU", "name": "Haluchère - Batignolles"},
]

JsonDict = Dict[str, Any]


class RawStop(TypedDict):
    codeLieu: str
    libelle: str


class RawLine(TypedDict):
    numLigne: str


class RawPassage(TypedDict):
    sens: int
    terminus: str
    temps: str
    ligne: RawLine


@dataclass(frozen=True)
class StopRecord:
    code: str
    label: str


@dataclass(frozen=True)
class Passage:
    line_number: str
    direction: int
    destination: str
    wait_text: str


@dataclass(frozen=True)
class StopSnapshot:
    stops: Tuple[StopRecord, ...]
    fetched_at: Optional[float]


@dataclass(frozen=True)
class Defaults:
    stop_code: str = ""
    line: str = ""
    direction: str = ""
    limit: int = 2
    show_terminus: bool = False


@dataclass(frozen=True)
class RequestConfig:
    stop_code: str
    line: Optional[str]
    direction: Optional[int]
    limit: int
    show_terminus: bool


class UpstreamError(Exception):
    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status


class CacheError(Exception):
    pass


class ConfigError(Exception):
    # message is the text shown on the display
    message = "Bad request"

    def __init__(self) -> None:
        super().__init__(self.message)


class MissingStopCode(ConfigError):
    message = "No stop"


class InvalidDirection(ConfigError):
    message = "Bad dir"


class InvalidStopCode(ConfigError):
    message = "Bad stop"


app = Flask(__name__)
app.json.ensure_ascii = False
session = requests.Session()


def request_json(url: str, *, timeout: Tuple[float, float], service_name: str = "Naolib") -> Any:
    try:
        resp = session.get(url, timeout=timeout, headers={"Accept": "application/json"})
    except requests.RequestException as exc:
        raise UpstreamError(504, f"{service_name} request failed: {exc}") from exc

    if not 200 <= resp.status_code <= 299:
        raise UpstreamError(resp.status_code, f"{service_name} upstream error (HTTP {resp.status_code})")

    try:
        return resp.json()
    except ValueError as exc:
        raise UpstreamError(502, f"{service_name} invalid JSON") from exc


def parse_stop(raw: RawStop) -> StopRecord:
    return StopRecord(code=str(raw["codeLieu"]), label=str(raw["libelle"]))


def fetch_stops() -> List[StopRecord]:
    data = request_json(
        f"{NAOLIB_BASE}/arrets.json",
        timeout=(STOPS_CONNECT_TIMEOUT_SEC, STOPS_READ_TIMEOUT_SEC),
    )
    if not isinstance(data, list):
        raise UpstreamError(502, "Naolib stop list is not an array")
    try:
        return [parse_stop(s) for s in data]
    except (KeyError, TypeError) as exc:
        raise UpstreamError(502, f"Naolib stop list malformed: {exc!r}") from exc


def parse_passage(raw: RawPassage) -> Passage:
    return Passage(
        line_number=str(raw["ligne"]["numLigne"]),
        direction=int(raw["sens"]),
        destination=str(raw["terminus"]),
        wait_text=str(raw["temps"] or ""),
    )


def fetch_departures(stop_code: str) -> List[Passage]:
    data = request_json(
        f"{NAOLIB_BASE}/tempsattente.json/{quote(stop_code, safe='')}",
        timeout=(DEPARTURES_CONNECT_TIMEOUT_SEC, DEPARTURES_READ_TIMEOUT_SEC),
    )
    if not isinstance(data, list):
        raise UpstreamError(502, "Naolib departures are not an array")
    try:
        return [parse_passage(p) for p in data]
    except (KeyError, TypeError, ValueError) as exc:
        raise UpstreamError(502, f"Naolib departures malformed: {exc!r}") from exc


class StopCache:
    """Immutable stop list swapped as a whole; the lock never spans a fetch."""

    def __init__(
        self,
        fetcher: Callable[[], Sequence[StopRecord]],
        *,
        ttl_sec: float = 3600,
        clock: Callable[[], float] = time.monotonic,
        lock_timeout_sec: float = 2.0,
    ) -> None:
        self._fetcher = fetcher
        self.ttl_sec = ttl_sec
        self._clock = clock
        self._lock_timeout_sec = lock_timeout_sec
        self._lock = threading.Lock()
        self._snapshot = StopSnapshot(stops=(), fetched_at=None)

    def _acquire(self) -> None:
        if not self._lock.acquire(timeout=self._lock_timeout_sec):
            raise CacheError("stop cache lock timed out")

    def snapshot(self) -> StopSnapshot:
        self._acquire()
        try:
            return self._snapshot
        finally:
            self._lock.release()

    def refresh(self) -> None:
        stops = tuple(self._fetcher())
        fetched_at = self._clock()
        self._acquire()
        try:
            current = self._snapshot.fetched_at
            # A slower concurrent refresh must not roll the timestamp back.
            if current is not None and fetched_at < current:
                return
            self._snapshot = StopSnapshot(stops=stops, fetched_at=fetched_at)
        finally:
            self._lock.release()
        log.info("Stop cache refreshed: %d stops", len(stops))

    def is_valid(self) -> bool:
        fetched_at = self.snapshot().fetched_at
        if fetched_at is None:
            return False
        return self._clock() - fetched_at < self.ttl_sec

    def ensure_fresh(self) -> None:
        if self.is_valid():
            return
        try:
            self.refresh()
        except UpstreamError as exc:
            log.warning("Stop cache refresh failed: %s", exc)

    def is_valid_code(self, code: str) -> bool:
        stops = self.snapshot().stops
        if not stops:
            return True
        wanted = code.upper()
        return any(s.code.upper() == wanted for s in stops)


stop_cache = StopCache(
    lambda: fetch_stops(),
    ttl_sec=STOP_CACHE_TTL_SEC,
    lock_timeout_sec=CACHE_LOCK_TIMEOUT_SEC,
)


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def parse_limit(value: Optional[str], default: int, low: int, high: int) -> int:
    if value is None or not value.strip():
        return clamp(default, low, high)
    try:
        return clamp(int(value.strip()), low, high)
    except ValueError:
        return clamp(default, low, high)


def parse_direction(value: str) -> Optional[int]:
    value = value.strip()
    if not value:
        return None
    if value not in ("1", "2"):
        raise InvalidDirection()
    return int(value)


def resolve(
    defaults: Defaults,
    query: Mapping[str, str],
    is_valid_code: Callable[[str], bool],
) -> RequestConfig:
    stop_code = (query.get("stop") or "").strip() or defaults.stop_code.strip()
    line = (query.get("line") or "").strip() or defaults.line.strip()
    raw_direction = (query.get("direction") or "").strip() or defaults.direction
    limit = parse_limit(query.get("limit"), defaults.limit, MIN_LIMIT, MAX_LIMIT)
    raw_terminus = (query.get("show_terminus") or "").strip()
    show_terminus = parse_bool(raw_terminus) if raw_terminus else defaults.show_terminus

    if not stop_code:
        raise MissingStopCode()
    # the stop code lookup may refresh the cache, so it runs last
    direction = parse_direction(raw_direction)
    stop_code = stop_code.upper()
    if not is_valid_code(stop_code):
        raise InvalidStopCode()

    return RequestConfig(
        stop_code=stop_code,
        line=line.upper() or None,
        direction=direction,
        limit=limit,
        show_terminus=show_terminus,
    )


def filter_passages(passages: Sequence[Passage], config: RequestConfig) -> List[Passage]:
    out: List[Passage] = []
    for p in passages:
        if not p.wait_text:
            continue
        if config.line is not None and p.line_number.upper() != config.line:
            continue
        if config.direction is not None and p.direction != config.direction:
            continue
        out.append(p)
    return out


def line_icon(line_number: str) -> str:
    if len(line_number) == 1 and line_number in "123":
        return ICON_TRAM
    if line_number.startswith("N"):
        return ICON_BOAT
    return ICON_BUS


def format_terminus(terminus: str) -> str:
    # LaMetric Time fits 12 characters between line and wait time.
    if len(terminus) > TERMINUS_MAX_CHARS:
        return terminus[: TERMINUS_MAX_CHARS - 1] + "."
    return terminus


def build_frames(passages: Sequence[Passage], show_terminus: bool) -> List[JsonDict]:
    if not passages:
        return [{"icon": ICON_TRAM, "text": NO_RESULTS_TEXT}]
    frames: List[JsonDict] = []
    for p in passages:
        if show_terminus:
            text = f"{p.line_number} {format_terminus(p.destination)} {p.wait_text}"
        else:
            text = f"L{p.line_number} {p.wait_text}"
        frames.append({"icon": line_icon(p.line_number), "text": text})
    return frames


def run_pipeline(config: RequestConfig) -> JsonDict:
    passages = fetch_departures(config.stop_code)
    kept = filter_passages(passages, config)[: config.limit]
    return {"frames": build_frames(kept, config.show_terminus)}


def list_stops(stops: Sequence[StopRecord], search: Optional[str], limit: int) -> List[StopRecord]:
    limit = min(limit, MAX_STOPS_LIMIT)
    term = (search or "").strip().lower()
    out: List[StopRecord] = []
    for s in stops:
        if len(out) >= limit:
            break
        if term and term not in s.code.lower() and term not in s.label.lower():
            continue
        out.append(s)
    return out


def current_defaults() -> Defaults:
    return Defaults(
        stop_code=DEFAULT_STOP_CODE,
        line=DEFAULT_LINE,
        direction=DEFAULT_DIRECTION,
        limit=DEFAULT_LIMIT,
        show_terminus=DEFAULT_SHOW_TERMINUS,
    )


def check_stop_code(code: str) -> bool:
    stop_cache.ensure_fresh()
    return stop_cache.is_valid_code(code)


def frame_error(status: int, message: str) -> Response:
    resp = jsonify({"frames": [{"icon": ICON_ERROR, "text": message}]})
    resp.status_code = status
    resp.headers["Cache-Control"] = "no-store"
    return resp


def json_error(status: int, message: str) -> Response:
    resp = jsonify({"error": message})
    resp.status_code = status
    resp.headers["Cache-Control"] = "no-store"
    return resp


@app.before_request
def reject_non_get() -> Optional[Response]:
    if request.method != "GET":
        return json_error(405, "Method not allowed")
    return None


@app.after_request
def add_common_headers(resp: Response) -> Response:
    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers.setdefault("Referrer-Policy", "no-referrer")
    resp.headers.setdefault("X-Frame-Options", "DENY")
    return resp


@app.errorhandler(404)
def not_found(_exc: Exception) -> Response:
    return json_error(404, "Not found")


@app.route("/", methods=["GET"])
def departures() -> Response:
    try:
        config = resolve(current_defaults(), request.args, check_stop_code)
    except ConfigError as exc:
        return frame_error(400, exc.message)
    except CacheError as exc:
        log.error("Stop cache unavailable: %s", exc)
        return frame_error(500, "Cache err")
    except Exception:
        log.exception("Unexpected error resolving request")
        return frame_error(500, "Error")

    try:
        payload = run_pipeline(config)
    except UpstreamError as exc:
        log.error("Naolib API error for %s: %s", config.stop_code, exc)
        return frame_error(502, "API err")
    except Exception:
        log.exception("Unexpected error for %s", config.stop_code)
        return frame_error(500, "Error")

    return jsonify(payload)


@app.route("/stops", methods=["GET"])
def stops() -> Response:
    try:
        stop_cache.ensure_fresh()
        snapshot = stop_cache.snapshot()
    except CacheError as exc:
        log.error("Stop cache unavailable: %s", exc)
        return json_error(500, "Cache error")

    if not snapshot.stops:
        return json_error(503, "Cache not ready")

    limit = parse_limit(request.args.get("limit"), MAX_STOPS_LIMIT, 1, MAX_STOPS_LIMIT)
    found = list_stops(snapshot.stops, request.args.get("search"), limit)
    return jsonify([{"codeLieu": s.code, "libelle": s.label} for s in found])


@app.route("/popular-stops", methods=["GET"])
def popular_stops() -> Response:
    return jsonify(POPULAR_STOPS)


@app.route("/health", methods=["GET"])
def health() -> Response:
    resp = make_response("OK", 200)
    resp.mimetype = "text/plain"
    return resp


def build_info() -> JsonDict:
    return {
        "name": "NaoLaMetric",
        "version": __version__,
        "description": "Application LaMetric pour les transports nantais (TAN/Naolib)",
        "endpoints": [
            {"path": "/", "method": "GET", "description": "Prochains passages pour LaMetric"},
            {"path": "/stops", "method": "GET", "description": "Recherche d'arrêts"},
            {"path": "/popular-stops", "method": "GET", "description": "Arrêts populaires"},
            {"path": "/health", "method": "GET", "description": "État du serveur"},
            {"path": "/info", "method": "GET", "description": "Documentation API"},
        ],
        "parameters": [
            {"name": "stop", "type": "string", "required": True, "description": "Code arrêt (COMM, GANO...)"},
            {"name": "line", "type": "string", "required": False, "description": "Filtre ligne (1, 2, C1...)"},
            {"name": "direction", "type": "integer", "required": False, "description": "Direction (1 ou 2)"},
            {"name": "limit", "type": "integer", "required": False, "description": "Nombre résultats (1-10)"},
            {"name": "show_terminus", "type": "boolean", "required": False, "description": "Afficher destination"},
            {"name": "search", "type": "string", "required": False, "description": "Recherche d'arrêts (/stops)"},
        ],
        "examples": [
            {"description": "Passages Commerce", "url": "/?stop=COMM"},
            {"description": "Ligne 1 direction 1", "url": "/?stop=COMM&line=1&direction=1"},
            {"description": "5 passages + terminus", "url": "/?stop=GANO&limit=5&show_terminus=true"},
            {"description": "Recherche gare", "url": "/stops?search=gare"},
        ],
    }


@app.route("/info", methods=["GET"])
def info() -> Response:
    return jsonify(build_info())


def warm_cache() -> None:
    log.info("Loading stop cache...")
    try:
        stop_cache.refresh()
    except (UpstreamError, CacheError) as exc:
        log.warning("Stop cache warm-up failed: %s", exc)


if __name__ == "__main__":
    warm_cache()
    app.run(host=APP_HOST, port=APP_PORT, threaded=True)
