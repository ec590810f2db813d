import asyncio
import enum
import ipaddress
import json
import os
import random
import signal
import sqlite3
import sys
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Sequence, Set, Tuple

import requests
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
import uvicorn


if getattr(sys, "frozen", False):
  BASE_DIR = os.path.dirname(sys.executable)
else:
  BASE_DIR = os.path.dirname(os.path.abspath(__file__))


CONFIG_PATH = os.path.join(BASE_DIR, "config.json")
DB_PATH = os.path.join(BASE_DIR, "attacks.db")
STATIC_DIR = os.path.join(BASE_DIR, "public")

MAX_RETAINED = 100

# Public addresses handed out for loopback/private peers when test_mode is on,
# so a local `nc localhost 2222` still lands somewhere on the map.
DEMO_ADDRESSES: Tuple[str, ...] = ("8.8.8.8", "1.1.1.1", "202.38.64.1", "139.162.19.141")

GEO_URL = "http://ip-api.com/json/{ip}?fields=status,message,lat,lon,city,country"


def _info(msg: str) -> None:
  print(f"[INFO] {msg}")


def _warn(msg: str) -> None:
  print(f"[WARN] {msg}", file=sys.stderr)


def _now_ms() -> int:
  return int(time.time() * 1000)


@dataclass(frozen=True)
class GeoResult:
  latitude: float
  longitude: float
  city: str = ""
  country: str = ""


@dataclass(frozen=True)
class CaptureEvent:
  source_address: str
  latitude: float
  longitude: float
  city: str
  country: str
  captured_at: int  # epoch ms

  @classmethod
  def from_geo(cls, address: str, geo: GeoResult, captured_at: Optional[int] = None) -> "CaptureEvent":
    return cls(
      source_address=address,
      latitude=float(geo.latitude),
      longitude=float(geo.longitude),
      city=geo.city,
      country=geo.country,
      captured_at=_now_ms() if captured_at is None else int(captured_at),
    )

  def to_payload(self) -> Dict[str, object]:
    return {
      "sourceAddress": self.source_address,
      "latitude": self.latitude,
      "longitude": self.longitude,
      "city": self.city,
      "country": self.country,
      "capturedAt": self.captured_at,
    }


class AttemptState(enum.Enum):
  ACCEPTED = "accepted"
  ADDRESS_RESOLVED = "address_resolved"
  ENRICHED = "enriched"
  ENRICHMENT_FAILED = "enrichment_failed"
  RECORDED = "recorded"
  DROPPED = "dropped"


@dataclass
class ConnectionAttempt:
  raw_address: str
  address: str = ""
  state: AttemptState = AttemptState.ACCEPTED
  event: Optional[CaptureEvent] = field(default=None)


class AddressResolver:
  """Maps a socket peer address to the address an event is attributed to.

  With ``test_mode`` on, loopback and private peers are swapped for a random
  member of ``demo_addresses`` so local testing produces plottable events.
  With it off (production) the peer address is always used as-is.
  """

  def __init__(
    self,
    test_mode: bool = False,
    demo_addresses: Sequence[str] = DEMO_ADDRESSES,
    rng: Optional[random.Random] = None,
  ) -> None:
    self.test_mode = bool(test_mode)
    self.demo_addresses: Tuple[str, ...] = tuple(demo_addresses)
    self._rng = rng or random.Random()

  @staticmethod
  def normalize(raw_address: str) -> str:
    address = str(raw_address).strip()
    try:
      ip = ipaddress.ip_address(address)
    except ValueError:
      return address
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
      return str(ip.ipv4_mapped)
    return str(ip)

  @staticmethod
  def is_non_routable(address: str) -> bool:
    try:
      ip = ipaddress.ip_address(address)
    except ValueError:
      return False
    return ip.is_loopback or ip.is_private or ip.is_link_local or ip.is_unspecified

  def resolve(self, raw_address: str) -> str:
    address = self.normalize(raw_address)
    if self.test_mode and self.demo_addresses and self.is_non_routable(address):
      return self._rng.choice(self.demo_addresses)
    return address


class GeoLocator:
  def __init__(self, url_template: str = GEO_URL, timeout: float = 2.0, http=None) -> None:
    self.url_template = url_template
    self.timeout = float(timeout)
    self.http = http if http is not None else requests

  def lookup(self, address: str) -> Optional[GeoResult]:
    """Single geolocation request for ``address``.

    Returns None on any failure (network error, timeout, non-2xx status,
    malformed body or a provider status other than "success").
    """
    url = self.url_template.format(ip=address)
    try:
      resp = self.http.get(url, timeout=self.timeout)
    except requests.RequestException as exc:
      _warn(f"Geo lookup for {address} failed: {exc}")
      return None

    if not resp.ok:
      _warn(f"Geo lookup for {address} returned HTTP {resp.status_code}")
      return None

    try:
      data = resp.json()
    except ValueError:
      _warn(f"Geo lookup for {address} returned a non-JSON body")
      return None

    if not isinstance(data, dict) or data.get("status") != "success":
      reason = data.get("message") if isinstance(data, dict) else None
      _warn(f"Geo lookup for {address} unsuccessful: {reason or 'no status'}")
      return None

    try:
      lat = float(data["lat"])
      lon = float(data["lon"])
    except (KeyError, TypeError, ValueError):
      _warn(f"Geo lookup for {address} returned no coordinates")
      return None

    return GeoResult(
      latitude=lat,
      longitude=lon,
      city=str(data.get("city") or ""),
      country=str(data.get("country") or ""),
    )


class EventStore:
  """Bounded, SQLite-backed log of capture events, oldest first.

  All mutation goes through ``append``, which holds ``_lock`` for the whole
  add/evict/persist sequence. Readers get the last published tuple and never
  wait on the writer.
  """

  def __init__(
    self,
    db_path: str = DB_PATH,
    max_retained: int = MAX_RETAINED,
    busy_timeout: float = 5.0,
  ) -> None:
    if int(max_retained) < 1:
      raise ValueError("max_retained must be at least 1")
    self.db_path = db_path
    self.max_retained = int(max_retained)
    self.busy_timeout = float(busy_timeout)
    self._lock = threading.Lock()
    self._events: Deque[CaptureEvent] = deque(maxlen=self.max_retained)
    self._view: Tuple[CaptureEvent, ...] = ()
    self._conn: Optional[sqlite3.Connection] = None

  def open(self) -> None:
    with self._lock:
      try:
        self._connect()
        loaded = self._load_rows()
      except (sqlite3.OperationalError, OSError) as exc:
        # Locked or unreachable: the file may still hold a good log, so it is
        # left untouched and nothing is written to it this run.
        _warn(f"Event store {self.db_path} is unavailable ({exc}), keeping events in memory only")
        loaded = []
        self._close_conn()
      except sqlite3.DatabaseError as exc:
        _warn(f"Event store {self.db_path} is corrupt ({exc}), starting empty")
        loaded = []
        self._reset_corrupt_db()

      self._events.clear()
      self._events.extend(loaded)
      self._view = tuple(self._events)
    _info(f"Event store loaded {len(self._view)} event(s) from {self.db_path}")

  def _connect(self) -> None:
    parent = os.path.dirname(self.db_path)
    if parent:
      os.makedirs(parent, exist_ok=True)
    self._conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout, check_same_thread=False)
    self._init_db()

  def _require_conn(self) -> sqlite3.Connection:
    if self._conn is None:
      raise sqlite3.OperationalError("event store is not open")
    return self._conn

  def _close_conn(self) -> None:
    if self._conn is not None:
      try:
        self._conn.close()
      except sqlite3.Error:
        pass
      self._conn = None

  def _init_db(self) -> None:
    conn = self._require_conn()
    cur = conn.cursor()
    cur.execute(
      """
      CREATE TABLE IF NOT EXISTS capture_events (
        seq INTEGER PRIMARY KEY,
        source_address TEXT NOT NULL,
        latitude REAL NOT NULL,
        longitude REAL NOT NULL,
        city TEXT NOT NULL DEFAULT '',
        country TEXT NOT NULL DEFAULT '',
        captured_at_ms INTEGER NOT NULL
      )
      """
    )
    conn.commit()

  def _load_rows(self) -> List[CaptureEvent]:
    cur = self._require_conn().cursor()
    cur.execute(
      "SELECT source_address, latitude, longitude, city, country, captured_at_ms "
      "FROM capture_events ORDER BY seq ASC"
    )
    events: List[CaptureEvent] = []
    for row in cur.fetchall():
      try:
        source_address, lat, lon, city, country, ts_ms = row
        events.append(
          CaptureEvent(
            source_address=str(source_address),
            latitude=float(lat),
            longitude=float(lon),
            city=str(city) if city is not None else "",
            country=str(country) if country is not None else "",
            captured_at=int(ts_ms),
          )
        )
      except (TypeError, ValueError):
        continue
    # The limit may have been lowered since the file was written.
    return events[-self.max_retained:]

  def _reset_corrupt_db(self) -> None:
    self._close_conn()
    try:
      if os.path.exists(self.db_path):
        os.replace(self.db_path, self.db_path + ".corrupt")
      self._connect()
    except (OSError, sqlite3.Error) as exc:
      _warn(f"Could not recreate event store {self.db_path}: {exc}; keeping events in memory only")
      self._conn = None

  def _write_snapshot(self, events: Sequence[CaptureEvent]) -> None:
    conn = self._require_conn()
    with conn:
      conn.execute("DELETE FROM capture_events")
      conn.executemany(
        "INSERT INTO capture_events (seq, source_address, latitude, longitude, city, country, captured_at_ms) "
        "VALUES (?, ?, ?, ?, ?, ?, ?)",
        [
          (i, ev.source_address, ev.latitude, ev.longitude, ev.city, ev.country, ev.captured_at)
          for i, ev in enumerate(events)
        ],
      )

  def append(self, event: CaptureEvent) -> None:
    with self._lock:
      # deque(maxlen) drops exactly the oldest entry on overflow
      self._events.append(event)
      view = tuple(self._events)
      self._view = view
      try:
        self._write_snapshot(view)
      except (sqlite3.Error, OSError) as exc:
        _warn(f"Failed to persist event log ({len(view)} events): {exc}")

  def snapshot(self) -> List[CaptureEvent]:
    return list(self._view)

  def __len__(self) -> int:
    return len(self._view)

  def close(self) -> None:
    with self._lock:
      self._close_conn()


class DecoyListener:
  def __init__(
    self,
    config: Dict,
    resolver: AddressResolver,
    locator: GeoLocator,
    store: EventStore,
  ) -> None:
    self.config = config
    self.resolver = resolver
    self.locator = locator
    self.store = store

    geo_timeout = float(config.get("geo_timeout", 2.0))
    self.lookup_deadline = float(config.get("lookup_deadline") or geo_timeout + 1.0)
    self.max_pending_attempts = int(config.get("max_pending_attempts", 256))
    self.shutdown_grace = float(config.get("shutdown_grace", 3.0))

    self.max_inflight_lookups = int(config.get("max_inflight_lookups", 8))

    self.server: Optional[asyncio.AbstractServer] = None
    self._executor = ThreadPoolExecutor(
      max_workers=self.max_inflight_lookups,
      thread_name_prefix="geo-lookup",
    )
    # One slot per executor worker; created on the running loop.
    self._lookup_slots: Optional[asyncio.Semaphore] = None
    self._pending: Set[asyncio.Task] = set()

    self.total_connections = 0
    self.recorded = 0
    self.enrichment_failures = 0
    self.rejected_attempts = 0

  async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    peer = writer.get_extra_info("peername") or ("?", 0)
    ip = str(peer[0])
    self.total_connections += 1
    _info(f"Decoy triggered by {ip}")
    try:
      self.dispatch(ip)
    finally:
      try:
        writer.close()
        await writer.wait_closed()
      except Exception:
        pass

  def dispatch(self, raw_address: str) -> Optional["asyncio.Task[ConnectionAttempt]"]:
    """Schedule resolve -> lookup -> append for one attempt without waiting on it."""
    if len(self._pending) >= self.max_pending_attempts:
      self.rejected_attempts += 1
      _warn(f"Dropping attempt from {raw_address}: {len(self._pending)} attempts already in flight")
      return None
    task = asyncio.get_running_loop().create_task(self._run_attempt(raw_address))
    self._pending.add(task)
    task.add_done_callback(self._pending.discard)
    return task

  async def _run_attempt(self, raw_address: str) -> ConnectionAttempt:
    attempt = ConnectionAttempt(raw_address=raw_address)
    try:
      await self._process(attempt)
    except Exception as exc:
      _warn(f"Attempt from {raw_address} failed: {exc!r}")
      attempt.state = AttemptState.DROPPED
    return attempt

  async def _process(self, attempt: ConnectionAttempt) -> None:
    loop = asyncio.get_running_loop()

    attempt.address = self.resolver.resolve(attempt.raw_address)
    attempt.state = AttemptState.ADDRESS_RESOLVED

    if self._lookup_slots is None:
      self._lookup_slots = asyncio.Semaphore(self.max_inflight_lookups)
    slots = self._lookup_slots

    # The deadline only starts once a worker is free. The slot is held until
    # the worker thread returns, even if the attempt gave up on it earlier.
    await slots.acquire()
    lookup = loop.run_in_executor(self._executor, self.locator.lookup, attempt.address)
    lookup.add_done_callback(lambda fut: self._release_lookup_slot(slots, fut))

    geo: Optional[GeoResult] = None
    try:
      geo = await asyncio.wait_for(asyncio.shield(lookup), timeout=self.lookup_deadline)
    except asyncio.TimeoutError:
      _warn(f"Geo lookup for {attempt.address} exceeded {self.lookup_deadline:.1f}s")

    if geo is None:
      attempt.state = AttemptState.ENRICHMENT_FAILED
      self.enrichment_failures += 1
      attempt.state = AttemptState.DROPPED
      return

    attempt.state = AttemptState.ENRICHED
    event = CaptureEvent.from_geo(attempt.address, geo)
    await loop.run_in_executor(None, self.store.append, event)
    attempt.event = event
    attempt.state = AttemptState.RECORDED
    self.recorded += 1
    _info(f"Recorded {event.source_address} ({event.city or '?'}, {event.country or '?'})")

  @staticmethod
  def _release_lookup_slot(slots: asyncio.Semaphore, fut: "asyncio.Future") -> None:
    slots.release()
    # Marks a late failure as retrieved when the attempt already timed out.
    if not fut.cancelled():
      fut.exception()

  def pending_count(self) -> int:
    return len(self._pending)

  async def drain(self, timeout: Optional[float] = None) -> None:
    if not self._pending:
      return
    await asyncio.wait(set(self._pending), timeout=timeout)

  async def start(self) -> None:
    host = self.config.get("decoy_host", "0.0.0.0")
    port = int(self.config.get("decoy_port", 2222))
    try:
      self.server = await asyncio.start_server(self.handle_client, host=host, port=port)
    except OSError as exc:
      print(f"[ERROR] Could not bind decoy listener on {host}:{port}: {exc}", file=sys.stderr)
      raise
    _info(f"Decoy listening on {host}:{self.listening_port()}")

  def listening_port(self) -> Optional[int]:
    if self.server is None:
      return None
    for sock in self.server.sockets or []:
      try:
        return int(sock.getsockname()[1])
      except Exception:
        continue
    return None

  async def stop(self) -> None:
    if self.server is not None:
      self.server.close()
      await self.server.wait_closed()

    await self.drain(timeout=self.shutdown_grace)
    leftover = list(self._pending)
    for task in leftover:
      task.cancel()
    if leftover:
      _warn(f"Cancelled {len(leftover)} unfinished attempt(s) on shutdown")
      await asyncio.gather(*leftover, return_exceptions=True)

    self._executor.shutdown(wait=False, cancel_futures=True)
    self.store.close()

  def status(self) -> Dict[str, object]:
    return {
      "decoy_port": self.listening_port(),
      "total_connections": self.total_connections,
      "recorded": self.recorded,
      "enrichment_failures": self.enrichment_failures,
      "rejected_attempts": self.rejected_attempts,
      "in_flight": self.pending_count(),
    }


class QueryService:
  """Read-only view of the event store for the map front end."""

  def __init__(self, store: EventStore) -> None:
    self._store = store

  def current_log(self) -> List[CaptureEvent]:
    return self._store.snapshot()

  def current_log_payload(self) -> List[Dict[str, object]]:
    return [ev.to_payload() for ev in self.current_log()]

  @property
  def max_retained(self) -> int:
    return self._store.max_retained


def _env_flag(value: str) -> bool:
  return value.strip().lower() in ("1", "true", "yes", "on")


def default_config() -> Dict:
  return {
    "decoy_host": "0.0.0.0",
    "decoy_port": 2222,
    "ui_host": "0.0.0.0",
    "ui_port": 3000,
    "max_retained": MAX_RETAINED,
    "test_mode": False,
    "demo_addresses": list(DEMO_ADDRESSES),
    "geo_url": GEO_URL,
    "geo_timeout": 2.0,
    "lookup_deadline": None,
    "max_inflight_lookups": 8,
    "max_pending_attempts": 256,
    "shutdown_grace": 3.0,
    "db_path": DB_PATH,
    "static_dir": STATIC_DIR,
  }


def load_config(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> Dict:
  config = default_config()

  candidates = [path] if path else [CONFIG_PATH, os.path.join(BASE_DIR, "config.example.json")]
  for candidate in candidates:
    if candidate and os.path.exists(candidate):
      with open(candidate, "r", encoding="utf-8") as f:
        config.update(json.load(f))
      break

  env = os.environ if environ is None else environ
  if env.get("ATTACKMAP_DECOY_PORT"):
    config["decoy_port"] = int(env["ATTACKMAP_DECOY_PORT"])
  if env.get("ATTACKMAP_UI_PORT"):
    config["ui_port"] = int(env["ATTACKMAP_UI_PORT"])
  if env.get("ATTACKMAP_TEST_MODE") is not None:
    config["test_mode"] = _env_flag(env["ATTACKMAP_TEST_MODE"])
  if env.get("ATTACKMAP_GEO_URL"):
    config["geo_url"] = env["ATTACKMAP_GEO_URL"]
  if env.get("ATTACKMAP_DB_PATH"):
    config["db_path"] = env["ATTACKMAP_DB_PATH"]

  return config


def create_app(
  query: QueryService,
  listener: Optional[DecoyListener] = None,
  static_dir: Optional[str] = None,
) -> FastAPI:
  app = FastAPI()
  app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
  )

  @app.get("/api/logs", response_class=JSONResponse)
  async def logs() -> JSONResponse:
    return JSONResponse(query.current_log_payload())

  @app.get("/api/status", response_class=JSONResponse)
  async def status() -> JSONResponse:
    body: Dict[str, object] = {
      "retained": len(query.current_log()),
      "max_retained": query.max_retained,
    }
    if listener is not None:
      body.update(listener.status())
    return JSONResponse(body)

  # Mounted last so /api/* keeps priority over the static catch-all.
  if static_dir and os.path.isdir(static_dir):
    app.mount("/", StaticFiles(directory=static_dir, html=True), name="static")

  return app


def build_components(config: Dict) -> Tuple[DecoyListener, QueryService]:
  resolver = AddressResolver(
    test_mode=bool(config.get("test_mode", False)),
    demo_addresses=config.get("demo_addresses") or DEMO_ADDRESSES,
  )
  locator = GeoLocator(
    url_template=config.get("geo_url") or GEO_URL,
    timeout=float(config.get("geo_timeout", 2.0)),
  )
  store = EventStore(
    db_path=config.get("db_path") or DB_PATH,
    max_retained=int(config.get("max_retained", MAX_RETAINED)),
  )
  store.open()
  listener = DecoyListener(config, resolver, locator, store)
  return listener, QueryService(store)


async def main() -> None:
  config = load_config()
  if config.get("test_mode"):
    _warn("test_mode is on: loopback/private peers are attributed to demo addresses")

  listener, query = build_components(config)
  await listener.start()

  app = create_app(query, listener, config.get("static_dir"))

  ui_host = config.get("ui_host", "0.0.0.0")
  ui_port = int(config.get("ui_port", 3000))

  config_uvicorn = uvicorn.Config(app, host=ui_host, port=ui_port, loop="asyncio", lifespan="on")
  server = uvicorn.Server(config_uvicorn)

  loop = asyncio.get_running_loop()

  stop_event = asyncio.Event()

  def _handle_signal(*_: object) -> None:
    loop.call_soon_threadsafe(stop_event.set)

  for sig in (signal.SIGINT, signal.SIGTERM):
    try:
      loop.add_signal_handler(sig, _handle_signal)
    except NotImplementedError:
      pass

  uvicorn_task = asyncio.create_task(server.serve())
  _info(f"Map API on http://{ui_host}:{ui_port}/api/logs")

  await stop_event.wait()
  _info("Shutting down decoy...")
  await listener.stop()
  server.should_exit = True
  try:
    await asyncio.wait_for(uvicorn_task, timeout=5)
  except (asyncio.TimeoutError, asyncio.CancelledError):
    uvicorn_task.cancel()


def run() -> None:
  try:
    asyncio.run(main())
  except KeyboardInterrupt:
    pass


if __name__ == "__main__":
  run()
