# ac_monitor.py
# A single-file backend that watches Adobe Connect rooms and reports whether they are open.
# This script runs a Flask API server and a background monitoring service in separate threads.

import os
import re
import sys
import json
import asyncio
import logging
import aiohttp
import websockets
from enum import Enum
from threading import Thread, Lock, local
from datetime import datetime, timezone
from dataclasses import dataclass

# --- Core Dependencies ---
from flask import Flask, jsonify
from waitress import serve

# ==============================================================================
# 1. CONFIGURATION & INITIALIZATION
# ==============================================================================

# --- Constants ---
WS_LOCATION = "wss://amsprod-connect-uswest1-acts1.acms.com:443/"
RTMP_SLUG = "rtmps://spcs-app3uswest1.acms.com:443/"
SWF_SLUG = "https://pcadobeconnect.stanford.edu/common/webrtchtml/index.html"
HANDSHAKE_SUCCESS = "NetConnection.Connect.Success"
HEARTBEAT_ENABLE_MSG = '{"type":"WSFunc","method":"startHeartbeat","value":true}'
HANDSHAKE_TIMEOUT_SECONDS = 10
CREDENTIAL_TIMEOUT_SECONDS = 15
CREDENTIAL_RETRY_SECONDS = 10
COOLDOWN_SECONDS = 15 * 60
WEEKDAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
TIME_PATTERN = re.compile(r"^([01][0-9]|2[0-3]):[0-5][0-9]$")

# --- Deployment knobs ---
CONFIG_FILE = os.getenv("AC_MONITOR_CONFIG", "rooms.json")
API_HOST = os.getenv("AC_MONITOR_HOST", "0.0.0.0")
API_PORT = int(os.getenv("AC_MONITOR_PORT", 8080))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

logger = logging.getLogger(__name__)

def setup_logging(level=LOG_LEVEL):
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
        stream=sys.stdout,
    )

# --- Thread-local Storage for Async HTTP Client ---
thread_local_data = local()
def get_aiohttp_session():
    if not hasattr(thread_local_data, "aiohttp_session"):
        thread_local_data.aiohttp_session = aiohttp.ClientSession()
    return thread_local_data.aiohttp_session

# ==============================================================================
# 2. ERRORS
# ==============================================================================

class MonitorError(Exception):
    """Base class for everything this service raises on purpose."""

class ConfigError(MonitorError):
    pass

class CredentialError(MonitorError):
    """The room page could not be turned into session credentials."""

class CredentialFetchError(CredentialError):
    pass

class TicketExtractionError(CredentialError):
    def __init__(self, url):
        super().__init__(f"Ticket extraction failed: {url}")

class OriginExtractionError(CredentialError):
    def __init__(self, url):
        super().__init__(f"Origin extraction failed: {url}")

class AppInstanceExtractionError(CredentialError):
    def __init__(self, url):
        super().__init__(f"App instance extraction failed: {url}")

class SessionError(MonitorError):
    pass

class UnsuccessfulHandshake(SessionError):
    pass

class TransportError(SessionError):
    pass

class MessageError(MonitorError):
    """A single inbound frame could not be understood. Never fatal to the session."""

class EmptyMessage(MessageError):
    pass

class InvalidPayload(MessageError):
    pass

class UnknownMethod(MessageError):
    pass

class UnknownCommand(MessageError):
    pass

class MissingParams(MessageError):
    pass

class MissingName(MessageError):
    pass

# ==============================================================================
# 3. DATA MODEL
# ==============================================================================

class RoomStatus(Enum):
    PENDING = "pending"
    OPEN = "open"
    CLOSED = "closed"
    BLOCKED = "blocked"

@dataclass(frozen=True)
class CredentialTriple:
    ticket: str
    origin: str  # host:port
    app_instance: str

@dataclass(frozen=True)
class Meeting:
    day: str   # Mon..Sun
    time: str  # HH:MM, 24-hour, always America/Los_Angeles wall-clock time

    def to_json(self):
        return {'day': self.day, 'time': self.time}

@dataclass(frozen=True)
class Room:
    name: str
    url: str
    meetings: tuple = ()

class RoomRecord:
    """A configured room plus its live status.

    status and last_changed are only ever read or written together under the
    record's lock, so the API never sees one without the other.
    """

    def __init__(self, room, now=None):
        self.room = room
        self._lock = Lock()
        self._status = RoomStatus.PENDING
        self._last_changed = now or datetime.now(timezone.utc)

    @property
    def name(self): return self.room.name

    @property
    def url(self): return self.room.url

    @property
    def status(self):
        return self.snapshot()[0]

    def snapshot(self):
        with self._lock:
            return self._status, self._last_changed

    def set_status(self, status, now=None):
        """Store a new status. Returns True if it differed from the old one.

        last_changed records the last change of status, not the last signal received.
        """
        with self._lock:
            if status == self._status:
                return False
            self._status = status
            self._last_changed = now or datetime.now(timezone.utc)
            return True

    def to_json(self):
        status, last_changed = self.snapshot()
        return {
            'name': self.room.name,
            'times': [m.to_json() for m in self.room.meetings],
            'status': status.value,
            'last_changed': last_changed.isoformat(),
        }

class StatusStore:
    """Fixed set of room records keyed by name. Built once at startup, never resized."""

    def __init__(self, records):
        self._records = {}
        for record in records:
            if record.name in self._records:
                raise ConfigError(f"Duplicate room name: {record.name}")
            self._records[record.name] = record

    @classmethod
    def from_rooms(cls, rooms):
        return cls(RoomRecord(room) for room in rooms)

    def get(self, name):
        return self._records.get(name)

    def __iter__(self):
        return iter(self._records.values())

    def __len__(self):
        return len(self._records)

    def __contains__(self, name):
        return name in self._records

def parse_rooms(data):
    if not isinstance(data, dict) or not isinstance(data.get('rooms'), list):
        raise ConfigError("Room file must be an object with a 'rooms' list")
    rooms, seen = [], set()
    for i, entry in enumerate(data['rooms']):
        if not isinstance(entry, dict): raise ConfigError(f"Room #{i} is not an object")
        name, url = entry.get('name'), entry.get('url')
        if not isinstance(name, str) or not name: raise ConfigError(f"Room #{i} is missing a name")
        if not isinstance(url, str) or not url: raise ConfigError(f"Room '{name}' is missing a url")
        if name in seen: raise ConfigError(f"Duplicate room name: {name}")
        seen.add(name)
        meetings = []
        meetings_raw = entry.get('meetings', [])
        if not isinstance(meetings_raw, list): raise ConfigError(f"Room '{name}' meetings must be a list")
        for meeting in meetings_raw:
            if not isinstance(meeting, dict): raise ConfigError(f"Room '{name}' has a malformed meeting")
            day, time = meeting.get('day'), meeting.get('time')
            if day not in WEEKDAYS: raise ConfigError(f"Room '{name}' has an invalid day: {day!r}")
            if not isinstance(time, str) or not TIME_PATTERN.match(time):
                raise ConfigError(f"Room '{name}' has an invalid time: {time!r}")
            meetings.append(Meeting(day=day, time=time))
        rooms.append(Room(name=name, url=url, meetings=tuple(meetings)))
    return rooms

def load_rooms(path=CONFIG_FILE):
    try:
        with open(path) as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigError(f"Could not read room file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Room file {path} is not valid JSON: {e}") from e
    return parse_rooms(data)

# ==============================================================================
# 4. CREDENTIAL SCRAPING
# ==============================================================================

# The room page embeds the values URL-encoded inside a script payload, so these
# are plain pattern matches rather than HTML parsing.
TICKET_PATTERN = re.compile(r"ticket%3D(?P<ticket>[a-z0-9]+)%26")
ORIGIN_PATTERN = re.compile(r"origins%3D(?P<host>[a-z0-9\-]+)%3A(?P<port>[0-9]+)%2C")
APP_PATTERN = re.compile(r"appInstance%3D(?P<app>[0-9]%2F[0-9A-F]+)%2F")

def parse_credentials(body, url=""):
    ticket = TICKET_PATTERN.search(body)
    if not ticket: raise TicketExtractionError(url)
    origin = ORIGIN_PATTERN.search(body)
    if not origin: raise OriginExtractionError(url)
    app = APP_PATTERN.search(body)
    if not app: raise AppInstanceExtractionError(url)
    return CredentialTriple(
        ticket=ticket['ticket'],
        origin=f"{origin['host']}:{origin['port']}",
        app_instance=app['app'],
    )

async def fetch_credentials(url):
    session = get_aiohttp_session()
    try:
        timeout = aiohttp.ClientTimeout(total=CREDENTIAL_TIMEOUT_SECONDS)
        async with session.get(url, timeout=timeout) as response:
            response.raise_for_status()
            body = await response.text()
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise CredentialFetchError(f"Could not fetch {url}: {e}") from e
    return parse_credentials(body, url)

# ==============================================================================
# 5. PROTOCOL SESSION
# ==============================================================================

def build_handshake(credentials, timestamp_ms):
    message = {
        'type': 'NCFunc',
        'method': 'connect',
        'url': f"{RTMP_SLUG}?rtmp://{credentials.origin}/meetingas3app/{credentials.app_instance}/",
        'params': {
            'ticket': credentials.ticket,
            'reconnection': False,
            'swfUrl': f"{SWF_SLUG}?timestamp={timestamp_ms}",
            'Recording': False,
        },
    }
    return json.dumps(message, separators=(',', ':'))

def handshake_succeeded(raw):
    try:
        response = json.loads(raw)
    except (TypeError, ValueError, RecursionError):
        return False
    if not isinstance(response, dict): return False
    status = response.get('status')
    return isinstance(status, dict) and status.get('code') == HANDSHAKE_SUCCESS

def _now_ms():
    return int(datetime.now(timezone.utc).timestamp() * 1000)

class AcSession:
    """One websocket connection to the meeting platform, for one observation of one room."""

    def __init__(self, ws, label=""):
        self.ws = ws
        self.label = label

    @classmethod
    async def open(cls, credentials, label=""):
        try:
            ws = await websockets.connect(WS_LOCATION, open_timeout=HANDSHAKE_TIMEOUT_SECONDS)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            raise TransportError(f"Could not connect to {WS_LOCATION}: {e}") from e

        session = cls(ws, label)
        try:
            await ws.send(build_handshake(credentials, _now_ms()))
            response = await asyncio.wait_for(ws.recv(), timeout=HANDSHAKE_TIMEOUT_SECONDS)
            if not handshake_succeeded(response):
                raise UnsuccessfulHandshake(f"Platform rejected the connection: {response!r}")
            await ws.send(HEARTBEAT_ENABLE_MSG)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            await session.close()
            raise TransportError(f"Handshake interrupted: {e}") from e
        except UnsuccessfulHandshake:
            await session.close()
            raise
        logger.info(f"[SESSION][{label}] Connected.")
        return session

    async def receive(self):
        """Next text frame, or None once the connection is gone for any reason."""
        try:
            message = await self.ws.recv()
        except (OSError, websockets.exceptions.WebSocketException) as e:
            logger.debug("[SESSION][%s] Connection ended: %s", self.label, e)
            return None
        if isinstance(message, bytes):
            message = message.decode('utf-8', errors='replace')
        logger.debug("[SESSION][%s] RCV'd: %s", self.label, message)
        return message

    async def close(self):
        try:
            await self.ws.close()
        except Exception as e:
            logger.warning(f"[SESSION][{self.label}] Couldn't close socket: {e}")

# ==============================================================================
# 6. MESSAGE INTERPRETER
# ==============================================================================

@dataclass(frozen=True)
class Heartbeat:
    pass

@dataclass(frozen=True)
class Command:
    name: str

HEARTBEAT = Heartbeat()
TIMEOUT_SIGNAL = "connectionTimedOut"

def _object(value, error):
    if not isinstance(value, dict): raise error
    return value

def interpret(raw):
    if not raw: raise EmptyMessage("Received an empty message.")
    try:
        message = json.loads(raw)
    except (ValueError, RecursionError) as e:
        raise InvalidPayload("The received RPC was not valid JSON.") from e
    _object(message, InvalidPayload("The received RPC was not a JSON object."))

    if 'method' not in message: raise UnknownMethod("The RPC has no method.")
    method = message['method']
    if method == 'heartbeat': return HEARTBEAT
    if method != 'onCommand': raise UnknownMethod(f"Unknown method: {method!r}")

    command = message.get('command')
    if command != 'loginHandler': raise UnknownCommand(f"Unknown command: {command!r}")

    if 'params' not in message: raise MissingParams("The RPC has no params.")
    params = _object(message['params'], InvalidPayload("params is not an object."))
    if 'arg_0' not in params: raise MissingParams("The RPC has no arg_0.")
    arg = _object(params['arg_0'], InvalidPayload("arg_0 is not an object."))

    name = arg.get('command')
    if not isinstance(name, str): raise MissingName("Name attribute missing from RPC.")
    return Command(name)

# ==============================================================================
# 7. ROOM STATUS MACHINE
# ==============================================================================

def transition(current, command):
    if command == TIMEOUT_SIGNAL:
        raise ValueError(f"{TIMEOUT_SIGNAL} ends the session and has no status")
    if current in (RoomStatus.OPEN, RoomStatus.BLOCKED):
        return current
    if command == 'accepted': return RoomStatus.OPEN
    if command == 'blocked': return RoomStatus.BLOCKED
    return RoomStatus.CLOSED

# ==============================================================================
# 8. MONITOR SUPERVISOR
# ==============================================================================

class MonitorState(Enum):
    ACQUIRE_CREDENTIALS = "acquire_credentials"
    OPEN_SESSION = "open_session"
    LISTENING = "listening"
    COOLING_DOWN = "cooling_down"

# (state, succeeded) -> (next state, seconds to wait before entering it)
MONITOR_POLICY = {
    (MonitorState.ACQUIRE_CREDENTIALS, True): (MonitorState.OPEN_SESSION, 0),
    (MonitorState.ACQUIRE_CREDENTIALS, False): (MonitorState.ACQUIRE_CREDENTIALS, CREDENTIAL_RETRY_SECONDS),
    (MonitorState.OPEN_SESSION, True): (MonitorState.LISTENING, 0),
    (MonitorState.OPEN_SESSION, False): (MonitorState.ACQUIRE_CREDENTIALS, 0),
    (MonitorState.LISTENING, True): (MonitorState.COOLING_DOWN, 0),
    (MonitorState.LISTENING, False): (MonitorState.ACQUIRE_CREDENTIALS, 0),
    (MonitorState.COOLING_DOWN, True): (MonitorState.ACQUIRE_CREDENTIALS, 0),
}

DETERMINATE = (RoomStatus.OPEN, RoomStatus.BLOCKED)

class RoomMonitor:
    """Keeps one room under observation forever, one session at a time."""

    def __init__(self, record, fetch_credentials=fetch_credentials, open_session=AcSession.open, sleep=asyncio.sleep):
        self.record = record
        self.fetch_credentials = fetch_credentials
        self.open_session = open_session
        self.sleep = sleep
        self.state = MonitorState.ACQUIRE_CREDENTIALS
        self.credentials = None
        self.session = None

    @property
    def tag(self): return f"[MONITOR][{self.record.name}]"

    async def run(self):
        logger.info(f"{self.tag} Monitoring {self.record.url}")
        while True:
            try:
                await self.step()
            except Exception:
                logger.exception(f"{self.tag} Unhandled error, restarting in {CREDENTIAL_RETRY_SECONDS}s")
                await self._drop_session()
                self.state = MonitorState.ACQUIRE_CREDENTIALS
                await self.sleep(CREDENTIAL_RETRY_SECONDS)

    async def step(self):
        handler = {
            MonitorState.ACQUIRE_CREDENTIALS: self._acquire_credentials,
            MonitorState.OPEN_SESSION: self._open_session,
            MonitorState.LISTENING: self._listen,
            MonitorState.COOLING_DOWN: self._cool_down,
        }[self.state]
        succeeded = await handler()
        next_state, delay = MONITOR_POLICY[(self.state, succeeded)]
        if delay: await self.sleep(delay)
        self.state = next_state
        return next_state

    async def _acquire_credentials(self):
        try:
            self.credentials = await self.fetch_credentials(self.record.url)
            return True
        except CredentialError as e:
            logger.warning(f"{self.tag} {e} Retrying in {CREDENTIAL_RETRY_SECONDS}s.")
            return False

    async def _open_session(self):
        credentials, self.credentials = self.credentials, None
        try:
            self.session = await self.open_session(credentials, label=self.record.name)
            return True
        except SessionError as e:
            logger.warning(f"{self.tag} Could not open session: {e}")
            return False

    async def _listen(self):
        try:
            succeeded = await self.listen(self.session)
        finally:
            await self._drop_session()
        return succeeded

    async def _cool_down(self):
        logger.info(f"{self.tag} Status settled, checking again in {COOLDOWN_SECONDS}s.")
        await self.sleep(COOLDOWN_SECONDS)
        return True

    async def _drop_session(self):
        session, self.session = self.session, None
        if session is not None:
            await session.close()

    async def listen(self, session):
        """Feed frames through the status machine. True once the room is open or blocked."""
        # Every session observes from scratch; the record keeps the last known value meanwhile.
        status = RoomStatus.PENDING
        while status not in DETERMINATE:
            raw = await session.receive()
            if raw is None:
                logger.info(f"{self.tag} Socket closed.")
                return False
            try:
                envelope = interpret(raw)
            except MessageError as e:
                logger.warning("%s Unable to handle RPC, ignoring: %s", self.tag, e)
                continue
            if isinstance(envelope, Heartbeat):
                logger.debug("%s Received heartbeat.", self.tag)
                continue
            if envelope.name == TIMEOUT_SIGNAL:
                logger.info(f"{self.tag} Timed out.")
                return False
            status = transition(status, envelope.name)
            if self.record.set_status(status):
                logger.info(f"{self.tag} Room changed: {status.value} ({envelope.name})")
        return True

# ==============================================================================
# 9. READ API
# ==============================================================================

def create_app(store):
    app = Flask(__name__)

    @app.route('/api/v1/all', methods=['GET'])
    def all_rooms():
        return jsonify({'rooms': [record.to_json() for record in store]})

    @app.route('/api/v1/room/<name>', methods=['GET'])
    def read_room(name):
        record = store.get(name)
        if not record: return jsonify({'error': 'room not found'}), 404
        return jsonify({'error': 'none', 'room': record.to_json()})

    return app

# ==============================================================================
# 10. MAIN EXECUTION
# ==============================================================================

async def monitor_all(store, **monitor_kwargs):
    logger.info(f"[MAIN] Monitoring {len(store)} rooms...")
    await asyncio.gather(*(RoomMonitor(record, **monitor_kwargs).run() for record in store))

def run_api(store, host=API_HOST, port=API_PORT):
    serve(create_app(store), host=host, port=port)

def main():
    setup_logging()
    logger.info("[MAIN] AC Monitor Service starting...")
    try:
        store = StatusStore.from_rooms(load_rooms(CONFIG_FILE))
    except ConfigError as e:
        logger.error(f"[MAIN] {e}")
        sys.exit(1)
    api_thread = Thread(target=run_api, args=(store,), daemon=True)
    api_thread.start()
    logger.info(f"[MAIN] API server started on http://{API_HOST}:{API_PORT}")
    try:
        asyncio.run(monitor_all(store))
    except KeyboardInterrupt:
        logger.info("[MAIN] Service stopped by user. Shutting down.")

if __name__ == "__main__":
    main()
