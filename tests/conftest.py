import os
import tempfile

# Keep test logs out of the project tree
os.environ.setdefault("SIGNLOBBY_DATA_DIR", tempfile.mkdtemp(prefix="signlobby-tests-"))
os.environ.setdefault("SIGNLOBBY_LOG_CONSOLE", "false")

import pytest
from flask import Flask
from flask_socketio import SocketIO

from signlobby.router import CallRouter
from signlobby.sockets_lobby import register_lobby_handlers
from signlobby.sockets_call import register_call_handlers, reset_rate_limits


@pytest.fixture(autouse=True)
def _fresh_rate_limits():
    reset_rate_limits()
    yield
    reset_rate_limits()


class Server:
    def __init__(self, notify_peer_disconnect=True):
        self.app = Flask(__name__)
        self.app.config["SECRET_KEY"] = "test"
        self.socketio = SocketIO(self.app, async_mode="threading")
        self.router = CallRouter(
            self.socketio,
            ice_servers=[],
            notify_peer_disconnect=notify_peer_disconnect,
        )
        register_lobby_handlers(self.socketio, self.router)
        register_call_handlers(self.socketio, self.router)

    def client(self):
        return self.socketio.test_client(self.app)


@pytest.fixture
def server():
    return Server()


@pytest.fixture
def legacy_server():
    return Server(notify_peer_disconnect=False)


def join(tc, user_id, user_name=None):
    ack = tc.emit("join-lobby", {"userId": user_id, "userName": user_name or user_id}, callback=True)
    assert ack == {"ok": True}
    return ack


# =====================================================
#   socketio.Client stand-in backed by a test client
# =====================================================

class BridgeSocket:
    """
    Implements the slice of ``socketio.Client`` that LobbyClient uses, on
    top of a Flask-SocketIO test client. Server events are delivered when
    ``pump()`` is called.
    """

    def __init__(self, server):
        self.server = server
        self.handlers = {}
        self.tc = None
        self.sent = []

    @property
    def connected(self):
        return self.tc is not None and self.tc.is_connected()

    def on(self, event, handler):
        self.handlers[event] = handler

    def connect(self, url=None, **kwargs):
        self.tc = self.server.client()
        self._dispatch("connect")

    def disconnect(self):
        if self.tc is not None and self.tc.is_connected():
            self.tc.disconnect()
            self._dispatch("disconnect")

    def emit(self, event, data=None, namespace=None, callback=None):
        self.sent.append((event, data))
        args = [] if data is None else [data]

        if callback is None:
            self.tc.emit(event, *args)
            return

        ack = self.tc.emit(event, *args, callback=True)
        if ack is None or ack == []:
            callback()
        else:
            callback(ack)

    def pump(self):
        if not self.connected:
            return 0
        events = self.tc.get_received()
        for e in events:
            self._dispatch(e["name"], *e["args"])
        return len(events)

    def _dispatch(self, event, *args):
        handler = self.handlers.get(event)
        if handler is not None:
            handler(*args)

    def sent_events(self, name):
        return [data for event, data in self.sent if event == name]


def settle(*sockets, rounds=50):
    """
    Deliver queued server events until every socket is quiet.
    """
    for _ in range(rounds):
        if not sum(s.pump() for s in sockets):
            return
    raise AssertionError("sockets did not settle")


# =====================================================
#   Peer connection double
# =====================================================

class FakePeerConnection:
    """
    In-memory peer connection: gathers one host candidate when the local
    description is set and "connects" once both descriptions and at least
    one remote candidate are in place.
    """

    def __init__(self, configuration, name="pc"):
        self.configuration = configuration
        self.name = name

        self.on_ice_candidate = None
        self.on_ice_connection_state_change = None
        self.on_track = None

        self.local_description = None
        self.remote_description = None
        self.tracks = []
        self.transceivers = []
        self.remote_candidates = []
        self.restarts = 0
        self.supports_ice_restart = True
        self.sending = {}
        self.closed = False
        self.connected = False

    def add_track(self, track):
        self.tracks.append(track)

    def add_transceiver(self, kind, direction="sendrecv"):
        self.transceivers.append((kind, direction))

    def create_offer(self):
        return {"type": "offer", "sdp": f"v=0 offer from {self.name}"}

    def create_answer(self):
        if self.remote_description is None:
            raise RuntimeError("no remote offer")
        return {"type": "answer", "sdp": f"v=0 answer from {self.name}"}

    def set_local_description(self, desc):
        self.local_description = dict(desc)
        if self.on_ice_candidate:
            self.on_ice_candidate({
                "candidate": f"candidate:1 1 udp 2122260223 10.0.0.1 5000 typ host ({self.name})",
                "sdpMid": "0",
                "sdpMLineIndex": 0,
            })
            self.on_ice_candidate(None)
        self._maybe_connect()

    def set_remote_description(self, desc):
        self.remote_description = dict(desc)
        self._maybe_connect()

    def add_ice_candidate(self, candidate):
        if self.remote_description is None:
            raise RuntimeError("candidate before remote description")
        self.remote_candidates.append(candidate)
        self._maybe_connect()

    def set_sending(self, kind, enabled):
        self.sending[kind] = enabled

    def restart_ice(self):
        self.restarts += 1

    def close(self):
        self.closed = True

    def fail(self):
        if self.on_ice_connection_state_change:
            self.on_ice_connection_state_change("failed")

    def _maybe_connect(self):
        if self.connected or self.closed:
            return
        if self.local_description and self.remote_description and self.remote_candidates:
            self.connected = True
            if self.on_ice_connection_state_change:
                self.on_ice_connection_state_change("connected")
            if self.on_track:
                self.on_track(f"remote-video@{self.name}")


class PeerConnectionFactory:
    def __init__(self, name="pc"):
        self.name = name
        self.created = []

    def __call__(self, configuration):
        pc = FakePeerConnection(configuration, name=f"{self.name}{len(self.created)}")
        self.created.append(pc)
        return pc

    @property
    def last(self):
        return self.created[-1] if self.created else None


class FakeTrack:
    def __init__(self, kind):
        self.kind = kind
        self.enabled = True

    def __repr__(self):
        return f"FakeTrack({self.kind!r})"


class FakeStream:
    def __init__(self, *kinds):
        self.tracks = [FakeTrack(kind) for kind in kinds or ("audio", "video")]
        self.stopped = False

    def get_tracks(self):
        return list(self.tracks)

    def stop(self):
        self.stopped = True


def pick(events, name):
    """
    First argument of every event called ``name`` in a drained event list.
    """
    return [e["args"][0] if e["args"] else None for e in events if e["name"] == name]
