# ============================================
#   SignLobby — Lobby Client
#   Per-tab call state machine over Socket.IO
# ============================================

import threading
import time

import socketio

from signlobby.calls import generate_call_id
from signlobby.negotiation import PeerNegotiator
from signlobby.config import RING_TIMEOUT_SECONDS, ACK_TIMEOUT_SECONDS, ACK_RETRIES
from signlobby.logger import log_info, log_warning, log_debug


# =====================================================
#   LOCAL CALL STATES
# =====================================================

IDLE = "idle"
REQUESTING = "requesting"
RINGING = "ringing"
IN_CALL = "in-call"

CALLER = "caller"
CALLEE = "callee"


class LobbyListener:
    """
    UI hooks. Every method is optional; the default does nothing.
    """

    def on_roster(self, users):
        pass

    def on_incoming_call(self, call):
        pass

    def on_call_state(self, state, call):
        pass

    def on_call_controls(self, enabled):
        pass

    def on_notice(self, message):
        pass


class LobbyClient:
    """
    Lobby membership plus the local side of the call protocol:

        idle → requesting → in-call → idle
        idle → ringing → in-call → idle

    A ringing call rejects itself after ``ring_timeout`` seconds. Every
    return to idle tears down the peer negotiation and forgets the call id.
    """

    def __init__(self, user_id, user_name, pc_factory=None, sio=None, listener=None,
                 id_token=None, ice_servers=None, ring_timeout=RING_TIMEOUT_SECONDS,
                 ack_timeout=ACK_TIMEOUT_SECONDS, ack_retries=ACK_RETRIES):
        self.user_id = str(user_id)
        self.user_name = user_name or self.user_id
        self.id_token = id_token
        self.listener = listener or LobbyListener()

        self.ring_timeout = ring_timeout
        self.ack_timeout = ack_timeout
        self.ack_retries = ack_retries

        self.sio = sio if sio is not None else socketio.Client()

        self.negotiator = None
        if pc_factory is not None:
            self.negotiator = PeerNegotiator(
                self._send_signal,
                pc_factory,
                ice_servers=ice_servers,
                on_status=self._notice,
            )

        self.call_state = IDLE
        self.active_call = None
        self.users = []
        self.call_controls_enabled = False
        self.call_started_at = None
        self.last_call_duration = None

        self._lock = threading.RLock()
        self._ring_timer = None

        self._register_handlers()

    # -----------------------------------------
    # Socket wiring
    # -----------------------------------------
    def _register_handlers(self):
        self.sio.on("connect", self._on_connect)
        self.sio.on("disconnect", self._on_disconnect)
        self.sio.on("lobby-welcome", self._on_lobby_welcome)
        self.sio.on("users-update", self._on_users_update)
        self.sio.on("incoming-call", self._on_incoming_call)
        self.sio.on("call-request-sent", self._on_call_request_sent)
        self.sio.on("call-started", self._on_call_started)
        self.sio.on("call-rejected", self._on_call_rejected)
        self.sio.on("call-ended", self._on_call_ended)
        self.sio.on("peer-disconnected", self._on_peer_disconnected)
        self.sio.on("webrtc-signal", self._on_webrtc_signal)
        self.sio.on("call-error", self._on_call_error)

    def connect(self, url, **kwargs):
        self.sio.connect(url, **kwargs)

    def _emit(self, event, data=None, callback=None):
        if not self.sio.connected:
            log_warning("lobby_client", f"Cannot send {event}: socket not connected")
            return False
        if callback is None:
            self.sio.emit(event, data)
        else:
            self.sio.emit(event, data, callback=callback)
        return True

    def _emit_reliable(self, event, data, attempt=0):
        """
        Emit with acknowledgement; resend a bounded number of times.
        The server treats repeated accept / reject / end as no-ops.
        """
        acked = threading.Event()

        def _on_ack(*args):
            acked.set()
            reply = args[0] if args else None
            if isinstance(reply, dict) and not reply.get("ok", False):
                log_warning("lobby_client", f"{event} refused by server: {reply}")

        def _check():
            if acked.is_set():
                return
            if attempt >= self.ack_retries:
                log_warning("lobby_client", f"No ack for {event} after {attempt + 1} attempt(s), giving up")
                return
            log_warning("lobby_client", f"No ack for {event}, retrying ({attempt + 1}/{self.ack_retries})")
            self._emit_reliable(event, data, attempt + 1)

        timer = threading.Timer(self.ack_timeout, _check)
        timer.daemon = True
        timer.start()

        if not self._emit(event, data, callback=_on_ack):
            timer.cancel()

    def _send_signal(self, to_user_id, signal, call_id):
        self._emit("webrtc-signal", {
            "toUserId": to_user_id,
            "signal": signal,
            "callId": call_id,
        })

    def _notice(self, message):
        self.listener.on_notice(message)

    def _notify_state(self):
        call = dict(self.active_call) if self.active_call else None
        self.listener.on_call_state(self.call_state, call)

    # -----------------------------------------
    # Lobby membership
    # -----------------------------------------
    def join(self):
        payload = {"userId": self.user_id, "userName": self.user_name}
        if self.id_token:
            payload["idToken"] = self.id_token
        return self._emit("join-lobby", payload)

    def refresh_users(self):
        return self._emit("request-users-update")

    def leave(self):
        with self._lock:
            if self.active_call is not None:
                self.end_call()
            self._reset_call_state()

        self._emit("leave-lobby")
        if self.sio.connected:
            self.sio.disconnect()

    def _on_connect(self):
        log_info("lobby_client", "Connected to lobby server")
        self.join()

    def _on_disconnect(self, *args):
        with self._lock:
            if self.call_state != IDLE:
                self._notice("Connection to the lobby lost")
                self._reset_call_state()

    def _on_lobby_welcome(self, data):
        self._notice(data.get("message", "Welcome to the lobby"))

        ice_servers = data.get("iceServers")
        if self.negotiator is not None and self.negotiator.ice_servers is None and ice_servers:
            self.negotiator.ice_servers = ice_servers

        self._on_users_update(data.get("users", []))

    def _on_users_update(self, users):
        self.users = [u for u in users or [] if u.get("userId") != self.user_id]
        self.listener.on_roster(list(self.users))

    # -----------------------------------------
    # idle → requesting
    # -----------------------------------------
    def request_call(self, to_user_id, to_user_name=None):
        with self._lock:
            if self.call_state != IDLE:
                self._notice("You're already in a call!")
                return None

            call_id = generate_call_id()
            self.call_state = REQUESTING
            self.active_call = {
                "callId": call_id,
                "role": CALLER,
                "remoteUserId": str(to_user_id),
                "remoteUserName": to_user_name or self._name_of(to_user_id),
            }

            self._emit("request-call", {
                "toUserId": str(to_user_id),
                "fromUserId": self.user_id,
                "fromUserName": self.user_name,
                "callId": call_id,
            })

            self._notice(f"Calling {self.active_call['remoteUserName']}...")
            self._notify_state()
            return call_id

    def _name_of(self, user_id):
        for u in self.users:
            if u.get("userId") == str(user_id):
                return u.get("userName")
        return str(user_id)

    def _on_call_request_sent(self, data):
        log_debug("lobby_client", f"Call request sent to {data.get('toUserId')}")
        self._notice("Request sent...")

    # -----------------------------------------
    # idle → ringing
    # -----------------------------------------
    def _on_incoming_call(self, data):
        with self._lock:
            call_id = data.get("callId")

            # First come, first served: a second caller is turned away
            if self.call_state != IDLE:
                log_info("lobby_client", f"Busy, rejecting incoming call {call_id}")
                self._emit("reject-call", {"callId": call_id, "fromUserId": data.get("fromUserId")})
                return

            self.call_state = RINGING
            self.active_call = {
                "callId": call_id,
                "role": CALLEE,
                "remoteUserId": data.get("fromUserId"),
                "remoteUserName": data.get("fromUserName") or data.get("fromUserId"),
            }
            self._start_ring_timer(call_id)

            self.listener.on_incoming_call(dict(self.active_call))
            self._notify_state()

    def _start_ring_timer(self, call_id):
        self._cancel_ring_timer()
        self._ring_timer = threading.Timer(self.ring_timeout, self._ring_expired, args=(call_id,))
        self._ring_timer.daemon = True
        self._ring_timer.start()

    def _cancel_ring_timer(self):
        if self._ring_timer is not None:
            self._ring_timer.cancel()
            self._ring_timer = None

    def _ring_expired(self, call_id):
        with self._lock:
            if self.call_state != RINGING or not self._is_active(call_id):
                return
            log_info("lobby_client", f"Call {call_id} not answered in {self.ring_timeout}s")
            self._notice("Missed call")
            self.reject_call()

    # -----------------------------------------
    # ringing → in-call / idle
    # -----------------------------------------
    def accept_call(self):
        with self._lock:
            if self.call_state != RINGING:
                return False

            self._cancel_ring_timer()
            call = self.active_call

            self.call_state = IN_CALL
            self._set_call_controls(True)

            self._emit_reliable("accept-call", {
                "callId": call["callId"],
                "fromUserId": call["remoteUserId"],
                "toUserId": self.user_id,
            })

            self._notice(f"In call with {call['remoteUserName']}")
            self._notify_state()
            return True

    def reject_call(self):
        with self._lock:
            if self.call_state != RINGING:
                return False

            call = self.active_call
            self._emit_reliable("reject-call", {
                "callId": call["callId"],
                "fromUserId": call["remoteUserId"],
            })
            self._reset_call_state()
            return True

    # -----------------------------------------
    # requesting / ringing → in-call
    # -----------------------------------------
    def _on_call_started(self, data):
        with self._lock:
            call_id = data.get("callId")

            if not self._is_active(call_id):
                # We already gave up on this call (timeout, hang-up): close it
                log_warning("lobby_client", f"call-started for unknown call {call_id}, ending it")
                self._emit_reliable("end-call", {"callId": call_id})
                return

            other = next(
                (u for u in data.get("users", []) if u.get("userId") != self.user_id),
                None,
            )
            call = self.active_call
            call["roomId"] = data.get("roomId")
            if other:
                call["remoteUserId"] = other.get("userId")
                call["remoteUserName"] = other.get("userName") or other.get("userId")

            self.call_state = IN_CALL
            self._set_call_controls(True)
            self.call_started_at = time.monotonic()
            self._notice(f"In call with {call['remoteUserName']}")

            if self.negotiator is not None:
                if call["role"] == CALLER:
                    self.negotiator.start_call(call["remoteUserId"], call_id, call["remoteUserName"])
                else:
                    self.negotiator.expect_call(call["remoteUserId"], call_id, call["remoteUserName"])

            self._notify_state()

    def _on_webrtc_signal(self, data):
        if self.negotiator is None:
            return

        with self._lock:
            # Signals outside the current call would build a connection nobody closes
            if self.call_state != IN_CALL or not self._is_active(data.get("callId")):
                log_debug("lobby_client", f"Signal for call {data.get('callId')} dropped ({self.call_state})")
                return
            self.negotiator.handle_signal(data)

    # -----------------------------------------
    # * → idle
    # -----------------------------------------
    def end_call(self):
        with self._lock:
            if self.active_call is None:
                return False
            if self.call_state == RINGING:
                return self.reject_call()

            self._emit_reliable("end-call", {"callId": self.active_call["callId"]})
            self._reset_call_state()
            return True

    def _on_call_rejected(self, data):
        self._remote_reset(data, "Call rejected")

    def _on_call_ended(self, data):
        self._remote_reset(data, "Call ended")

    def _on_peer_disconnected(self, data):
        self._remote_reset(data, "Peer disconnected")

    def _on_call_error(self, data):
        with self._lock:
            call_id = data.get("callId")
            message = data.get("message", "Unknown error")
            self._notice(f"Call error: {message}")

            if self.active_call is None:
                return
            if call_id is None and self.call_state == IN_CALL:
                return
            if call_id is not None and not self._is_active(call_id):
                return

            self._reset_call_state()

    def _remote_reset(self, data, title):
        with self._lock:
            call_id = data.get("callId")
            if self.active_call is None:
                return
            if call_id is not None and not self._is_active(call_id):
                log_debug("lobby_client", f"{title} for other call {call_id} ignored")
                return

            self._notice(f"{title}: {data.get('message', '')}".rstrip(": "))
            self._reset_call_state()

    # -----------------------------------------
    # In-call controls
    # -----------------------------------------
    @property
    def call_duration(self):
        """
        Seconds since call-started, or None outside a call.
        """
        if self.call_started_at is None:
            return None
        return time.monotonic() - self.call_started_at

    def set_audio_muted(self, muted):
        with self._lock:
            if not self._controls_available():
                return False
            return self.negotiator.set_audio_muted(muted)

    def set_video_hidden(self, hidden):
        with self._lock:
            if not self._controls_available():
                return False
            return self.negotiator.set_video_hidden(hidden)

    def toggle_audio_mute(self):
        with self._lock:
            muted = self.negotiator is not None and self.negotiator.audio_muted
            return self.set_audio_muted(not muted)

    def toggle_video_hide(self):
        with self._lock:
            hidden = self.negotiator is not None and self.negotiator.video_hidden
            return self.set_video_hidden(not hidden)

    def _controls_available(self):
        if self.call_state != IN_CALL or self.negotiator is None:
            self._notice("No active call")
            return False
        return True

    def _is_active(self, call_id):
        return self.active_call is not None and self.active_call.get("callId") == call_id

    def _set_call_controls(self, enabled):
        self.call_controls_enabled = enabled
        self.listener.on_call_controls(enabled)

    def _reset_call_state(self):
        self._cancel_ring_timer()

        if self.negotiator is not None:
            self.negotiator.end_local_call()

        if self.call_started_at is not None:
            self.last_call_duration = time.monotonic() - self.call_started_at
            self.call_started_at = None
            minutes, seconds = divmod(int(self.last_call_duration), 60)
            self._notice(f"Call lasted {minutes}:{seconds:02d}")

        was_idle = self.call_state == IDLE and self.active_call is None
        self.call_state = IDLE
        self.active_call = None
        self._set_call_controls(False)

        if not was_idle:
            self._notify_state()
