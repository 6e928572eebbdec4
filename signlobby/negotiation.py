# ============================================
#   SignLobby — Peer Negotiation Engine
#   One peer connection per client, offer/answer/candidate exchange
# ============================================

import threading

from signlobby.config import peer_configuration
from signlobby.logger import log_info, log_warning, log_debug, log_exception


OFFER = "offer"
ANSWER = "answer"
CANDIDATE = "candidate"


def signal_kind(signal):
    """
    Classify a webrtc-signal payload:
        {"sdp": {"type": "offer", ...}}   → "offer"
        {"sdp": {"type": "answer", ...}}  → "answer"
        {"candidate": {...}}              → "candidate"
    Anything else → None.
    """
    if not isinstance(signal, dict):
        return None

    sdp = signal.get("sdp")
    if isinstance(sdp, dict) and sdp.get("type") in (OFFER, ANSWER):
        return sdp["type"]

    if signal.get("candidate"):
        return CANDIDATE

    return None


class PeerNegotiator:
    """
    Drives offer/answer/candidate exchange for the current call.

    The peer connection comes from ``pc_factory(configuration)`` and must
    provide ``add_track``, ``add_transceiver``, ``create_offer``,
    ``create_answer``, ``set_local_description``, ``set_remote_description``,
    ``add_ice_candidate``, ``restart_ice``, ``set_sending``, ``close``, the
    ``local_description`` / ``remote_description`` / ``supports_ice_restart``
    attributes and the ``on_ice_candidate``, ``on_ice_connection_state_change``
    and ``on_track`` callback slots. Session descriptions are ``{"type": ..., "sdp": ...}`` dicts.

    ``send_signal(to_user_id, signal, call_id)`` hands signals to the lobby.
    """

    def __init__(self, send_signal, pc_factory, ice_servers=None, on_status=None):
        self._send_signal = send_signal
        self._pc_factory = pc_factory
        self._on_status = on_status
        self._lock = threading.RLock()

        self.ice_servers = ice_servers
        self.pc = None
        self.local_stream = None
        self.remote_tracks = []
        self.remote_user_id = None
        self.remote_user_name = None
        self.call_id = None
        self.connection_state = "new"

        self.audio_muted = False
        self.video_hidden = False

        self._ice_restarted = False
        self._pending_candidates = []

        # Local candidates wait until the description they belong to is sent
        self._holding = False
        self._held_candidates = []

    # -----------------------------------------
    # Local media (independent of any call)
    # -----------------------------------------
    def attach_local_media(self, stream):
        self.local_stream = stream

    def stop_local_media(self):
        if self.local_stream is not None:
            self.local_stream.stop()
            self.local_stream = None

    # -----------------------------------------
    # In-call controls
    # -----------------------------------------
    def set_audio_muted(self, muted):
        """
        Stop or resume sending the local audio. Returns False when there is
        no local audio track.
        """
        with self._lock:
            if not self._set_local_kind("audio", not muted):
                return False
            self.audio_muted = bool(muted)
            self._update_status("Audio muted" if muted else "Audio unmuted")
            return True

    def set_video_hidden(self, hidden):
        with self._lock:
            if not self._set_local_kind("video", not hidden):
                return False
            self.video_hidden = bool(hidden)
            self._update_status("Video hidden" if hidden else "Video visible")
            return True

    def _local_tracks(self, kind):
        if self.local_stream is None:
            return []
        return [t for t in self.local_stream.get_tracks() if getattr(t, "kind", None) == kind]

    def _set_local_kind(self, kind, enabled):
        tracks = self._local_tracks(kind)
        if not tracks:
            return False

        for track in tracks:
            track.enabled = enabled
        if self.pc is not None:
            self.pc.set_sending(kind, enabled)
        return True

    def _reset_local_controls(self):
        for kind in ("audio", "video"):
            for track in self._local_tracks(kind):
                track.enabled = True
        self.audio_muted = False
        self.video_hidden = False

    def _update_status(self, message):
        log_info("negotiation", message)
        if self._on_status:
            self._on_status(message)

    # -----------------------------------------
    # Peer connection lifecycle
    # -----------------------------------------
    def _new_peer_connection(self, receive_only=False):
        # Never two connections at once
        self._close_peer_connection()

        pc = self._pc_factory(peer_configuration(self.ice_servers))
        pc.on_ice_candidate = self._on_local_candidate
        pc.on_ice_connection_state_change = self._on_ice_state
        pc.on_track = self._on_remote_track

        if self.local_stream is not None:
            for track in self.local_stream.get_tracks():
                pc.add_track(track)
        elif receive_only:
            pc.add_transceiver("audio", "recvonly")
            pc.add_transceiver("video", "recvonly")

        # Muted before the connection existed
        if self.audio_muted:
            pc.set_sending("audio", False)
        if self.video_hidden:
            pc.set_sending("video", False)

        self.pc = pc
        self.connection_state = "new"
        self._ice_restarted = False
        self._pending_candidates = []
        return pc

    def _close_peer_connection(self):
        pc, self.pc = self.pc, None
        if pc is None:
            return

        pc.on_ice_candidate = None
        pc.on_ice_connection_state_change = None
        pc.on_track = None

        try:
            pc.close()
        except Exception:
            log_exception("negotiation", "Error closing peer connection")

    def _send(self, signal):
        self._send_signal(self.remote_user_id, signal, self.call_id)

    def _offer_signal(self):
        offer = self.pc.create_offer()
        self.pc.set_local_description(offer)
        return {"sdp": self.pc.local_description or offer, "type": OFFER}

    def _answer_signal(self):
        answer = self.pc.create_answer()
        self.pc.set_local_description(answer)
        return {"sdp": self.pc.local_description or answer}

    def _send_description(self, make_signal):
        """
        Create and send a local description; candidates gathered meanwhile
        follow it on the wire.
        """
        self._holding = True
        try:
            self._send(make_signal())
        finally:
            self._holding = False
            held, self._held_candidates = self._held_candidates, []

        for candidate in held:
            self._send({"candidate": candidate})

    # -----------------------------------------
    # Caller path
    # -----------------------------------------
    def start_call(self, remote_user_id, call_id, remote_user_name=None):
        with self._lock:
            self.remote_user_id = remote_user_id
            self.remote_user_name = remote_user_name or remote_user_id
            self.call_id = call_id

            self._update_status(f"Connecting to {self.remote_user_name}...")

            try:
                self._new_peer_connection(receive_only=True)
                self._send_description(self._offer_signal)
                log_debug("negotiation", f"Offer sent for call {call_id}")
                return True
            except Exception:
                log_exception("negotiation", f"Error creating/sending offer for call {call_id}")
                self.connection_state = "failed"
                self._update_status("Could not start the call")
                return False

    # -----------------------------------------
    # Callee path
    # -----------------------------------------
    def expect_call(self, remote_user_id, call_id, remote_user_name=None):
        """
        Callee side after call-started: remember who will send the offer.
        """
        with self._lock:
            if self.pc is not None and self.call_id != call_id:
                self._close_peer_connection()

            self.remote_user_id = remote_user_id
            self.remote_user_name = remote_user_name or remote_user_id
            self.call_id = call_id
            self._update_status(f"Waiting for {self.remote_user_name}...")

    def _answer_offer(self, description):
        pc = self._new_peer_connection()
        pc.set_remote_description(description)
        self._flush_pending_candidates()
        self._send_description(self._answer_signal)

    # -----------------------------------------
    # Incoming signals
    # -----------------------------------------
    def handle_signal(self, data):
        with self._lock:
            signal = data.get("signal")
            from_user_id = data.get("fromUserId")
            call_id = data.get("callId")
            kind = signal_kind(signal)

            if self.call_id and call_id and call_id != self.call_id:
                log_warning("negotiation", f"Signal for call {call_id} ignored (current call {self.call_id})")
                return False

            if self.remote_user_id and from_user_id and from_user_id != self.remote_user_id:
                log_warning("negotiation", f"Signal from unexpected user {from_user_id} ignored")
                return False

            try:
                if kind == OFFER and self.pc is None:
                    self.remote_user_id = self.remote_user_id or from_user_id
                    self.remote_user_name = self.remote_user_name or from_user_id
                    self.call_id = self.call_id or call_id
                    log_info("negotiation", f"Incoming offer from {from_user_id}, creating answer...")
                    self._answer_offer(signal["sdp"])
                    return True

                if self.pc is None:
                    log_warning("negotiation", f"Received {kind or 'unknown'} signal but no peer connection exists")
                    return False

                if kind in (OFFER, ANSWER):
                    self.pc.set_remote_description(signal["sdp"])
                    self._flush_pending_candidates()

                    # Renegotiation from the remote side
                    if kind == OFFER:
                        self._send_description(self._answer_signal)
                    return True

                if kind == CANDIDATE:
                    if self.pc.remote_description is None:
                        self._pending_candidates.append(signal["candidate"])
                    else:
                        self.pc.add_ice_candidate(signal["candidate"])
                    return True

                log_warning("negotiation", f"Unknown signal ignored: {signal!r}")
                return False

            except Exception:
                log_exception("negotiation", f"Error processing {kind} signal for call {call_id}")
                return False

    def _flush_pending_candidates(self):
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            self.pc.add_ice_candidate(candidate)

    # -----------------------------------------
    # Peer connection callbacks
    # -----------------------------------------
    def _on_local_candidate(self, candidate):
        if candidate is None:
            log_debug("negotiation", "All ICE candidates gathered")
            return
        if self._holding:
            self._held_candidates.append(candidate)
        elif self.remote_user_id:
            self._send({"candidate": candidate})

    def _on_ice_state(self, state):
        with self._lock:
            if self.pc is None:
                return

            self.connection_state = state
            self._update_status(f"ICE: {state}")

            if state != "failed":
                return

            # One restart per peer connection, then leave it to the user
            if self._ice_restarted:
                self._update_status("Connection failed")
                return

            if not self.pc.supports_ice_restart:
                log_warning("negotiation", "Peer connection cannot restart ICE")
                self._update_status("Connection failed")
                return

            self._ice_restarted = True
            try:
                self.pc.restart_ice()
                self._update_status("ICE failed - trying to recover...")
            except Exception:
                log_exception("negotiation", "ICE restart failed")
                self._update_status("Connection failed")

    def _on_remote_track(self, track):
        self.remote_tracks.append(track)
        self._update_status(f"Connected to {self.remote_user_name}!")

    # -----------------------------------------
    # Teardown
    # -----------------------------------------
    def end_local_call(self):
        with self._lock:
            had_call = self.pc is not None or self.call_id is not None

            self._close_peer_connection()
            self.remote_tracks = []
            self._reset_local_controls()
            self._pending_candidates = []
            self.remote_user_id = None
            self.remote_user_name = None
            self.call_id = None
            self.connection_state = "closed"

            if had_call:
                self._update_status("Call ended. Back to lobby.")
