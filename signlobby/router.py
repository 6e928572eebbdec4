# ============================================
#     SignLobby — Call Signaling Router
#     Presence registry + call sessions → Socket.IO events
# ============================================

from datetime import datetime, timezone

from signlobby.registry import SessionRegistry, ONLINE, BUSY, IN_CALL
from signlobby.calls import (
    CallBook,
    generate_call_id,
    REQUESTED,
    ACCEPTED,
    ACTIVE,
    REJECTED,
    ENDED,
)
from signlobby.config import (
    ICE_SERVERS,
    NOTIFY_PEER_DISCONNECT,
    CALL_REQUEST_TTL_SECONDS,
)
from signlobby.logger import log_info, log_warning, log_debug


NAMESPACE = "/"

# request_call outcomes
DELIVERED = "delivered"
TARGET_UNREACHABLE = "target-unreachable"
TARGET_BUSY = "target-busy"
REFUSED = "refused"

MSG_UNAVAILABLE = "User is not available"
MSG_BUSY = "User is busy"
MSG_STALE = "Call is no longer available"


def _utc_now_iso():
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class CallRouter:
    """
    Owns the presence registry and the call book. Every Socket.IO handler
    goes through one of the public methods below; each runs to completion
    before the next event is handled, so no locking is needed.
    """

    def __init__(self, socketio, registry=None, calls=None, ice_servers=None,
                 notify_peer_disconnect=NOTIFY_PEER_DISCONNECT):
        self.socketio = socketio
        self.registry = registry if registry is not None else SessionRegistry()
        self.calls = calls if calls is not None else CallBook()
        self.ice_servers = list(ice_servers if ice_servers is not None else ICE_SERVERS)
        self.notify_peer_disconnect = notify_peer_disconnect

    # -----------------------------------------
    # Transport helpers
    # -----------------------------------------
    def _emit(self, event, data, to=None):
        if to is None:
            self.socketio.emit(event, data, namespace=NAMESPACE)
        else:
            self.socketio.emit(event, data, to=to, namespace=NAMESPACE)

    def _error(self, sid, message, call_id=None):
        payload = {"message": message}
        if call_id:
            payload["callId"] = call_id
        self._emit("call-error", payload, to=sid)

    def broadcast_roster(self):
        self._emit("users-update", self.registry.roster())

    def send_roster(self, sid):
        self._emit("users-update", self.registry.roster(), to=sid)

    def _reset_status(self, sid):
        """
        Back to online unless the connection still takes part in a live call.
        Returns True when the status actually changed.
        """
        record = self.registry.get(sid)
        if record is None or self.calls.is_engaged(sid):
            return False
        if record.status == ONLINE:
            return False
        self.registry.set_status(sid, ONLINE)
        return True

    # -----------------------------------------
    # LOBBY
    # -----------------------------------------
    def join(self, sid, user_id, display_name):
        record = self.registry.join(sid, user_id, display_name)

        # A re-join on the same connection keeps the status its call implies
        for session in self.calls.for_connection(sid):
            if session.phase == REQUESTED and session.caller_sid == sid:
                record.status = BUSY
            elif session.phase in (ACCEPTED, ACTIVE):
                record.status = IN_CALL

        self.broadcast_roster()

        self._emit("lobby-welcome", {
            "message": f"Welcome to the lobby, {display_name}!",
            "users": self.registry.roster(),
            "iceServers": self.ice_servers,
        }, to=sid)

        log_info("router", f'User "{display_name}" joined lobby (uid={record.user_id}, online={len(self.registry)}).')
        return record

    def leave(self, sid):
        record = self.registry.get(sid)
        if record is None:
            return None

        self._abandon_calls(sid, record)
        self.registry.leave(sid)
        self.broadcast_roster()

        log_info("router", f'User "{record.display_name}" left lobby (online={len(self.registry)}).')
        return record

    def disconnect(self, sid):
        return self.leave(sid)

    def _abandon_calls(self, sid, record):
        for session in self.calls.for_connection(sid):
            self.calls.retire(session.call_id, ENDED)
            self.socketio.close_room(session.room, namespace=NAMESPACE)

            counterpart = session.counterpart_sid(sid)
            log_info("router", f"Call {session.call_id} abandoned by uid={record.user_id} ({session.phase}).")

            if not self.notify_peer_disconnect or counterpart not in self.registry:
                continue

            self._reset_status(counterpart)
            self._emit("peer-disconnected", {
                "callId": session.call_id,
                "userId": record.user_id,
                "message": f"{record.display_name} disconnected",
            }, to=counterpart)

    # -----------------------------------------
    # REQUEST
    # -----------------------------------------
    def request_call(self, sid, to_user_id, call_id=None):
        caller = self.registry.get(sid)
        if caller is None:
            self._error(sid, "Join the lobby first", call_id)
            return REFUSED

        call_id = str(call_id) if call_id else generate_call_id()

        if self.calls.is_known(call_id):
            log_warning("router", f"Refused reused call id {call_id} from uid={caller.user_id}")
            self._error(sid, "Invalid call id", call_id)
            return REFUSED

        if self.calls.is_engaged(sid):
            self._error(sid, "You are already in a call", call_id)
            return REFUSED

        target_sid = self.registry.find_connection_by_user(to_user_id)
        if target_sid is None:
            log_info("router", f"Call request {caller.user_id} → {to_user_id}: target unreachable")
            self._error(sid, MSG_UNAVAILABLE, call_id)
            return TARGET_UNREACHABLE

        callee = self.registry.get(target_sid)
        if callee.user_id == caller.user_id:
            self._error(sid, "You cannot call yourself", call_id)
            return REFUSED

        # First come, first served: a ringing or talking user is not disturbed
        if self.calls.is_engaged(target_sid):
            log_info("router", f"Call request {caller.user_id} → {callee.user_id}: target busy")
            self._error(sid, MSG_BUSY, call_id)
            return TARGET_BUSY

        self.calls.open(call_id, caller.user_id, sid, callee.user_id, target_sid)

        self._emit("incoming-call", {
            "fromUserId": caller.user_id,
            "fromUserName": caller.display_name,
            "callId": call_id,
            "timestamp": _utc_now_iso(),
        }, to=target_sid)

        self.registry.set_status(sid, BUSY)

        self._emit("call-request-sent", {
            "toUserId": callee.user_id,
            "callId": call_id,
            "message": "Call request sent!",
        }, to=sid)

        self.broadcast_roster()

        log_info("router", f"Call request {call_id}: {caller.display_name} → {callee.display_name}")
        return DELIVERED

    # -----------------------------------------
    # ACCEPT
    # -----------------------------------------
    def accept_call(self, sid, call_id, from_user_id=None, to_user_id=None):
        session = self.calls.get(call_id)

        if session is None:
            # Caller hung up, request expired, or the callee already timed out
            log_info("router", f"Accept for stale call {call_id} (sid={sid})")
            self._error(sid, MSG_STALE, call_id)
            return False

        if sid != session.callee_sid:
            log_warning("router", f"Accept for call {call_id} from a non-callee connection")
            self._error(sid, MSG_STALE, call_id)
            return False

        if session.phase != REQUESTED:
            return True

        if from_user_id is not None and str(from_user_id) != session.caller_user_id:
            log_warning("router", f"Accept {call_id}: fromUserId={from_user_id} does not match caller {session.caller_user_id}")

        session.advance(ACCEPTED)

        self.registry.set_status(session.caller_sid, IN_CALL)
        self.registry.set_status(session.callee_sid, IN_CALL)

        for conn in session.connections:
            self.socketio.server.enter_room(conn, session.room, namespace=NAMESPACE)

        caller = self.registry.get(session.caller_sid)
        callee = self.registry.get(session.callee_sid)

        self._emit("call-started", {
            "callId": session.call_id,
            "roomId": session.room,
            "users": [caller.to_public(), callee.to_public()],
        }, to=session.room)

        self.broadcast_roster()

        log_info("router", f"Call {call_id} accepted: {caller.display_name} ↔ {callee.display_name}")
        return True

    # -----------------------------------------
    # REJECT
    # -----------------------------------------
    def reject_call(self, sid, call_id, from_user_id=None):
        session = self.calls.get(call_id)

        if session is None:
            # Already settled (cancelled, expired, rejected twice)
            log_debug("router", f"Reject for settled call {call_id}")
            changed = self._reset_status(sid)
            caller_sid = self.registry.find_connection_by_user(from_user_id)
            if caller_sid and caller_sid != sid:
                changed = self._reset_status(caller_sid) or changed
            if changed:
                self.broadcast_roster()
            return True

        if sid != session.callee_sid or session.phase != REQUESTED:
            log_warning("router", f"Reject for call {call_id} refused (phase={session.phase})")
            self._error(sid, MSG_STALE, call_id)
            return False

        self.calls.retire(call_id, REJECTED)

        self._emit("call-rejected", {
            "callId": call_id,
            "message": "Call was rejected",
        }, to=session.caller_sid)

        self._reset_status(session.caller_sid)
        self._reset_status(sid)
        self.broadcast_roster()

        log_info("router", f"Call {call_id} rejected")
        return True

    # -----------------------------------------
    # END
    # -----------------------------------------
    def end_call(self, sid, call_id):
        session = self.calls.get(call_id)

        if session is None:
            if self._reset_status(sid):
                self.broadcast_roster()
            return False

        if not session.involves(sid):
            log_warning("router", f"End for call {call_id} from a non-participant")
            return False

        was_ringing = session.phase == REQUESTED
        self.calls.retire(call_id, ENDED)

        payload = {
            "callId": call_id,
            "message": "Call was cancelled" if was_ringing else "Call ended",
        }

        if was_ringing:
            for conn in session.connections:
                if conn in self.registry:
                    self._emit("call-ended", payload, to=conn)
        else:
            self._emit("call-ended", payload, to=session.room)
            self.socketio.close_room(session.room, namespace=NAMESPACE)

        for conn in session.connections:
            self._reset_status(conn)
        self.broadcast_roster()

        log_info("router", f"Call {call_id} ended")
        return True

    # -----------------------------------------
    # WEBRTC SIGNAL RELAY
    # -----------------------------------------
    def relay_signal(self, sid, to_user_id, call_id, signal):
        sender = self.registry.get(sid)
        if sender is None:
            log_debug("router", f"Signal from unjoined connection {sid} dropped")
            return False

        if call_id and self.calls.is_retired(call_id):
            log_debug("router", f"Signal for finished call {call_id} dropped")
            return False

        target_sid = self.registry.find_connection_by_user(to_user_id)
        session = self.calls.get(call_id) if call_id else None

        if session is not None:
            if not session.involves(sid):
                log_warning("router", f"Signal for call {call_id} from a non-participant dropped")
                return False
            target_sid = session.counterpart_sid(sid)
            if target_sid not in self.registry:
                target_sid = None
            elif session.phase == ACCEPTED:
                session.advance(ACTIVE)

        if target_sid is None:
            log_debug("router", f"Signal for unreachable uid={to_user_id} dropped")
            return False

        self._emit("webrtc-signal", {
            "fromUserId": sender.user_id,
            "signal": signal,
            "callId": call_id,
        }, to=target_sid)
        return True

    # -----------------------------------------
    # HOUSEKEEPING
    # -----------------------------------------
    def expire_stale_requests(self, ttl=CALL_REQUEST_TTL_SECONDS, now=None):
        expired = self.calls.expired_requests(ttl, now)

        for session in expired:
            self.calls.retire(session.call_id, ENDED)

            if session.caller_sid in self.registry:
                self._error(session.caller_sid, "Call request expired", session.call_id)
            if session.callee_sid in self.registry:
                self._emit("call-ended", {
                    "callId": session.call_id,
                    "message": "Call request expired",
                }, to=session.callee_sid)

            self._reset_status(session.caller_sid)
            log_info("router", f"Call request {session.call_id} expired")

        if expired:
            self.broadcast_roster()

        return len(expired)
