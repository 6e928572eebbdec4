# ============================================
#   SignLobby — Call Socket.IO Handlers
#   request / accept / reject / end / webrtc-signal
# ============================================

import time

from flask import request
from flask_socketio import emit

from signlobby.sockets_lobby import as_payload
from signlobby.router import DELIVERED
from signlobby.config import RATE_LIMIT_WINDOW_SECONDS, RATE_LIMIT_MAX_CALLS
from signlobby.logger import log_warning


# =====================================================
#   CALL REQUEST RATE LIMIT (IP + USER_ID)
# =====================================================
# _RATE_LIMIT["ip:1.2.3.4"] = [timestamps]
# _RATE_LIMIT["uid:abc123"] = [timestamps]
_RATE_LIMIT = {}


def _rate_limit_hit(key: str, limit: int, now: float) -> bool:
    cutoff = now - RATE_LIMIT_WINDOW_SECONDS
    timestamps = [t for t in _RATE_LIMIT.get(key, []) if t >= cutoff]
    timestamps.append(now)
    _RATE_LIMIT[key] = timestamps
    return len(timestamps) > limit


def _rate_limit_check(user_id: str, ip: str) -> bool:
    now = time.time()
    if ip and _rate_limit_hit(f"ip:{ip}", RATE_LIMIT_MAX_CALLS, now):
        return True
    if user_id and _rate_limit_hit(f"uid:{user_id}", RATE_LIMIT_MAX_CALLS, now):
        return True
    return False


def reset_rate_limits():
    _RATE_LIMIT.clear()


def _call_id_of(data):
    call_id = data.get("callId")
    return str(call_id) if call_id not in (None, "") else None


def register_call_handlers(socketio, router):

    # -----------------------------------------
    # REQUEST CALL
    # -----------------------------------------
    @socketio.on("request-call", namespace="/")
    def request_call(data):
        data = as_payload(data)

        to_user_id = data.get("toUserId")
        call_id = _call_id_of(data)

        if not to_user_id:
            emit("call-error", {"message": "Invalid call request"})
            return {"ok": False, "error": "invalid"}

        caller = router.registry.get(request.sid)
        uid = caller.user_id if caller else request.sid
        if _rate_limit_check(str(uid), request.remote_addr or ""):
            log_warning("rate_limit", f"Call request blocked (ip={request.remote_addr}, uid={uid})")
            emit("call-error", {"message": "Too many call requests", "callId": call_id})
            return {"ok": False, "error": "rate-limited"}

        outcome = router.request_call(request.sid, str(to_user_id), call_id)
        if outcome == DELIVERED:
            return {"ok": True}
        return {"ok": False, "error": outcome}

    # -----------------------------------------
    # ACCEPT CALL
    # -----------------------------------------
    @socketio.on("accept-call", namespace="/")
    def accept_call(data):
        data = as_payload(data)
        call_id = _call_id_of(data)
        if not call_id:
            return {"ok": False, "error": "invalid"}

        ok = router.accept_call(
            request.sid,
            call_id,
            from_user_id=data.get("fromUserId"),
            to_user_id=data.get("toUserId"),
        )
        return {"ok": ok}

    # -----------------------------------------
    # REJECT CALL
    # -----------------------------------------
    @socketio.on("reject-call", namespace="/")
    def reject_call(data):
        data = as_payload(data)
        call_id = _call_id_of(data)
        if not call_id:
            return {"ok": False, "error": "invalid"}

        ok = router.reject_call(request.sid, call_id, from_user_id=data.get("fromUserId"))
        return {"ok": ok}

    # -----------------------------------------
    # END CALL
    # -----------------------------------------
    @socketio.on("end-call", namespace="/")
    def end_call(data):
        data = as_payload(data)
        call_id = _call_id_of(data)
        if not call_id:
            return {"ok": False, "error": "invalid"}

        router.end_call(request.sid, call_id)
        # Ending an already ended call is fine
        return {"ok": True}

    # -----------------------------------------
    # WEBRTC SIGNAL (opaque, best effort)
    # -----------------------------------------
    @socketio.on("webrtc-signal", namespace="/")
    def webrtc_signal(data):
        data = as_payload(data)
        signal = data.get("signal")
        to_user_id = data.get("toUserId")

        if not isinstance(signal, dict) or not to_user_id:
            return

        router.relay_signal(request.sid, str(to_user_id), _call_id_of(data), signal)
