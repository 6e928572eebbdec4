# ============================================
#   SignLobby — Lobby Socket.IO Handlers
#   join / leave / roster / disconnect
# ============================================

from flask import request
from flask_socketio import emit

from signlobby.registry import normalize_display_name
from signlobby.identity import verify_identity
from signlobby.logger import log_info, log_warning, log_exception


def as_payload(data) -> dict:
    """
    Socket.IO clients may send anything; handlers only ever read dicts.
    """
    return data if isinstance(data, dict) else {}


def register_lobby_handlers(socketio, router):

    # -----------------------------------------
    # ERRORS (any handler)
    # -----------------------------------------
    @socketio.on_error_default
    def on_error(e):
        log_exception("sockets", f"Unhandled error in socket handler (sid={request.sid}): {e}")
        emit("call-error", {"message": "Internal server error"}, to=request.sid)
        return {"ok": False, "error": "internal"}

    # -----------------------------------------
    # CONNECT
    # -----------------------------------------
    @socketio.on("connect", namespace="/")
    def on_connect(auth=None):
        log_info("sockets_lobby", f"Client connected: sid={request.sid}")

    # -----------------------------------------
    # JOIN LOBBY
    # -----------------------------------------
    @socketio.on("join-lobby", namespace="/")
    def join_lobby(data):
        data = as_payload(data)

        user_id = str(data.get("userId") or "").strip()
        user_name = normalize_display_name(data.get("userName")) or user_id

        if not user_id:
            emit("call-error", {"message": "Invalid join request"})
            return {"ok": False, "error": "invalid"}

        if not verify_identity(user_id, data.get("idToken")):
            log_warning("sockets_lobby", f"Identity rejected for uid={user_id} (sid={request.sid})")
            emit("call-error", {"message": "Identity verification failed"})
            return {"ok": False, "error": "identity"}

        router.join(request.sid, user_id, user_name)
        return {"ok": True}

    # -----------------------------------------
    # LEAVE LOBBY
    # -----------------------------------------
    @socketio.on("leave-lobby", namespace="/")
    def leave_lobby(data=None):
        router.leave(request.sid)
        return {"ok": True}

    # -----------------------------------------
    # ROSTER REFRESH
    # -----------------------------------------
    @socketio.on("request-users-update", namespace="/")
    def request_users_update(data=None):
        router.send_roster(request.sid)

    # -----------------------------------------
    # DISCONNECT
    # -----------------------------------------
    @socketio.on("disconnect", namespace="/")
    def on_disconnect(reason=None):
        record = router.disconnect(request.sid)
        if record:
            log_info("sockets_lobby", f'Client "{record.display_name}" disconnected (reason={reason}).')
        else:
            log_info("sockets_lobby", f"Client disconnected: sid={request.sid}")
