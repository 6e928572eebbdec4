# ============================================
#     SignLobby — Signaling Server
# ============================================

# -------------------------------------------------
#   EVENTLET PATCH (REQUIRED FOR GUNICORN)
# -------------------------------------------------
import eventlet
eventlet.monkey_patch()

from flask import Flask, jsonify
from flask_socketio import SocketIO

# -----------------------------------------
#   ENV VARIABLES (.env / deployment secrets)
# -----------------------------------------
from dotenv import load_dotenv
load_dotenv()

from signlobby.config import PORT, SECRET_KEY, CORS_ALLOWED_ORIGINS, ENV
from signlobby.router import CallRouter
from signlobby.cleanup import start_cleanup_task
from signlobby.sockets_lobby import register_lobby_handlers
from signlobby.sockets_call import register_call_handlers
from signlobby.logger import log_info, log_exception

# =========================================
#   FLASK + SOCKET.IO
# =========================================
app = Flask(__name__)
app.config["SECRET_KEY"] = SECRET_KEY
socketio = SocketIO(app, cors_allowed_origins=CORS_ALLOWED_ORIGINS)

# The router owns presence and call sessions for this process
router = CallRouter(socketio)

# =========================================
#   START CLEANUP BACKGROUND TASK
# =========================================
try:
    start_cleanup_task(socketio, router)
except Exception as e:
    log_exception("app", f"Error starting cleanup task: {e}")

# =========================================
#   REGISTER ALL SOCKET.IO HANDLERS
# =========================================
register_lobby_handlers(socketio, router)
register_call_handlers(socketio, router)
log_info("app", "Socket handlers registered successfully.")


# =========================================
#   HEALTH ROUTE
# =========================================
@app.route("/health")
def health():
    return jsonify(
        ok=True,
        env=ENV,
        online=len(router.registry),
        calls=len(router.calls),
    )


# =========================================
#   RUN SERVER (DEV / PROD)
# =========================================
if __name__ == "__main__":
    log_info("app", f"Server starting on port {PORT}...")
    socketio.run(app, host="0.0.0.0", port=PORT)
