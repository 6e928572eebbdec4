# ============================================
#     SignLobby — Cleanup Task
#     Unanswered call requests only
# ============================================

from signlobby.config import CLEANUP_INTERVAL_SECONDS, CALL_REQUEST_TTL_SECONDS
from signlobby.logger import log_info, log_exception

# Set this to True if you want logs *only when something expires*
SILENT_CLEANUP = True


def run_cleanup_cycle(router, ttl=CALL_REQUEST_TTL_SECONDS):
    expired = router.expire_stale_requests(ttl)
    if expired or not SILENT_CLEANUP:
        log_info("cleanup", f"Cleanup cycle executed ({expired} call request(s) expired).")
    return expired


def start_cleanup_task(socketio, router):
    """
    Start the recurring cleanup background task.

    The client ring timeout normally settles every request; this only
    catches requests whose callee vanished without the server noticing
    a reject (crashed tab behind a half-open connection).
    """
    log_info("cleanup", "Starting cleanup background task (call requests).")

    def _task():
        while True:
            try:
                socketio.sleep(CLEANUP_INTERVAL_SECONDS)
                run_cleanup_cycle(router)
            except Exception as e:
                log_exception("cleanup", f"Error during cleanup cycle: {e}")

    socketio.start_background_task(_task)
