# ============================================
#     SignLobby — Global Configuration
# ============================================

import os
import json

# =========================================
#   ENVIRONMENT
# =========================================
# Expected values: "dev", "prod"
ENV = os.getenv("ENV", "dev").lower()

IS_PROD = ENV == "prod"


def _env_bool(name, default):
    return os.getenv(name, "true" if default else "false").lower() in ("1", "true", "yes", "on")


# =========================================
#   PATHS
# =========================================
# Project root = one level above /signlobby
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

DATA_DIR = os.getenv("SIGNLOBBY_DATA_DIR") or (
    "/var/data" if IS_PROD else os.path.join(PROJECT_ROOT, "var", "data")
)

LOG_DIR = os.path.join(DATA_DIR, "logs")
DEFAULT_LOG_FILE = os.path.join(LOG_DIR, "signlobby.log")
LOG_FILE = os.getenv("SIGNLOBBY_LOG_FILE", DEFAULT_LOG_FILE)

os.makedirs(os.path.dirname(LOG_FILE) or ".", exist_ok=True)

# Console logging is on in dev, off in prod unless asked for
LOG_TO_CONSOLE = _env_bool("SIGNLOBBY_LOG_CONSOLE", not IS_PROD)

# =========================================
#   SERVER
# =========================================
PORT = int(os.getenv("PORT", "3000"))
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
CORS_ALLOWED_ORIGINS = os.getenv("CORS_ALLOWED_ORIGINS", "*")

MAX_DISPLAY_NAME_LENGTH = int(os.getenv("MAX_DISPLAY_NAME_LENGTH", "64"))

# =========================================
#   CALL LIFECYCLE
# =========================================
RING_TIMEOUT_SECONDS = float(os.getenv("RING_TIMEOUT_SECONDS", "30"))

# Server-side housekeeping for requests nobody answered (client crashed
# while ringing). Deliberately longer than the client ring timeout.
CALL_REQUEST_TTL_SECONDS = float(os.getenv("CALL_REQUEST_TTL_SECONDS", "120"))
CLEANUP_INTERVAL_SECONDS = float(os.getenv("CLEANUP_INTERVAL_SECONDS", "30"))

# How many retired call ids are remembered to refuse reuse
RETIRED_CALL_IDS_LIMIT = int(os.getenv("RETIRED_CALL_IDS_LIMIT", "4096"))

# Emit "peer-disconnected" to the remaining participant of a live call
NOTIFY_PEER_DISCONNECT = _env_bool("NOTIFY_PEER_DISCONNECT", True)

# Client acknowledgement handling for accept / reject / end
ACK_TIMEOUT_SECONDS = float(os.getenv("ACK_TIMEOUT_SECONDS", "5"))
ACK_RETRIES = int(os.getenv("ACK_RETRIES", "2"))

# =========================================
#   RATE LIMIT (request-call)
# =========================================
RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "10"))
RATE_LIMIT_MAX_CALLS = int(os.getenv("RATE_LIMIT_MAX_CALLS", "5"))

# =========================================
#   IDENTITY PROVIDER
# =========================================
# Endpoint receiving {"idToken": ...} and answering {"uid": ..., "displayName": ...}
IDENTITY_VERIFY_URL = os.getenv("IDENTITY_VERIFY_URL", "")
IDENTITY_TIMEOUT_SECONDS = float(os.getenv("IDENTITY_TIMEOUT_SECONDS", "8"))

# In production identity MUST be verified.
# In dev, a missing endpoint bypasses the check.
REQUIRE_IDENTITY = _env_bool("REQUIRE_IDENTITY", IS_PROD)

# =========================================
#   NAT TRAVERSAL RELAYS
# =========================================
DEFAULT_ICE_SERVERS = [
    {"urls": "stun:stun.l.google.com:19302"},
    {"urls": "stun:global.stun.twilio.com:3478"},
    {"urls": "stun:stun.1.google.com:19302"},
    {"urls": "stun:stun.relay.metered.ca:80"},
    {"urls": "stun:stun.nextcloud.com:443"},
    {"urls": "turn:relay.metered.ca:80", "username": "public", "credential": "public"},
    {"urls": "turn:relay.metered.ca:443", "username": "public", "credential": "public"},
    {
        "urls": "turn:relay.metered.ca:443?transport=tcp",
        "username": "public",
        "credential": "public",
    },
]


def _load_ice_servers():
    raw = os.getenv("ICE_SERVERS", "").strip()
    if not raw:
        return list(DEFAULT_ICE_SERVERS)
    servers = json.loads(raw)
    if not isinstance(servers, list):
        raise ValueError("ICE_SERVERS must be a JSON list")
    return servers


ICE_SERVERS = _load_ice_servers()
ICE_CANDIDATE_POOL_SIZE = int(os.getenv("ICE_CANDIDATE_POOL_SIZE", "10"))
ICE_TRANSPORT_POLICY = os.getenv("ICE_TRANSPORT_POLICY", "all")


def peer_configuration(ice_servers=None):
    """
    RTCPeerConnection configuration shared by caller and callee.
    """
    return {
        "iceServers": list(ice_servers if ice_servers is not None else ICE_SERVERS),
        "iceCandidatePoolSize": ICE_CANDIDATE_POOL_SIZE,
        "iceTransportPolicy": ICE_TRANSPORT_POLICY,
    }
