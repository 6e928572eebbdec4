# ============================================
#   SignLobby — Identity provider check
#   join-lobby carries an opaque idToken issued by the provider
# ============================================

import requests

from signlobby.config import (
    IDENTITY_VERIFY_URL,
    IDENTITY_TIMEOUT_SECONDS,
    REQUIRE_IDENTITY,
)
from signlobby.logger import log_warning, log_exception


def verify_identity(user_id, id_token, verify_url=None, require=None):
    """
    Ask the identity provider whether id_token belongs to user_id.

    The provider answers HTTP 200 with {"uid": ..., "displayName": ...}.
    Returns True when the uid matches, False otherwise.
    """
    verify_url = IDENTITY_VERIFY_URL if verify_url is None else verify_url
    require = REQUIRE_IDENTITY if require is None else require

    token = str(id_token or "").strip()

    if not verify_url:
        if require:
            log_warning("identity", "IDENTITY_VERIFY_URL missing: identity REQUIRED.")
            return False
        return True

    if not token:
        log_warning("identity", f"Identity token missing (uid={user_id}).")
        return False

    try:
        r = requests.post(verify_url, json={"idToken": token}, timeout=IDENTITY_TIMEOUT_SECONDS)

        if r.status_code != 200:
            log_warning("identity", f"Identity HTTP {r.status_code}: {r.text[:300]}")
            return False

        try:
            resp = r.json()
        except ValueError:
            log_warning("identity", f"Identity non-JSON response: {r.text[:300]}")
            return False

        ok = str(resp.get("uid") or "") == str(user_id)
        if not ok:
            log_warning("identity", f"Identity mismatch: claimed={user_id} provider={resp.get('uid')}")

        return ok

    except requests.RequestException as e:
        log_exception("identity", f"Identity verify error: {e}")
        return False
