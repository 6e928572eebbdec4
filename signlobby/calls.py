# ============================================
#     SignLobby — Call Sessions
#     Single source of truth for "who is in which call"
# ============================================

import time
import random
import string
from collections import OrderedDict
from dataclasses import dataclass, field

from signlobby.config import RETIRED_CALL_IDS_LIMIT


# =====================================================
#   CALL PHASES
# =====================================================

REQUESTED = "requested"
ACCEPTED = "accepted"
ACTIVE = "active"
REJECTED = "rejected"
ENDED = "ended"

LIVE_PHASES = (REQUESTED, ACCEPTED, ACTIVE)

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_call_id() -> str:
    """
    "<epoch ms>-<9 base36 chars>", the same shape browsers generate.
    """
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"{int(time.time() * 1000)}-{suffix}"


def call_room(call_id) -> str:
    return f"call-{call_id}"


@dataclass
class CallSession:
    call_id: str
    caller_user_id: str
    callee_user_id: str
    caller_sid: str
    callee_sid: str
    phase: str = REQUESTED
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def room(self) -> str:
        return call_room(self.call_id)

    @property
    def is_live(self) -> bool:
        return self.phase in LIVE_PHASES

    @property
    def connections(self):
        return (self.caller_sid, self.callee_sid)

    def involves(self, sid) -> bool:
        return sid in self.connections

    def counterpart_sid(self, sid):
        if sid == self.caller_sid:
            return self.callee_sid
        if sid == self.callee_sid:
            return self.caller_sid
        return None

    def advance(self, phase):
        self.phase = phase
        self.updated_at = time.time()


class CallBook:
    """
    Live call sessions keyed by call id, plus a bounded memory of retired
    ids so a rejected or abandoned call id is never accepted again.
    """

    def __init__(self, retired_limit=RETIRED_CALL_IDS_LIMIT):
        self._live = {}
        self._retired = OrderedDict()
        self._retired_limit = retired_limit

    def __len__(self):
        return len(self._live)

    def __iter__(self):
        return iter(list(self._live.values()))

    def is_known(self, call_id) -> bool:
        return call_id in self._live or call_id in self._retired

    def is_retired(self, call_id) -> bool:
        return call_id in self._retired

    def open(self, call_id, caller_user_id, caller_sid, callee_user_id, callee_sid):
        if self.is_known(call_id):
            raise ValueError(f"Call id already used: {call_id}")

        session = CallSession(
            call_id=call_id,
            caller_user_id=str(caller_user_id),
            callee_user_id=str(callee_user_id),
            caller_sid=caller_sid,
            callee_sid=callee_sid,
        )
        self._live[call_id] = session
        return session

    def get(self, call_id):
        return self._live.get(call_id)

    def for_connection(self, sid):
        """
        Live sessions a connection takes part in (normally zero or one).
        """
        return [s for s in self._live.values() if s.involves(sid)]

    def is_engaged(self, sid) -> bool:
        return any(s.involves(sid) for s in self._live.values())

    def retire(self, call_id, phase=ENDED):
        session = self._live.pop(call_id, None)
        if session is None:
            return None

        session.advance(phase)

        self._retired[call_id] = phase
        while len(self._retired) > self._retired_limit:
            self._retired.popitem(last=False)

        return session

    def expired_requests(self, ttl, now=None):
        now = time.time() if now is None else now
        return [
            s for s in self._live.values()
            if s.phase == REQUESTED and now - s.created_at >= ttl
        ]
