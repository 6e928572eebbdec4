# ============================================
#     SignLobby — Session Registry
#     connection (sid) → presence record
# ============================================

from dataclasses import dataclass

from signlobby.config import MAX_DISPLAY_NAME_LENGTH


# =====================================================
#   PRESENCE STATUSES
# =====================================================

ONLINE = "online"
BUSY = "busy"
IN_CALL = "in-call"

STATUSES = (ONLINE, BUSY, IN_CALL)


@dataclass
class PresenceRecord:
    connection_id: str
    user_id: str
    display_name: str
    status: str = ONLINE

    @property
    def is_available(self) -> bool:
        return self.status == ONLINE

    def to_public(self) -> dict:
        """
        Roster entry sent to clients. The connection id never leaves the server.
        """
        return {
            "userId": self.user_id,
            "userName": self.display_name,
            "status": self.status,
            "isAvailable": self.is_available,
        }


# =====================================================
#   DISPLAY NAME NORMALIZATION
# =====================================================

def normalize_display_name(name) -> str:
    """
    Trim a display name coming from the identity provider.
    Returns "" when nothing usable is left.
    """
    if not isinstance(name, str):
        return ""

    name = " ".join(name.split())
    return name[:MAX_DISPLAY_NAME_LENGTH]


class SessionRegistry:
    """
    In-memory presence table owned by the call router.

    Two indexes are kept in step:
        _records:  connection_id → PresenceRecord   (insertion ordered)
        _by_user:  user_id → connection_id           (most recent join wins)

    Absence is always reported as None, never as an exception.
    """

    def __init__(self):
        self._records = {}
        self._by_user = {}

    def __len__(self):
        return len(self._records)

    def __contains__(self, connection_id):
        return connection_id in self._records

    def join(self, connection_id, user_id, display_name) -> PresenceRecord:
        previous = self._records.pop(connection_id, None)
        if previous is not None:
            self._unindex(previous)

        record = PresenceRecord(
            connection_id=connection_id,
            user_id=str(user_id),
            display_name=display_name,
        )
        self._records[connection_id] = record
        self._by_user[record.user_id] = connection_id
        return record

    def leave(self, connection_id):
        record = self._records.pop(connection_id, None)
        if record is not None:
            self._unindex(record)
        return record

    def _unindex(self, record):
        if self._by_user.get(record.user_id) != record.connection_id:
            return

        # Another tab of the same user may still be connected
        for sid, other in reversed(list(self._records.items())):
            if other.user_id == record.user_id:
                self._by_user[record.user_id] = sid
                return

        self._by_user.pop(record.user_id, None)

    def get(self, connection_id):
        return self._records.get(connection_id)

    def set_status(self, connection_id, status):
        """
        Returns the updated record, or None for an unknown connection.
        Only a status outside STATUSES raises ValueError; that is a caller
        bug, not a lookup miss.
        """
        if status not in STATUSES:
            raise ValueError(f"Unknown presence status: {status!r}")

        record = self._records.get(connection_id)
        if record is None:
            return None

        record.status = status
        return record

    def find_connection_by_user(self, user_id):
        if user_id is None:
            return None
        return self._by_user.get(str(user_id))

    def find_record_by_user(self, user_id):
        sid = self.find_connection_by_user(user_id)
        return self._records.get(sid) if sid else None

    def roster(self):
        return [record.to_public() for record in self._records.values()]
