from signlobby.calls import ACTIVE, ENDED, REJECTED
from signlobby.cleanup import run_cleanup_cycle
from signlobby.router import MSG_UNAVAILABLE, MSG_BUSY, MSG_STALE

from conftest import join, pick


def _roster_status(events):
    rosters = pick(events, "users-update")
    assert rosters, "no roster broadcast"
    return {u["userId"]: u["status"] for u in rosters[-1]}


def _lobby(server, *users):
    clients = []
    for uid, name in users:
        tc = server.client()
        join(tc, uid, name)
        clients.append(tc)
    for tc in clients:
        tc.get_received()
    return clients


def _call(a, b, call_id="c1", accept=True):
    ack = a.emit("request-call", {"toUserId": "2", "callId": call_id}, callback=True)
    assert ack == {"ok": True}
    if accept:
        ack = b.emit("accept-call", {"callId": call_id, "fromUserId": "1", "toUserId": "2"}, callback=True)
        assert ack == {"ok": True}
    a.get_received()
    b.get_received()


def test_join_welcomes_and_broadcasts(server):
    watcher = server.client()
    tc = server.client()
    join(tc, "1", "Alice")

    events = tc.get_received()
    welcome = pick(events, "lobby-welcome")[0]
    assert welcome["message"] == "Welcome to the lobby, Alice!"
    assert welcome["users"] == [{"userId": "1", "userName": "Alice", "status": "online", "isAvailable": True}]
    assert welcome["iceServers"] == []

    assert _roster_status(watcher.get_received()) == {"1": "online"}


def test_invalid_join(server):
    tc = server.client()
    ack = tc.emit("join-lobby", {"userName": "Nobody"}, callback=True)

    assert ack == {"ok": False, "error": "invalid"}
    assert pick(tc.get_received(), "call-error") == [{"message": "Invalid join request"}]
    assert len(server.router.registry) == 0


def test_identity_rejected(server, monkeypatch):
    monkeypatch.setattr("signlobby.sockets_lobby.verify_identity", lambda uid, token: token == "good")
    tc = server.client()

    ack = tc.emit("join-lobby", {"userId": "1", "userName": "Alice", "idToken": "bad"}, callback=True)
    assert ack == {"ok": False, "error": "identity"}
    assert pick(tc.get_received(), "call-error") == [{"message": "Identity verification failed"}]

    ack = tc.emit("join-lobby", {"userId": "1", "userName": "Alice", "idToken": "good"}, callback=True)
    assert ack == {"ok": True}


def test_request_and_accept(server):
    a, b = _lobby(server, ("1", "Alice"), ("2", "Bob"))

    ack = a.emit("request-call", {"toUserId": "2", "callId": "c1"}, callback=True)
    assert ack == {"ok": True}

    incoming = pick(b.get_received(), "incoming-call")[0]
    assert incoming["fromUserId"] == "1"
    assert incoming["fromUserName"] == "Alice"
    assert incoming["callId"] == "c1"
    assert incoming["timestamp"].endswith("Z")

    events = a.get_received()
    assert pick(events, "call-request-sent") == [
        {"toUserId": "2", "callId": "c1", "message": "Call request sent!"},
    ]
    assert _roster_status(events) == {"1": "busy", "2": "online"}

    ack = b.emit("accept-call", {"callId": "c1", "fromUserId": "1", "toUserId": "2"}, callback=True)
    assert ack == {"ok": True}

    for tc in (a, b):
        events = tc.get_received()
        started = pick(events, "call-started")[0]
        assert started["callId"] == "c1"
        assert started["roomId"] == "call-c1"
        assert [(u["userId"], u["status"]) for u in started["users"]] == [("1", "in-call"), ("2", "in-call")]
        assert _roster_status(events) == {"1": "in-call", "2": "in-call"}

    # Accepting twice changes nothing
    ack = b.emit("accept-call", {"callId": "c1"}, callback=True)
    assert ack == {"ok": True}
    assert pick(a.get_received(), "call-started") == []


def test_unknown_target(server):
    (a,) = _lobby(server, ("1", "Alice"))

    ack = a.emit("request-call", {"toUserId": "99", "callId": "c1"}, callback=True)
    assert ack == {"ok": False, "error": "target-unreachable"}

    events = a.get_received()
    assert pick(events, "call-error") == [{"message": MSG_UNAVAILABLE, "callId": "c1"}]
    assert server.router.registry.find_record_by_user("1").status == "online"
    assert len(server.router.calls) == 0


def test_request_before_join(server):
    tc = server.client()
    ack = tc.emit("request-call", {"toUserId": "2", "callId": "c1"}, callback=True)

    assert ack == {"ok": False, "error": "refused"}
    assert pick(tc.get_received(), "call-error")[0]["message"] == "Join the lobby first"


def test_cannot_call_yourself(server):
    a, a2 = _lobby(server, ("1", "Alice"), ("1", "Alice"))

    ack = a.emit("request-call", {"toUserId": "1", "callId": "c1"}, callback=True)
    assert ack == {"ok": False, "error": "refused"}
    assert pick(a.get_received(), "call-error")[0]["message"] == "You cannot call yourself"
    assert pick(a2.get_received(), "incoming-call") == []


def test_busy_target(server):
    a, b, c = _lobby(server, ("1", "Alice"), ("2", "Bob"), ("3", "Carol"))
    _call(a, b, accept=False)
    c.get_received()

    ack = c.emit("request-call", {"toUserId": "2", "callId": "c2"}, callback=True)
    assert ack == {"ok": False, "error": "target-busy"}
    assert pick(c.get_received(), "call-error") == [{"message": MSG_BUSY, "callId": "c2"}]
    assert pick(b.get_received(), "incoming-call") == []


def test_caller_already_in_call(server):
    a, b, c = _lobby(server, ("1", "Alice"), ("2", "Bob"), ("3", "Carol"))
    _call(a, b)

    ack = a.emit("request-call", {"toUserId": "3", "callId": "c2"}, callback=True)
    assert ack == {"ok": False, "error": "refused"}
    assert pick(a.get_received(), "call-error")[0]["message"] == "You are already in a call"
    assert pick(c.get_received(), "incoming-call") == []


def test_reject(server):
    a, b = _lobby(server, ("1", "Alice"), ("2", "Bob"))
    _call(a, b, accept=False)

    ack = b.emit("reject-call", {"callId": "c1", "fromUserId": "1"}, callback=True)
    assert ack == {"ok": True}

    events = a.get_received()
    assert pick(events, "call-rejected") == [{"callId": "c1", "message": "Call was rejected"}]
    assert _roster_status(events) == {"1": "online", "2": "online"}
    assert server.router.calls.is_retired("c1")

    # Rejecting a settled call is harmless
    ack = b.emit("reject-call", {"callId": "c1"}, callback=True)
    assert ack == {"ok": True}
    assert pick(a.get_received(), "call-rejected") == []


def test_reused_call_id_refused(server):
    a, b = _lobby(server, ("1", "Alice"), ("2", "Bob"))
    _call(a, b, accept=False)
    b.emit("reject-call", {"callId": "c1"})
    a.get_received()

    ack = a.emit("request-call", {"toUserId": "2", "callId": "c1"}, callback=True)
    assert ack == {"ok": False, "error": "refused"}
    assert pick(a.get_received(), "call-error")[0]["message"] == "Invalid call id"
    assert pick(b.get_received(), "incoming-call") == []


def test_end_call(server):
    a, b = _lobby(server, ("1", "Alice"), ("2", "Bob"))
    _call(a, b)

    ack = a.emit("end-call", {"callId": "c1"}, callback=True)
    assert ack == {"ok": True}

    for tc in (a, b):
        events = tc.get_received()
        assert pick(events, "call-ended") == [{"callId": "c1", "message": "Call ended"}]
        assert _roster_status(events) == {"1": "online", "2": "online"}

    # Second end is a no-op
    ack = b.emit("end-call", {"callId": "c1"}, callback=True)
    assert ack == {"ok": True}
    assert a.get_received() == []


def test_cancel_then_stale_accept(server):
    a, b = _lobby(server, ("1", "Alice"), ("2", "Bob"))
    _call(a, b, accept=False)

    a.emit("end-call", {"callId": "c1"})
    assert pick(b.get_received(), "call-ended") == [{"callId": "c1", "message": "Call was cancelled"}]

    ack = b.emit("accept-call", {"callId": "c1", "fromUserId": "1", "toUserId": "2"}, callback=True)
    assert ack == {"ok": False}
    assert pick(b.get_received(), "call-error") == [{"message": MSG_STALE, "callId": "c1"}]
    assert pick(a.get_received(), "call-started") == []


def test_only_callee_may_accept(server):
    a, b, c = _lobby(server, ("1", "Alice"), ("2", "Bob"), ("3", "Carol"))
    _call(a, b, accept=False)

    ack = c.emit("accept-call", {"callId": "c1"}, callback=True)
    assert ack == {"ok": False}
    assert server.router.calls.get("c1").phase == "requested"


def test_signal_relay_uses_registered_sender(server):
    a, b, c = _lobby(server, ("1", "Alice"), ("2", "Bob"), ("3", "Carol"))
    _call(a, b)
    signal = {"sdp": {"type": "offer", "sdp": "v=0"}}

    a.emit("webrtc-signal", {"toUserId": "2", "fromUserId": "3", "callId": "c1", "signal": signal})

    assert pick(b.get_received(), "webrtc-signal") == [{"fromUserId": "1", "signal": signal, "callId": "c1"}]
    assert server.router.calls.get("c1").phase == ACTIVE

    # Outsiders cannot inject into the call
    c.emit("webrtc-signal", {"toUserId": "2", "callId": "c1", "signal": signal})
    assert pick(b.get_received(), "webrtc-signal") == []

    # Malformed signals are dropped
    a.emit("webrtc-signal", {"toUserId": "2", "callId": "c1", "signal": "garbage"})
    assert pick(b.get_received(), "webrtc-signal") == []


def test_signal_to_absent_user_dropped(server):
    (a,) = _lobby(server, ("1", "Alice"))
    a.emit("webrtc-signal", {"toUserId": "99", "signal": {"candidate": {"candidate": "x"}}})
    assert pick(a.get_received(), "webrtc-signal") == []


def test_disconnect_notifies_peer(server):
    a, b = _lobby(server, ("1", "Alice"), ("2", "Bob"))
    _call(a, b)

    b.disconnect()

    events = a.get_received()
    assert pick(events, "peer-disconnected") == [
        {"callId": "c1", "userId": "2", "message": "Bob disconnected"},
    ]
    assert _roster_status(events) == {"1": "online"}
    assert len(server.router.calls) == 0
    assert server.router.calls.is_retired("c1")


def test_disconnect_without_peer_notice(legacy_server):
    a, b = _lobby(legacy_server, ("1", "Alice"), ("2", "Bob"))
    _call(a, b)

    b.disconnect()

    events = a.get_received()
    assert pick(events, "peer-disconnected") == []
    assert _roster_status(events) == {"1": "in-call"}

    # The remaining side hangs up on its own; its status recovers
    a.emit("end-call", {"callId": "c1"})
    assert _roster_status(a.get_received()) == {"1": "online"}


def test_leave_lobby(server):
    a, b = _lobby(server, ("1", "Alice"), ("2", "Bob"))

    ack = b.emit("leave-lobby", callback=True)
    assert ack == {"ok": True}
    assert _roster_status(a.get_received()) == {"1": "online"}


def test_request_users_update(server):
    a, b = _lobby(server, ("1", "Alice"), ("2", "Bob"))

    a.emit("request-users-update")

    assert _roster_status(a.get_received()) == {"1": "online", "2": "online"}
    assert b.get_received() == []


def test_unanswered_request_expires(server):
    a, b = _lobby(server, ("1", "Alice"), ("2", "Bob"))
    _call(a, b, accept=False)

    assert server.router.expire_stale_requests(ttl=0) == 1

    events = a.get_received()
    assert pick(events, "call-error") == [{"message": "Call request expired", "callId": "c1"}]
    assert _roster_status(events) == {"1": "online", "2": "online"}
    assert pick(b.get_received(), "call-ended") == [{"callId": "c1", "message": "Call request expired"}]
    assert server.router.calls.is_retired("c1")


def test_cleanup_cycle_keeps_fresh_requests(server):
    a, b = _lobby(server, ("1", "Alice"), ("2", "Bob"))
    _call(a, b, accept=False)

    assert run_cleanup_cycle(server.router, ttl=3600) == 0
    assert server.router.calls.get("c1") is not None

    assert run_cleanup_cycle(server.router, ttl=0) == 1
    assert server.router.calls.get("c1") is None


def test_request_rate_limit(server):
    (a,) = _lobby(server, ("1", "Alice"))

    for i in range(5):
        ack = a.emit("request-call", {"toUserId": "99", "callId": f"r{i}"}, callback=True)
        assert ack == {"ok": False, "error": "target-unreachable"}

    ack = a.emit("request-call", {"toUserId": "99", "callId": "r5"}, callback=True)
    assert ack == {"ok": False, "error": "rate-limited"}
    assert pick(a.get_received(), "call-error")[-1] == {"message": "Too many call requests", "callId": "r5"}


def test_invalid_payloads(server):
    (a,) = _lobby(server, ("1", "Alice"))

    assert a.emit("request-call", {"callId": "c1"}, callback=True) == {"ok": False, "error": "invalid"}
    assert a.emit("accept-call", "nonsense", callback=True) == {"ok": False, "error": "invalid"}
    assert a.emit("end-call", {}, callback=True) == {"ok": False, "error": "invalid"}


def test_reject_after_session_gone_resets_caller(legacy_server):
    a, b = _lobby(legacy_server, ("1", "Alice"), ("2", "Bob"))
    _call(a, b, accept=False)

    # Bob's tab dies while ringing; Alice is not told and stays busy
    b.disconnect()
    assert _roster_status(a.get_received()) == {"1": "busy"}

    b2 = legacy_server.client()
    join(b2, "2", "Bob")
    a.get_received()

    ack = b2.emit("reject-call", {"callId": "c1", "fromUserId": "1"}, callback=True)
    assert ack == {"ok": True}
    assert _roster_status(a.get_received()) == {"1": "online", "2": "online"}


def test_signal_for_finished_call_dropped(server):
    a, b = _lobby(server, ("1", "Alice"), ("2", "Bob"))
    _call(a, b)
    a.emit("end-call", {"callId": "c1"})
    b.get_received()

    a.emit("webrtc-signal", {"toUserId": "2", "callId": "c1", "signal": {"sdp": {"type": "offer", "sdp": "v=0"}}})

    assert pick(b.get_received(), "webrtc-signal") == []
