# ============================================
#   SignLobby — aiortc peer connection
#   Blocking facade over aiortc's asyncio API for PeerNegotiator
# ============================================

import asyncio
import threading

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaPlayer
from aiortc.sdp import candidate_from_sdp

from signlobby.logger import log_debug, log_exception


# Seconds to wait for one aiortc operation (ICE gathering included)
OPERATION_TIMEOUT = 30


async def _invoke(fn, *args):
    return fn(*args)


class RtcLoop:
    """
    One asyncio loop in a daemon thread, shared by every aiortc object.
    """

    _instance = None
    _instance_lock = threading.Lock()

    def __init__(self):
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self.loop.run_forever, name="signlobby-rtc", daemon=True)
        self.thread.start()

    @classmethod
    def shared(cls):
        with cls._instance_lock:
            if cls._instance is None:
                cls._instance = cls()
            return cls._instance

    def run(self, coro, timeout=OPERATION_TIMEOUT):
        if threading.current_thread() is self.thread:
            coro.close()
            raise RuntimeError("Blocking aiortc call from the RTC loop thread")
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout)

    def dispatch(self, callback, *args):
        """
        Run a client callback off the loop thread so it may call back into run().
        """
        def _safe():
            try:
                callback(*args)
            except Exception:
                log_exception("rtc", f"Error in peer connection callback {callback!r}")

        self.loop.run_in_executor(None, _safe)


def _description(desc):
    if desc is None:
        return None
    return {"type": desc.type, "sdp": desc.sdp}


def rtc_configuration(configuration):
    servers = []
    for entry in (configuration or {}).get("iceServers", []):
        servers.append(RTCIceServer(
            urls=entry.get("urls"),
            username=entry.get("username"),
            credential=entry.get("credential"),
        ))
    return RTCConfiguration(iceServers=servers)


class AiortcPeerConnection:
    """
    aiortc gathers candidates before the local description is set, so they
    travel inside the SDP and ``on_ice_candidate`` is never fired.
    """

    # aiortc has no ICE restart
    supports_ice_restart = False

    def __init__(self, configuration, rtc_loop=None):
        self._rtc = rtc_loop or RtcLoop.shared()

        self.on_ice_candidate = None
        self.on_ice_connection_state_change = None
        self.on_track = None

        # kind → (sender, track) for tracks added through add_track
        self._senders = {}

        self._pc = self._rtc.run(self._create(configuration))

    async def _create(self, configuration):
        pc = RTCPeerConnection(configuration=rtc_configuration(configuration))

        @pc.on("iceconnectionstatechange")
        def _on_ice_state():
            log_debug("rtc", f"ICE connection state: {pc.iceConnectionState}")
            self._dispatch(self.on_ice_connection_state_change, pc.iceConnectionState)

        @pc.on("track")
        def _on_track(track):
            log_debug("rtc", f"Remote {track.kind} track received")
            self._dispatch(self.on_track, track)

        return pc

    def _dispatch(self, callback, *args):
        if callback is not None:
            self._rtc.dispatch(callback, *args)

    @property
    def local_description(self):
        return _description(self._pc.localDescription)

    @property
    def remote_description(self):
        return _description(self._pc.remoteDescription)

    def add_track(self, track):
        sender = self._rtc.run(_invoke(self._pc.addTrack, track))
        self._senders[track.kind] = (sender, track)

    def add_transceiver(self, kind, direction="sendrecv"):
        self._rtc.run(_invoke(self._pc.addTransceiver, kind, direction))

    def create_offer(self):
        return _description(self._rtc.run(self._pc.createOffer()))

    def create_answer(self):
        return _description(self._rtc.run(self._pc.createAnswer()))

    def set_local_description(self, desc):
        self._rtc.run(self._pc.setLocalDescription(
            RTCSessionDescription(sdp=desc["sdp"], type=desc["type"])
        ))

    def set_remote_description(self, desc):
        self._rtc.run(self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=desc["sdp"], type=desc["type"])
        ))

    def add_ice_candidate(self, candidate):
        sdp = (candidate or {}).get("candidate") or ""
        if not sdp:
            # end-of-candidates marker
            return

        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:"):]

        ice = candidate_from_sdp(sdp)
        ice.sdpMid = candidate.get("sdpMid")
        ice.sdpMLineIndex = candidate.get("sdpMLineIndex")
        self._rtc.run(self._pc.addIceCandidate(ice))

    def set_sending(self, kind, enabled):
        """
        Detach the local track from its sender (muted) or put it back.
        """
        entry = self._senders.get(kind)
        if entry is None:
            return
        sender, track = entry
        self._rtc.run(_invoke(sender.replaceTrack, track if enabled else None))

    def restart_ice(self):
        raise NotImplementedError("aiortc does not support ICE restarts")

    def close(self):
        self._rtc.run(self._pc.close())


def aiortc_peer_connection(configuration):
    """
    Peer connection factory for PeerNegotiator.
    """
    return AiortcPeerConnection(configuration)


# =====================================================
#   LOCAL MEDIA (file / device through FFmpeg)
# =====================================================

class MediaSourceStream:
    """
    Audio/video tracks from a MediaPlayer, e.g. a file or a v4l2 device.
    """

    def __init__(self, source, format=None, options=None, rtc_loop=None):
        self._rtc = rtc_loop or RtcLoop.shared()
        self._player = self._rtc.run(_invoke(MediaPlayer, source, format, options))

    def get_tracks(self):
        return [t for t in (self._player.audio, self._player.video) if t is not None]

    def stop(self):
        for track in self.get_tracks():
            self._rtc.run(_invoke(track.stop))


def open_local_media(source, format=None, options=None):
    return MediaSourceStream(source, format=format, options=options)
