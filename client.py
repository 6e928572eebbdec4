#!/usr/bin/env python3
# ============================================
#     SignLobby — Console Client
# ============================================

import argparse
import sys

from dotenv import load_dotenv
load_dotenv()

from signlobby.config import RING_TIMEOUT_SECONDS
from signlobby.lobby_client import LobbyClient, LobbyListener
from signlobby.logger import log_info, log_error, set_level

HELP = """Commands:
  users            list online users
  call <userId>    call a user
  accept / reject  answer an incoming call
  end              end the current call
  mute             mute / unmute your microphone
  video            hide / show your video
  quit             leave the lobby"""


class ConsoleListener(LobbyListener):

    def on_roster(self, users):
        print(f"[lobby] {len(users)} online")
        for u in users:
            print(f"   {u['userId']:<20} {u['userName']:<24} {u['status']}")

    def on_incoming_call(self, call):
        print(f"[call] {call['remoteUserName']} is calling... (accept / reject)")

    def on_call_state(self, state, call):
        print(f"[call] state → {state}")

    def on_notice(self, message):
        print(f"[info] {message}")


def parse_args():
    ap = argparse.ArgumentParser(description="SignLobby console client")
    ap.add_argument("--server", default="http://localhost:3000", help="signaling server URL")
    ap.add_argument("--user-id", required=True, help="user id from the identity provider")
    ap.add_argument("--name", help="display name (defaults to the user id)")
    ap.add_argument("--id-token", help="identity provider token")
    ap.add_argument("--media", help="media file or device streamed during calls")
    ap.add_argument("--media-format", help="FFmpeg input format for --media (e.g. v4l2)")
    ap.add_argument("--ring-timeout", type=float, default=RING_TIMEOUT_SECONDS)
    ap.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return ap.parse_args()


def main():
    args = parse_args()
    if args.verbose:
        set_level("DEBUG")

    # optional "media" extra
    from signlobby.rtc import aiortc_peer_connection, open_local_media

    client = LobbyClient(
        user_id=args.user_id,
        user_name=args.name,
        pc_factory=aiortc_peer_connection,
        listener=ConsoleListener(),
        id_token=args.id_token,
        ring_timeout=args.ring_timeout,
    )

    if args.media:
        try:
            client.negotiator.attach_local_media(open_local_media(args.media, format=args.media_format))
        except Exception as e:
            log_error("client", f"Could not open media {args.media}: {e}")
            print(f"[error] Could not open media {args.media}: {e}")
            return 1

    client.connect(args.server)
    log_info("client", f"Console client started for uid={args.user_id}")
    print(HELP)

    try:
        for line in sys.stdin:
            parts = line.split()
            if not parts:
                continue

            cmd = parts[0].lower()
            if cmd == "users":
                client.refresh_users()
            elif cmd == "call" and len(parts) > 1:
                client.request_call(parts[1])
            elif cmd == "accept":
                client.accept_call()
            elif cmd == "reject":
                client.reject_call()
            elif cmd == "end":
                client.end_call()
            elif cmd == "mute":
                client.toggle_audio_mute()
            elif cmd == "video":
                client.toggle_video_hide()
            elif cmd in ("quit", "exit"):
                break
            else:
                print(HELP)
    except KeyboardInterrupt:
        pass
    finally:
        client.leave()
        if client.negotiator is not None:
            client.negotiator.stop_local_media()

    return 0


if __name__ == "__main__":
    sys.exit(main())
