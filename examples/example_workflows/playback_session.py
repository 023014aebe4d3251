"""Example: ingest an asset, open a playback session and play it back."""
import os

from drmkeys.client.player_client import PlaybackClient
from drmkeys.encryption import primitives
from drmkeys.encryption.envelope import LocalMasterKey
from drmkeys.server.key_server import KeyServer
from drmkeys.storage.content_store import InMemoryContentStore


def demo():
	master_key = LocalMasterKey(primitives.random_bytes(32))
	subscribers = {"premium"}
	sessions = {}

	def entitled(session_id, asset_id):
		return sessions.get(session_id) in subscribers

	server = KeyServer(master_key, entitled)
	store = InMemoryContentStore()

	media = os.urandom(512 * 1024)
	record = server.ingest_asset("trailer-1", media, store)
	print("Ingested trailer-1 ->", record.ciphertext_ref)

	client = PlaybackClient(server, store, device_id="living-room-tv")
	sessions[client.initialize()] = "premium"
	played = client.play("trailer-1")
	print("Playback ok:", played == media, "report:", {k: v for k, v in client.playback_report().items() if k != "playback_history"})

	client.terminate()


if __name__ == "__main__":
	demo()
