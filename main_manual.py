import logging
import queue
import threading

# --- Dependencies for manual recording ---
# You'll need to install these:
# pip install -e ".[desktop]"
# On macOS, you might need to install portaudio first: brew install portaudio
from pynput import keyboard

import config as cfg
from voicechat.api_client import BackendClient
from voicechat.audio import Microphone, Speaker
from voicechat.controller import CaptureState, Controller
from voicechat.errors import BackendError

logger = logging.getLogger(__name__)

# --- Hotkeys ---
PUSH_TO_TALK_KEY = keyboard.Key.alt_r
NEXT_CHARACTER_KEY = keyboard.Key.f2
REPLAY_KEY = keyboard.Key.f3
CLEAR_KEY = keyboard.Key.f4


def print_status(message: str):
	if message:
		print(f"[Status] {message}")


class ManualApp:
	"""Push-to-talk front end for the voice chat server."""

	def __init__(self, controller: Controller):
		self.controller = controller
		# A queue to process recorded turns sequentially
		self.processing_queue: "queue.Queue[bytes | None]" = queue.Queue()
		self._printed = 0

	def print_new_entries(self):
		entries = self.controller.entries
		name = (self.controller.persona or {}).get("displayName", "Character")
		for entry in entries[self._printed:]:
			label = "YOU SAID" if entry.role == "user" else f"{name.upper()} SAYS"
			print(f"\n[{label}] {entry.text}")
		self._printed = len(entries)

	def show_persona(self):
		persona = self.controller.persona
		if not persona:
			return
		print(f"\n=== {persona['displayName']} ({persona['sourceLabel']}) ===")
		if not self.controller.entries:
			print(persona["greeting"])
		self._printed = 0
		self.print_new_entries()

	def processing_worker(self):
		"""A worker thread that waits for recorded audio and runs the turn."""
		while True:
			audio = self.processing_queue.get()
			if audio is None:  # A 'None' value signals the thread to exit
				break
			if self.controller.process(audio):
				self.print_new_entries()
				self.controller.play_last_reply()
			else:
				self.print_new_entries()
			print(f"\nReady for next interaction. Hold '{PUSH_TO_TALK_KEY}' to speak.")
			self.processing_queue.task_done()

	def next_character(self):
		personas = self.controller.personas
		if not personas:
			return
		ids = [p["id"] for p in personas]
		current = ids.index(self.controller.persona_id) if self.controller.persona_id in ids else -1
		if self.controller.switch_persona(ids[(current + 1) % len(ids)]):
			self.show_persona()

	# --- Hotkey Handling ---
	def on_press(self, key):
		if key == PUSH_TO_TALK_KEY and self.controller.state is CaptureState.IDLE:
			self.controller.start_recording()
		elif key == NEXT_CHARACTER_KEY:
			self.next_character()
		elif key == REPLAY_KEY:
			self.controller.play_last_reply()
		elif key == CLEAR_KEY and self.controller.clear():
			self._printed = 0

	def on_release(self, key):
		if key == PUSH_TO_TALK_KEY and self.controller.state is CaptureState.RECORDING:
			audio = self.controller.stop_recording()
			self.processing_queue.put(audio)


# --- Main Application ---
def main():
	"""Main application entry point."""
	logging.basicConfig(level=cfg.LOG_LEVEL,
	                    format="%(asctime)s %(levelname)s %(name)s: %(message)s")
	print("Starting Persona Voice Chat (Manual Mode)...")
	print(f"Hold the '{PUSH_TO_TALK_KEY}' key to record your voice.")
	print(f"'{NEXT_CHARACTER_KEY}' next character, '{REPLAY_KEY}' play/stop last reply, "
	      f"'{CLEAR_KEY}' clear history.")
	print(
	    "NOTE: On macOS, you may need to grant Accessibility permissions to your terminal/IDE."
	)

	backend = BackendClient(cfg.BACKEND_URL)
	microphone = Microphone()
	controller = Controller(backend, microphone, Speaker(), on_status=print_status)
	app = ManualApp(controller)

	try:
		logger.info("Connected to server: %s", backend.health()["status"])
		controller.load_personas()
	except BackendError as e:
		print(f"Cannot connect to server at {cfg.BACKEND_URL}: {e}")
		print("Make sure main_api.py is running!")
		backend.close()
		return
	app.show_persona()

	# Start the background thread for processing interactions
	processing_thread = threading.Thread(target=app.processing_worker, daemon=True)
	processing_thread.start()

	# Start listening for hotkeys
	listener = keyboard.Listener(on_press=app.on_press, on_release=app.on_release)
	listener.start()
	print("\nHotkey listener started. Ready for interaction.")

	try:
		# The main thread will block here until the listener is stopped.
		listener.join()
	except KeyboardInterrupt:
		print("\nShutting down.")
	finally:
		# Cleanup
		if listener.is_alive():
			listener.stop()

		# Stop the processing thread gracefully
		app.processing_queue.put(None)
		processing_thread.join()

		controller.stop_playback()
		microphone.close()
		backend.close()
		print("Application stopped.")


if __name__ == "__main__":
	main()
