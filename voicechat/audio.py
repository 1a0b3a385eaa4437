import io
import logging
import threading
from typing import Callable

import numpy as np
import sounddevice as sd
import soundfile as sf
from scipy.io.wavfile import write

import config as cfg
from voicechat.errors import MicrophonePermissionDenied

logger = logging.getLogger(__name__)


class Microphone:
	"""Push-to-talk capture on a single input stream.

    The stream is opened on first use and kept for the life of the process;
    each turn only starts and stops it.
    """

	def __init__(self, sample_rate: int = cfg.SAMPLE_RATE, channels: int = cfg.CHANNELS):
		self.sample_rate = sample_rate
		self.channels = channels
		self.lock = threading.Lock()
		self.is_recording = False
		self.audio_frames = []
		self._stream: sd.InputStream | None = None

	def _audio_callback(self, indata, frames, time, status):
		"""This is called (from a separate thread) for each audio block."""
		if status:
			logger.warning("Audio stream status: %s", status)
		with self.lock:
			if self.is_recording:
				self.audio_frames.append(indata.copy())

	def open(self):
		if self._stream is not None:
			return
		try:
			self._stream = sd.InputStream(samplerate=self.sample_rate,
			                              channels=self.channels,
			                              callback=self._audio_callback,
			                              dtype='float32')
		except sd.PortAudioError as e:
			raise MicrophonePermissionDenied(str(e)) from e
		logger.info("Microphone opened (%d Hz, %d channel)", self.sample_rate,
		            self.channels)

	def start(self):
		with self.lock:
			self.audio_frames = []
			self.is_recording = True
		try:
			self._stream.start()
		except sd.PortAudioError as e:
			# Device unplugged or taken since it was opened.
			with self.lock:
				self.is_recording = False
			raise MicrophonePermissionDenied(str(e)) from e

	def stop(self) -> bytes:
		"""Stops capture and returns the take as WAV bytes (empty if silent)."""
		self._stream.stop()
		with self.lock:
			self.is_recording = False
			frames, self.audio_frames = self.audio_frames, []
		if not frames:
			return b""
		buf = io.BytesIO()
		write(buf, self.sample_rate, np.concatenate(frames, axis=0))
		return buf.getvalue()

	def close(self):
		if self._stream is None:
			return
		self._stream.close()
		self._stream = None


class Speaker:
	"""Plays one clip at a time; starting a new clip stops the current one."""

	def play(self, audio: bytes, on_finished: Callable[[], None] | None = None):
		data, samplerate = sf.read(io.BytesIO(audio), dtype='float32')
		sd.play(data, samplerate)

		def wait():
			sd.wait()  # returns early when sd.stop() is called
			if on_finished:
				on_finished()

		threading.Thread(target=wait, daemon=True).start()

	def stop(self):
		sd.stop()
