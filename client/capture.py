from __future__ import annotations

import asyncio
import fractions
import logging
import queue
from typing import Callable, List, Optional

import av
import cv2
import numpy as np
import sounddevice as sd
from aiortc import MediaStreamTrack, VideoStreamTrack
from aiortc.mediastreams import MediaStreamError

from shared.config import MediaConstraints

from .errors import MediaError, MediaErrorKind

logger = logging.getLogger(__name__)

AUDIO_CHANNELS = 1
AUDIO_FRAME_SECONDS = 0.02  # 20ms
PLAYBACK_SAMPLE_RATE = 48000
PLAYBACK_CHANNELS = 2
PLAYBACK_FRAME_SAMPLES = int(PLAYBACK_SAMPLE_RATE * AUDIO_FRAME_SECONDS)

FrameCallback = Callable[[np.ndarray], None]


class CameraTrack(VideoStreamTrack):
    """Webcam frames as an aiortc video track; disabled means black frames."""

    kind = "video"

    def __init__(self, capture: cv2.VideoCapture, width: int, height: int) -> None:
        super().__init__()
        self._capture = capture
        self._width = width
        self._height = height
        self._black = np.zeros((height, width, 3), dtype=np.uint8)
        self.enabled = True

    async def recv(self) -> av.VideoFrame:
        pts, time_base = await self.next_timestamp()
        image = self._black
        if self.enabled:
            frame = await asyncio.to_thread(self._read_frame)
            if frame is not None:
                image = frame
        video_frame = av.VideoFrame.from_ndarray(image, format="bgr24")
        video_frame.pts = pts
        video_frame.time_base = time_base
        return video_frame

    def _read_frame(self) -> Optional[np.ndarray]:
        ret, frame = self._capture.read()
        if not ret:
            return None
        return cv2.resize(frame, (self._width, self._height))

    def stop(self) -> None:
        super().stop()
        if self._capture is not None:
            self._capture.release()
            self._capture = None


class MicrophoneTrack(MediaStreamTrack):
    """Microphone samples as an aiortc audio track; disabled means silence."""

    kind = "audio"

    def __init__(self, sample_rate: int) -> None:
        super().__init__()
        self._sample_rate = sample_rate
        self._frame_samples = int(sample_rate * AUDIO_FRAME_SECONDS)
        self._loop = asyncio.get_running_loop()
        self._queue: "asyncio.Queue[np.ndarray]" = asyncio.Queue(maxsize=50)
        self._pts = 0
        self.enabled = True
        self._stream = sd.InputStream(
            samplerate=sample_rate,
            channels=AUDIO_CHANNELS,
            dtype="int16",
            blocksize=self._frame_samples,
            callback=self._capture_callback,
        )
        self._stream.start()

    def _capture_callback(self, indata, frames, time_info, status) -> None:  # pragma: no cover - audio callback
        if status:
            logger.warning("Audio input status: %s", status)
        samples = np.array(indata, dtype=np.int16).reshape(-1)
        self._loop.call_soon_threadsafe(self._enqueue, samples)

    def _enqueue(self, samples: np.ndarray) -> None:
        try:
            self._queue.put_nowait(samples)
        except asyncio.QueueFull:
            # Drop audio if the sender falls behind
            pass

    async def recv(self) -> av.AudioFrame:
        if self.readyState != "live":
            raise MediaStreamError
        samples = await self._queue.get()
        if not self.enabled:
            samples = np.zeros_like(samples)
        frame = av.AudioFrame.from_ndarray(samples.reshape(1, -1), format="s16", layout="mono")
        frame.sample_rate = self._sample_rate
        frame.pts = self._pts
        frame.time_base = fractions.Fraction(1, self._sample_rate)
        self._pts += samples.shape[0]
        return frame

    def stop(self) -> None:
        super().stop()
        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
            self._stream = None


def _open_camera(constraints: MediaConstraints) -> CameraTrack:
    capture = cv2.VideoCapture(constraints.camera_index)
    if not capture.isOpened():
        capture.release()
        raise MediaError(MediaErrorKind.DEVICE_UNAVAILABLE, f"Camera {constraints.camera_index} unavailable")
    capture.set(cv2.CAP_PROP_FRAME_WIDTH, constraints.width)
    capture.set(cv2.CAP_PROP_FRAME_HEIGHT, constraints.height)
    capture.set(cv2.CAP_PROP_FPS, constraints.fps)
    return CameraTrack(capture, constraints.width, constraints.height)


async def open_capture_devices(constraints: MediaConstraints) -> List[MediaStreamTrack]:
    """Open the requested devices; succeed as long as one of them works."""

    tracks: List[MediaStreamTrack] = []
    errors: List[MediaErrorKind] = []
    if constraints.audio:
        try:
            tracks.append(MicrophoneTrack(constraints.sample_rate))
        except PermissionError:
            logger.exception("Microphone access denied")
            errors.append(MediaErrorKind.PERMISSION_DENIED)
        except (sd.PortAudioError, OSError):
            logger.exception("Unable to open microphone")
            errors.append(MediaErrorKind.DEVICE_UNAVAILABLE)
    if constraints.video:
        try:
            tracks.append(await asyncio.to_thread(_open_camera, constraints))
        except MediaError as exc:
            logger.warning("Unable to open camera: %s", exc)
            errors.append(exc.kind)
        except PermissionError:
            logger.exception("Camera access denied")
            errors.append(MediaErrorKind.PERMISSION_DENIED)
    if not tracks:
        kind = MediaErrorKind.PERMISSION_DENIED if MediaErrorKind.PERMISSION_DENIED in errors else MediaErrorKind.DEVICE_UNAVAILABLE
        raise MediaError(kind, "No capture device could be opened")
    return tracks


class RemotePlayback:
    """Plays remote audio on the speakers and hands remote video frames to a callback."""

    def __init__(self, on_video_frame: Optional[FrameCallback] = None) -> None:
        self._on_video_frame = on_video_frame
        self._tasks: List[asyncio.Task[None]] = []
        self._play_stream: Optional[sd.OutputStream] = None
        self._play_queue: "queue.Queue[np.ndarray]" = queue.Queue(maxsize=32)

    def attach(self, track: MediaStreamTrack) -> None:
        if track.kind == "audio":
            self._ensure_output_stream()
            self._tasks.append(asyncio.create_task(self._consume_audio(track)))
        elif track.kind == "video":
            self._tasks.append(asyncio.create_task(self._consume_video(track)))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        if self._play_stream is not None:
            self._play_stream.stop()
            self._play_stream.close()
            self._play_stream = None

    def _ensure_output_stream(self) -> None:
        if self._play_stream is not None:
            return
        try:
            self._play_stream = sd.OutputStream(
                samplerate=PLAYBACK_SAMPLE_RATE,
                channels=PLAYBACK_CHANNELS,
                dtype="int16",
                blocksize=PLAYBACK_FRAME_SAMPLES,
                callback=self._playback_callback,
            )
            self._play_stream.start()
        except (sd.PortAudioError, OSError):  # pragma: no cover - hardware dependent
            logger.exception("Unable to open speaker output")
            self._play_stream = None

    async def _consume_audio(self, track: MediaStreamTrack) -> None:
        try:
            while True:
                frame = await track.recv()
                samples = frame.to_ndarray().reshape(-1, PLAYBACK_CHANNELS if len(frame.layout.channels) == 2 else 1)
                if samples.shape[1] == 1:
                    samples = np.repeat(samples, PLAYBACK_CHANNELS, axis=1)
                try:
                    self._play_queue.put_nowait(samples.astype(np.int16))
                except queue.Full:
                    pass
        except MediaStreamError:
            logger.info("Remote audio track ended")

    async def _consume_video(self, track: MediaStreamTrack) -> None:
        try:
            while True:
                frame = await track.recv()
                if self._on_video_frame is None:
                    continue
                try:
                    self._on_video_frame(frame.to_ndarray(format="bgr24"))
                except Exception:
                    logger.exception("Remote video frame callback failed")
        except MediaStreamError:
            logger.info("Remote video track ended")

    def _playback_callback(self, outdata, frames, time_info, status) -> None:  # pragma: no cover - audio callback
        if status:
            logger.warning("Audio output status: %s", status)
        try:
            chunk = self._play_queue.get_nowait()
        except queue.Empty:
            outdata.fill(0)
            return
        if chunk.shape[0] < frames:
            padded = np.zeros((frames, PLAYBACK_CHANNELS), dtype=np.int16)
            padded[: chunk.shape[0]] = chunk
        else:
            padded = chunk[:frames]
        outdata[:] = padded
