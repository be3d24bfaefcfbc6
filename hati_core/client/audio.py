"""音频事件流消费者与播放队列。

/tts 返回的每个 audio 事件是一段 base64 编码的 PCM16 小端单声道音频。这里负责：

- decode_pcm16: base64 -> int16 -> float32（除以 32768，范围 [-1, 1)）。
- PlaybackQueue: 线程安全的样本块队列，由音频设备回调按需拉取（拉模式）。
  队列暂时为空时补零而不是结束；complete() 之后播完尾部才触发 on_ended；
  clear() 立即丢弃所有未播放的样本，下一次拉取就是静音。
- SpeechPlayer: 把 HatiClient.stream_tts 的字节流解码并推入队列。
- PyAudioSink: 基于 PyAudio 回调流的输出设备（可选依赖，安装 extra "audio"）。
"""

import asyncio
import base64
import binascii
import threading
from collections import deque
from typing import Callable, Deque, Optional, Protocol

import numpy as np

from hati_core.config.settings import settings
from hati_core.domain.events import AudioEvent, DoneEvent, ErrorEvent, parse_event_line
from hati_core.infrastructure.logging.logger import logger
from hati_core.streaming.framer import SSELineFramer

PCM16_SCALE = np.float32(32768.0)


def decode_pcm16(b64: str) -> np.ndarray:
    """把 base64 PCM16 小端音频解码为 float32 样本。

    Raises:
        ValueError: base64 非法或字节数不是偶数。
    """

    try:
        raw = base64.b64decode(b64, validate=True)
    except binascii.Error as e:
        raise ValueError(f"invalid base64 audio: {e}") from e
    if len(raw) % 2:
        raise ValueError("PCM16 payload has an odd number of bytes")
    return np.frombuffer(raw, dtype="<i2").astype(np.float32) / PCM16_SCALE


class PlaybackQueue:
    def __init__(self, on_ended: Optional[Callable[[], None]] = None):
        self._lock = threading.Lock()
        self._blocks: Deque[np.ndarray] = deque()
        self._current: Optional[np.ndarray] = None
        self._offset = 0
        self._complete = False
        self._playing = False
        self.on_ended = on_ended

    @property
    def is_playing(self) -> bool:
        with self._lock:
            return self._playing

    @property
    def buffered(self) -> int:
        """尚未播放的样本数。"""
        with self._lock:
            return self._buffered_locked()

    def push(self, samples: np.ndarray) -> None:
        if samples.size == 0:
            return
        with self._lock:
            self._blocks.append(samples.astype(np.float32, copy=False))
            self._playing = True

    def complete(self) -> None:
        """上游已经发完；剩余样本照常播放，播完后触发 on_ended。"""

        with self._lock:
            self._complete = True
            ended = self._playing and self._buffered_locked() == 0
            if ended:
                self._playing = False
        if ended:
            self._fire_ended()

    def clear(self) -> None:
        """丢弃所有排队和播放到一半的样本。"""

        with self._lock:
            self._blocks.clear()
            self._current = None
            self._offset = 0
            self._complete = False
            self._playing = False

    def read(self, frames: int) -> np.ndarray:
        """取出 frames 个样本，不足部分补零。"""

        out = np.zeros(frames, dtype=np.float32)
        written = 0
        ended = False
        with self._lock:
            while written < frames:
                if self._current is None or self._offset >= len(self._current):
                    if not self._blocks:
                        break
                    self._current = self._blocks.popleft()
                    self._offset = 0
                take = min(frames - written, len(self._current) - self._offset)
                out[written:written + take] = self._current[self._offset:self._offset + take]
                written += take
                self._offset += take
            if self._complete and self._playing and self._buffered_locked() == 0:
                self._playing = False
                ended = True
        if ended:
            self._fire_ended()
        return out

    def _buffered_locked(self) -> int:
        pending = sum(len(b) for b in self._blocks)
        if self._current is not None:
            pending += len(self._current) - self._offset
        return pending

    def _fire_ended(self) -> None:
        if self.on_ended is not None:
            self.on_ended()


class AudioSink(Protocol):
    def start(self) -> None:
        ...

    def stop(self) -> None:
        ...


class PyAudioSink:
    """PyAudio 回调输出流，每次回调从 PlaybackQueue 拉取一个缓冲区。"""

    def __init__(self, queue: PlaybackQueue, sample_rate: int = 24000, frames_per_buffer: int = 1024):
        self._queue = queue
        self.sample_rate = sample_rate
        self._frames_per_buffer = frames_per_buffer
        self._pa = None
        self._stream = None
        self._continue_flag = 0

    def start(self) -> None:
        import pyaudio

        self._pa = pyaudio.PyAudio()
        self._continue_flag = pyaudio.paContinue
        self._stream = self._pa.open(
            format=pyaudio.paFloat32,
            channels=1,
            rate=self.sample_rate,
            output=True,
            frames_per_buffer=self._frames_per_buffer,
            stream_callback=self._callback,
        )
        self._stream.start_stream()

    def stop(self) -> None:
        if self._stream is not None:
            self._stream.stop_stream()
            self._stream.close()
            self._stream = None
        if self._pa is not None:
            self._pa.terminate()
            self._pa = None

    def _callback(self, in_data, frame_count, time_info, status):
        return self._queue.read(frame_count).tobytes(), self._continue_flag


class SpeechPlayer:
    """播放 /tts 的音频流。

    输出设备在第一次 speak() 时才初始化，并由 asyncio.Lock 保证只初始化一次；
    新的 speak() 会先清空上一段尚未播完的音频。
    """

    def __init__(
        self,
        client,
        sink_factory: Optional[Callable[[PlaybackQueue], AudioSink]] = None,
        sample_rate: Optional[int] = None,
    ):
        self._client = client
        self.sample_rate = sample_rate or settings.tts_sample_rate
        self._sink_factory = sink_factory or (lambda q: PyAudioSink(q, sample_rate=self.sample_rate))
        self._sink: Optional[AudioSink] = None
        self._init_lock = asyncio.Lock()
        self._generation = 0
        self.queue = PlaybackQueue(on_ended=self._on_ended)
        self.is_speaking = False

    async def ensure_sink(self) -> AudioSink:
        async with self._init_lock:
            if self._sink is None:
                sink = self._sink_factory(self.queue)
                sink.start()
                self._sink = sink
        return self._sink

    async def speak(self, text: str, voice: Optional[str] = None) -> None:
        await self.ensure_sink()
        self._generation += 1
        generation = self._generation
        self.queue.clear()
        self.is_speaking = True

        framer = SSELineFramer()
        stream = self._client.stream_tts(text, voice)
        try:
            async for chunk in stream:
                for line in framer.feed(chunk):
                    if generation != self._generation:
                        return
                    self._handle_line(line)
            if generation == self._generation:
                for line in framer.flush():
                    self._handle_line(line)
        except Exception:
            if generation == self._generation:
                self.is_speaking = False
            raise
        finally:
            await stream.aclose()

    def stop(self) -> None:
        self._generation += 1
        self.queue.clear()
        self.is_speaking = False

    async def close(self) -> None:
        self.stop()
        async with self._init_lock:
            if self._sink is not None:
                self._sink.stop()
                self._sink = None

    def _handle_line(self, line: str) -> None:
        event = parse_event_line(line)
        if isinstance(event, AudioEvent):
            try:
                self.queue.push(decode_pcm16(event.audio))
            except ValueError as e:
                logger.debug("Discarded audio chunk", extra={"extra": {"error": str(e)}})
        elif isinstance(event, (DoneEvent, ErrorEvent)):
            if isinstance(event, ErrorEvent):
                logger.warning("Speech stream error", extra={"extra": {"error": event.error}})
            self.queue.complete()
            if not self.queue.is_playing:
                self.is_speaking = False

    def _on_ended(self) -> None:
        self.is_speaking = False
