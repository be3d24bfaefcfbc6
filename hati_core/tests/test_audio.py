import base64
import json

import numpy as np
import pytest

from hati_core.client.audio import PlaybackQueue, SpeechPlayer, decode_pcm16


def _b64(samples):
    return base64.b64encode(np.array(samples, dtype="<i2").tobytes()).decode("ascii")


def _sse(*payloads) -> bytes:
    return "".join(f"data: {json.dumps(p)}\n\n" for p in payloads).encode("utf-8")


def test_decode_pcm16_scaling():
    out = decode_pcm16(_b64([0, 16384, -16384, 32767]))
    assert out.dtype == np.float32
    assert out[0] == 0.0
    assert out[1] == 0.5
    assert out[2] == -0.5
    assert out[3] == pytest.approx(0.99997, abs=1e-5)


def test_decode_pcm16_rejects_bad_input():
    with pytest.raises(ValueError):
        decode_pcm16(base64.b64encode(b"\x00\x01\x02").decode())
    with pytest.raises(ValueError):
        decode_pcm16("not base64!!")


def test_queue_pads_with_silence_while_waiting():
    q = PlaybackQueue()
    q.push(np.array([0.1, 0.2, 0.3], dtype=np.float32))
    out = q.read(5)
    assert out.tolist() == pytest.approx([0.1, 0.2, 0.3, 0.0, 0.0])
    # 还没有 complete，队列空了也仍在播放
    assert q.is_playing
    assert q.read(2).tolist() == [0.0, 0.0]


def test_queue_reads_across_blocks():
    q = PlaybackQueue()
    q.push(np.array([1, 2], dtype=np.float32))
    q.push(np.array([3, 4, 5], dtype=np.float32))
    assert q.read(3).tolist() == [1, 2, 3]
    assert q.buffered == 2
    assert q.read(3).tolist() == [4, 5, 0]


def test_queue_fires_ended_after_tail_drains():
    ended = []
    q = PlaybackQueue(on_ended=lambda: ended.append(True))
    q.push(np.ones(4, dtype=np.float32))
    q.complete()
    assert ended == []
    q.read(3)
    assert ended == []
    q.read(3)
    assert ended == [True]
    assert not q.is_playing
    q.read(3)
    assert ended == [True]


def test_queue_complete_when_already_drained():
    ended = []
    q = PlaybackQueue(on_ended=lambda: ended.append(True))
    q.push(np.ones(2, dtype=np.float32))
    q.read(2)
    q.complete()
    assert ended == [True]


def test_queue_clear_silences_immediately():
    q = PlaybackQueue()
    q.push(np.ones(10, dtype=np.float32))
    q.read(3)
    q.clear()
    assert q.buffered == 0
    assert not q.is_playing
    assert q.read(4).tolist() == [0.0, 0.0, 0.0, 0.0]


class FakeSink:
    instances = 0

    def __init__(self, queue):
        FakeSink.instances += 1
        self.queue = queue
        self.started = False
        self.stopped = False

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True


class FakeClient:
    def __init__(self, bodies):
        self.bodies = list(bodies)
        self.calls = []

    async def stream_tts(self, text, voice=None):
        self.calls.append((text, voice))
        raw = self.bodies.pop(0)
        for i in range(0, len(raw), 7):
            yield raw[i:i + 7]


async def test_speech_player_plays_and_reinitialises_once():
    FakeSink.instances = 0
    first = _sse({"audio": _b64([16384] * 4)}, {"audio": _b64([-16384] * 2)}, {"done": True})
    second = _sse({"audio": _b64([0] * 3)}, {"done": True})
    player = SpeechPlayer(FakeClient([first, second]), sink_factory=FakeSink)

    await player.speak("one")
    assert FakeSink.instances == 1
    assert player.is_speaking
    assert player.queue.buffered == 6

    # 新的一句会丢弃上一句没播完的部分
    await player.speak("two", voice="nova")
    assert FakeSink.instances == 1
    assert player.queue.buffered == 3

    player.queue.read(8)
    assert not player.is_speaking

    sink = player._sink
    await player.close()
    assert sink.stopped


async def test_speech_player_error_event_stops_speaking():
    player = SpeechPlayer(FakeClient([_sse({"error": "TTS failed"})]), sink_factory=FakeSink)
    await player.speak("x")
    assert not player.is_speaking
    assert player.queue.buffered == 0


async def test_speech_player_skips_undecodable_chunk():
    body = _sse({"audio": "@@@"}, {"audio": _b64([1, 2])}, {"done": True})
    player = SpeechPlayer(FakeClient([body]), sink_factory=FakeSink)
    await player.speak("x")
    assert player.queue.buffered == 2
