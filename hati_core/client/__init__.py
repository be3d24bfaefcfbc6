"""消费 Hati 事件流的客户端：HTTP 客户端、文本消费者与音频播放。"""

from hati_core.client.audio import PlaybackQueue, PyAudioSink, SpeechPlayer, decode_pcm16
from hati_core.client.consumer import ChatStreamConsumer, Transcript, TranscriptMessage
from hati_core.client.http import HatiClient

__all__ = [
    "ChatStreamConsumer",
    "HatiClient",
    "PlaybackQueue",
    "PyAudioSink",
    "SpeechPlayer",
    "Transcript",
    "TranscriptMessage",
    "decode_pcm16",
]
