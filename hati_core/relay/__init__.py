"""流式 relay：把上游 SSE 增量转成面向客户端的事件流。"""

from hati_core.relay.base import ConversationLocks
from hati_core.relay.chat_relay import ChatRelay, StreamSession
from hati_core.relay.speech_relay import SpeechRelay, SpeechSession

__all__ = ["ConversationLocks", "ChatRelay", "StreamSession", "SpeechRelay", "SpeechSession"]
