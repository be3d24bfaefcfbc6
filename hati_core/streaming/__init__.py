from hati_core.streaming.framer import SSELineFramer

__all__ = ["SSELineFramer"]
