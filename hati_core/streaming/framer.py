"""SSE 增量分行器。

网络读取得到的字节块边界是任意的：一个多字节 UTF-8 字符、一行 `data: ...`
都可能被拆在两次读取之间。SSELineFramer 维护一个很小的状态机：

    解码缓冲（增量 UTF-8 解码器） + 行缓冲（未遇到换行的尾部文本）

每次 feed 只返回已经完整的行，剩余部分留到下一次 feed 时拼接。
上游 Provider、文本消费者和音频消费者共用这一实现。
"""

import codecs
from typing import List


class SSELineFramer:
    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    @property
    def pending(self) -> str:
        """尚未遇到换行的尾部文本。"""
        return self._buffer

    def feed(self, chunk: bytes | str) -> List[str]:
        """送入一个数据块，返回其中所有已完整的行（不含换行符）。"""

        if isinstance(chunk, bytes):
            text = self._decoder.decode(chunk)
        else:
            text = chunk
        if not text:
            return []
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        return [line[:-1] if line.endswith("\r") else line for line in lines]

    def flush(self) -> List[str]:
        """流结束时调用，返回最后一段没有换行结尾的文本（如果有）。"""

        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        self._decoder.reset()
        if tail.endswith("\r"):
            tail = tail[:-1]
        return [tail] if tail else []
