"""流式响应的分帧解析。

网络 chunk 的边界与逻辑帧无关：一行 `data: {...}` 可能被切成多个 chunk，
一个多字节 UTF-8 字符也可能被拆开。这里的解码器是显式状态机，
在两次 feed 之间保存未完成的行与字节，只在拿到完整帧时输出。

- SseLineDecoder: Server-Sent-Events 风格，按行解析 `event:` / `data:` 字段。
  每个 `data:` 行即为一帧（OpenAI/Deepseek 每行一个 JSON），
  其前面最近的 `event:` 行作为该帧的事件名，空行重置事件名。
- NdjsonDecoder: 每行一个 JSON 对象（Ollama）。
"""

import codecs
import re
from dataclasses import dataclass
from typing import List, Optional

_EOL = re.compile(r"\r\n|\r|\n")


@dataclass(frozen=True)
class SseFrame:
    data: str
    event: Optional[str] = None


class _LineBuffer:
    """增量解码字节并切分完整行，行尾支持 \\n、\\r\\n 与单独的 \\r。

    chunk 末尾的 \\r 可能是被拆开的 \\r\\n，先留在缓冲里，等下一个字符到达再判断。
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, raw: bytes) -> List[str]:
        self._pending += self._decoder.decode(raw)
        text, held = self._pending, ""
        if text.endswith("\r"):
            text, held = text[:-1], "\r"
        *complete, rest = _EOL.split(text)
        self._pending = rest + held
        return complete

    def flush(self) -> List[str]:
        """输入结束：把没有换行结尾的残余内容当作最后一行返回。"""

        self._pending += self._decoder.decode(b"", final=True)
        rest, self._pending = self._pending, ""
        if rest.endswith("\r"):
            rest = rest[:-1]
        return [rest] if rest.strip() else []

    @property
    def has_pending(self) -> bool:
        return bool(self._pending.strip())


class SseLineDecoder:
    def __init__(self):
        self._lines = _LineBuffer()
        self._event: Optional[str] = None

    def feed(self, raw: bytes) -> List[SseFrame]:
        return self._frames(self._lines.feed(raw))

    def flush(self) -> List[SseFrame]:
        return self._frames(self._lines.flush())

    def _frames(self, lines: List[str]) -> List[SseFrame]:
        frames: List[SseFrame] = []
        for line in lines:
            if not line.strip():
                self._event = None
                continue
            if line.startswith(":"):
                # 注释/心跳
                continue
            name, _, value = line.partition(":")
            if name == "event":
                self._event = value.strip() or None
            elif name == "data":
                frames.append(SseFrame(data=value.strip(), event=self._event))
            elif name in ("id", "retry"):
                continue
            else:
                # 部分 Provider 出错时直接返回裸 JSON 行，整行按数据处理
                frames.append(SseFrame(data=line.strip(), event=self._event))
        return frames


class NdjsonDecoder:
    def __init__(self):
        self._lines = _LineBuffer()

    def feed(self, raw: bytes) -> List[str]:
        return [line.strip() for line in self._lines.feed(raw) if line.strip()]

    def flush(self) -> List[str]:
        return [line.strip() for line in self._lines.flush()]
