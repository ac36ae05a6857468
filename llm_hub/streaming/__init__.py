"""流式管道：把 transport 字节流转换为带背压的 StreamEvent 序列。"""

from llm_hub.streaming.pump import StreamPump

__all__ = ["StreamPump"]
