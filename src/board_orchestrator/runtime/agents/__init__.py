"""Agent process lifecycle and output stream decoding."""

from .manager import AgentProcessManager, create_agent_manager
from .protocol import StreamDecoder, StreamRecord

__all__ = ["AgentProcessManager", "StreamDecoder", "StreamRecord", "create_agent_manager"]
