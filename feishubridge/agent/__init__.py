"""External assistant invocation."""

from feishubridge.agent.runner import AgentAdapter, AgentRunner, resolve_runner

__all__ = ["AgentAdapter", "AgentRunner", "resolve_runner"]
