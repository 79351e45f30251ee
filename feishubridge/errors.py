"""Exception types shared across the bridge."""

from __future__ import annotations


class BridgeError(RuntimeError):
    """Base class for every error raised by the bridge."""


class ConfigurationError(BridgeError):
    """Missing or malformed configuration (secrets, runner, directories)."""


class DecryptFailure(BridgeError):
    """No decryption candidate produced a JSON payload."""

    def __init__(self, message: str, attempts: list[str] | None = None) -> None:
        self.attempts = list(attempts or [])
        if self.attempts:
            message = f"{message}: {' | '.join(self.attempts[:4])}"
        super().__init__(message)


class MalformedEventError(BridgeError):
    """Inbound event is structurally broken; it is ignored and acked."""


class DownloadTooLarge(BridgeError):
    """Inbound resource exceeds the configured download cap."""

    def __init__(self, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(f"download too large: {size} > {limit}")


class FeishuAPIError(BridgeError):
    """Feishu REST call returned a non-success response."""

    def __init__(self, action: str, status: int, body: str) -> None:
        self.action = action
        self.status = status
        self.body = body
        super().__init__(f"{action} error: http={status} body={body[:800]}")


class AgentError(BridgeError):
    """Base class for agent invocation failures."""


class AgentTimeout(AgentError):
    """The agent exceeded the hard timeout and was killed."""


class AgentNotFound(AgentError):
    """No runnable agent binary could be located."""


class AgentNonZeroExit(AgentError):
    """The agent process exited with a non-zero status."""

    def __init__(self, runner: str, code: int | None, stderr: str) -> None:
        self.code = code
        self.stderr = stderr
        super().__init__(f"{runner} agent failed code={code} stderr={stderr.strip()[:800]}")


class AgentMalformedOutput(AgentError):
    """Agent output held no usable JSON reply."""


class DeliveryFailure(BridgeError):
    """An attachment could not be resolved, uploaded or sent."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}")
