"""Process-scoped runtime state: job queue, attachment pairing, context cache."""

from feishubridge.runtime.attachments import AttachmentCorrelator
from feishubridge.runtime.context_cache import ConversationCache
from feishubridge.runtime.session_queue import SessionJobQueue

__all__ = ["AttachmentCorrelator", "ConversationCache", "SessionJobQueue"]
