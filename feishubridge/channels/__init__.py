"""Feishu channel: event normalization and the REST client."""

from feishubridge.channels.feishu_api import ChatClient, FeishuClient
from feishubridge.channels.normalizer import normalize, passes_group_gate

__all__ = ["ChatClient", "FeishuClient", "normalize", "passes_group_gate"]
