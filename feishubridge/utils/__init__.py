"""Utility functions for feishu-bridge."""

from feishubridge.utils.files import BridgePaths, ensure_dir, safe_file_name

__all__ = ["BridgePaths", "ensure_dir", "safe_file_name"]
