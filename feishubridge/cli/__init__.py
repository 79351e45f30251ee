"""Command-line interface for feishu-bridge."""
