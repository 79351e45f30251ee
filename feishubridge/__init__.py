"""feishu-bridge - Feishu/Lark webhook bridge for long-running CLI agents."""

__version__ = "0.1.0"
__logo__ = "🪽"
