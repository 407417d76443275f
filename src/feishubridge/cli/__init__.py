"""Feishu bridge CLI.

Usage:
    feishu-bridge check
    feishu-bridge run --agent mypackage.agent:MyAgent
"""

from feishubridge.cli.app import app

__all__ = ["app"]
