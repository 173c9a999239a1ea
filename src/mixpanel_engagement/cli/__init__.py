"""CLI package for mixpanel_engagement.

This module provides the `mpe` command-line interface. All commands
delegate to EngagementWorkspace or ConfigManager, adding only I/O
formatting.
"""

from mixpanel_engagement.cli.main import app

__all__ = ["app"]
