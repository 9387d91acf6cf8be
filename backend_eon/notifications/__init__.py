"""
Notifications: season-completion push dispatch.
"""

from backend_eon.notifications.neynar import NeynarNotifier, SeasonNotifier

__all__ = ["NeynarNotifier", "SeasonNotifier"]
