"""Session bridge between a phone media stream and the realtime AI."""

from .dispatcher import ToolDispatcher
from .notifications import NotificationLedger, PostCallNotifier
from .realtime_bridge import SessionBridge
from .session import BridgeState, CallSession

__all__ = [
    "BridgeState",
    "CallSession",
    "NotificationLedger",
    "PostCallNotifier",
    "SessionBridge",
    "ToolDispatcher",
]
