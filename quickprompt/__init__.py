"""
QuickPrompt: a keyboard-activated conversational widget core.

Press the hotkey, type a prompt, watch the answer stream in from a local model,
and keep every completed exchange in a local history store. The package holds
the headless core (state machine, generation gateway, record store and
activation surface); rendering is left to the embedding host.
"""

from .activation import ActivationSurface, Bounds, Hotkey, HostEvents, KeyEvent, PointerEvent
from .config import WidgetConfig
from .events import EventBus, Notification
from .exceptions import (
    AppleFMSetupError,
    CapacityExceededError,
    GenerationFailure,
    GenerationTimeout,
    ModelLoadError,
    NotReadyError,
    QuickPromptError,
    StorageFailure,
    ValidationError,
)
from .gateway import GenerationGateway
from .records import ConversationRecord, RecordSummary
from .session import FocusTarget, Session, SessionStateMachine, Visibility
from .store import MemoryRecordBackend, RecordStore, SQLiteRecordBackend
from .widget import ChatWidget

__all__ = [
    "ActivationSurface",
    "AppleFMSetupError",
    "Bounds",
    "CapacityExceededError",
    "ChatWidget",
    "ConversationRecord",
    "EventBus",
    "FocusTarget",
    "GenerationFailure",
    "GenerationGateway",
    "GenerationTimeout",
    "Hotkey",
    "HostEvents",
    "KeyEvent",
    "MemoryRecordBackend",
    "ModelLoadError",
    "NotReadyError",
    "Notification",
    "PointerEvent",
    "QuickPromptError",
    "RecordStore",
    "RecordSummary",
    "SQLiteRecordBackend",
    "Session",
    "SessionStateMachine",
    "StorageFailure",
    "ValidationError",
    "Visibility",
    "WidgetConfig",
]
