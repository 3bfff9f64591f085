"""
Activation Surface — turns host input events into state machine transitions.

The host owns the real keyboard and pointer; it only has to expose an
``EventTarget`` (``add_listener``/``remove_listener``) and describe where the
widget is drawn. The surface maps:

- the platform hotkey (Meta+K on macOS, Ctrl+K elsewhere) -> ``activate``
- Escape while visible                                   -> cancel-or-hide
- Enter (no Shift) with the input focused                -> ``submit``
- pointer press on the input                             -> refocus-input
- pointer press outside the widget, not generating       -> ``hide``
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, Union

from .session import FocusTarget, SessionStateMachine, Visibility

logger = logging.getLogger("quickprompt.activation")

KEYDOWN = "keydown"
POINTERDOWN = "pointerdown"


@dataclass
class KeyEvent:
    key: str
    ctrl: bool = False
    meta: bool = False
    shift: bool = False
    alt: bool = False
    default_prevented: bool = False
    propagation_stopped: bool = False

    def prevent_default(self) -> None:
        self.default_prevented = True

    def stop_propagation(self) -> None:
        self.propagation_stopped = True


@dataclass
class PointerEvent:
    x: float
    y: float
    default_prevented: bool = False
    propagation_stopped: bool = False

    def prevent_default(self) -> None:
        self.default_prevented = True

    def stop_propagation(self) -> None:
        self.propagation_stopped = True


HostEvent = Union[KeyEvent, PointerEvent]


@dataclass(frozen=True)
class Bounds:
    """Axis-aligned rectangle in host coordinates."""

    x: float
    y: float
    width: float
    height: float

    def contains(self, x: float, y: float) -> bool:
        return self.x <= x <= self.x + self.width and self.y <= y <= self.y + self.height


@dataclass(frozen=True)
class Hotkey:
    key: str = "k"
    modifier: str = "ctrl"

    @classmethod
    def for_platform(cls, key: str = "k", platform: str | None = None) -> Hotkey:
        platform = sys.platform if platform is None else platform
        return cls(key=key, modifier="meta" if platform == "darwin" else "ctrl")

    def matches(self, event: KeyEvent) -> bool:
        if event.key.lower() != self.key.lower():
            return False
        return bool(getattr(event, self.modifier, False))

    def __str__(self) -> str:
        label = "Cmd" if self.modifier == "meta" else self.modifier.capitalize()
        return f"{label}+{self.key.upper()}"


class EventTarget(Protocol):
    def add_listener(self, kind: str, listener: Callable[[Any], Any]) -> None: ...

    def remove_listener(self, kind: str, listener: Callable[[Any], Any]) -> None: ...


class HostEvents:
    """Minimal in-process ``EventTarget``: listeners run in registration order
    until one stops propagation."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Callable[[Any], Any]]] = defaultdict(list)

    def add_listener(self, kind: str, listener: Callable[[Any], Any]) -> None:
        if listener not in self._listeners[kind]:
            self._listeners[kind].append(listener)

    def remove_listener(self, kind: str, listener: Callable[[Any], Any]) -> None:
        listeners = self._listeners.get(kind)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def dispatch(self, kind: str, event: HostEvent) -> HostEvent:
        for listener in list(self._listeners.get(kind, ())):
            listener(event)
            if event.propagation_stopped:
                break
        return event

    def listener_count(self, kind: str | None = None) -> int:
        if kind is None:
            return sum(len(listeners) for listeners in self._listeners.values())
        return len(self._listeners.get(kind, ()))


class ActivationSurface:
    """Binds host events to a ``SessionStateMachine`` for one widget instance."""

    def __init__(
        self,
        machine: SessionStateMachine,
        hotkey: Hotkey | None = None,
        bounds: Bounds | None = None,
        input_bounds: Bounds | None = None,
    ) -> None:
        self.machine = machine
        self.hotkey = hotkey if hotkey is not None else Hotkey.for_platform()
        self.bounds = bounds
        self.input_bounds = input_bounds
        self._host: EventTarget | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def mounted(self) -> bool:
        return self._host is not None

    def set_bounds(self, bounds: Bounds | None, input_bounds: Bounds | None = None) -> None:
        """Update where the widget (and its input) is currently drawn."""
        self.bounds = bounds
        self.input_bounds = input_bounds

    def mount(self, host: EventTarget) -> None:
        if self._host is host:
            return
        if self._host is not None:
            self.unmount()
        host.add_listener(KEYDOWN, self.handle_key)
        host.add_listener(POINTERDOWN, self.handle_pointer)
        self._host = host
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None
        logger.debug("[QuickPrompt Activation] Listening for %s", self.hotkey)

    def unmount(self) -> None:
        host, self._host = self._host, None
        self._loop = None
        if host is None:
            return
        host.remove_listener(KEYDOWN, self.handle_key)
        host.remove_listener(POINTERDOWN, self.handle_pointer)

    def handle_key(self, event: KeyEvent) -> bool:
        """Returns True when the event was consumed by the widget."""
        session = self.machine.session
        if self.hotkey.matches(event):
            # The widget owns its hotkey even when the host binds the same chord.
            event.prevent_default()
            event.stop_propagation()
            self.machine.activate()
            return True

        if not session.visible:
            return False

        if event.key == "Escape":
            event.prevent_default()
            self.machine.dismiss()
            return True

        if (
            event.key == "Enter"
            and not event.shift
            and session.visibility is Visibility.INPUT_ACTIVE
            and session.focus_target is FocusTarget.INPUT
        ):
            event.prevent_default()
            self.machine.submit(session.current_prompt)
            return True
        return False

    def handle_pointer(self, event: PointerEvent) -> bool:
        session = self.machine.session
        if not session.visible:
            return False
        if self.input_bounds is not None and self.input_bounds.contains(event.x, event.y):
            self.machine.click_input()
            return True
        if self.bounds is None or self.bounds.contains(event.x, event.y):
            return False
        if session.is_generating:
            return False
        self.machine.hide()
        return True

    def feed_threadsafe(self, event: HostEvent) -> None:
        """Deliver *event* from a foreign thread (e.g. a native keyboard hook)."""
        if self._loop is None:
            raise RuntimeError("ActivationSurface must be mounted inside a running event loop")
        handler = self.handle_key if isinstance(event, KeyEvent) else self.handle_pointer
        self._loop.call_soon_threadsafe(handler, event)

    def __repr__(self) -> str:
        return f"ActivationSurface(hotkey={str(self.hotkey)!r}, mounted={self.mounted})"
