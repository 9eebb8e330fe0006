"""Handler table keyed by EventType, complete by construction"""
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Type

from pydantic import BaseModel


@dataclass(frozen=True)
class Registration:
    handler: Callable
    payload_model: Type[BaseModel]


class HandlerRegistry:
    """Maps each member of an event enum to exactly one handler.

    ``seal()`` must run once every handler module is imported; it raises
    if any member is left without a handler, so a missing handler is an
    import error rather than a dispatch-time surprise.
    """

    def __init__(self, event_enum: Type[Enum]):
        self._event_enum = event_enum
        self._registrations: Dict[Enum, Registration] = {}
        self._sealed = False

    def register(self, event_type, payload_model: Type[BaseModel]):
        event_type = self._event_enum(event_type)

        def decorator(handler: Callable) -> Callable:
            if self._sealed:
                raise RuntimeError(f"Cannot register {event_type.value}: registry is sealed")
            if event_type in self._registrations:
                existing = self._registrations[event_type].handler.__name__
                raise RuntimeError(
                    f"Duplicate handler for {event_type.value}: {handler.__name__} (already {existing})"
                )
            self._registrations[event_type] = Registration(handler=handler, payload_model=payload_model)
            return handler

        return decorator

    def seal(self) -> "HandlerRegistry":
        missing = [member.value for member in self._event_enum if member not in self._registrations]
        if missing:
            raise RuntimeError(f"No handler registered for event type(s): {', '.join(missing)}")
        self._sealed = True
        return self

    def get(self, event_type) -> Registration:
        if not self._sealed:
            raise RuntimeError("Handler registry used before it was sealed")
        return self._registrations[self._event_enum(event_type)]

    def __contains__(self, event_type) -> bool:
        return event_type in self._registrations

    def __len__(self) -> int:
        return len(self._registrations)
