"""
Typed event bus shared by the metrics and controller packages.
"""

from .bus import EventBus, EventType, AlertEvent, ScalingActionEvent, Event

__all__ = ['EventBus', 'EventType', 'AlertEvent', 'ScalingActionEvent', 'Event']
