"""Subscriber resolution and message rendering."""

from alertrelay_engine.subscribers.preferences import QuietHours, SubscriberPreferences
from alertrelay_engine.subscribers.resolver import SubscriberResolver
from alertrelay_engine.subscribers.templates import MessageRenderer, escape_markdown

__all__ = [
    "MessageRenderer",
    "QuietHours",
    "SubscriberPreferences",
    "SubscriberResolver",
    "escape_markdown",
]
