"""Pipeline facade and event stream."""

from alertrelay_engine.core.events import ALL_EVENTS, EventBus
from alertrelay_engine.core.pipeline import IngestResult, SignalPipeline

__all__ = ["ALL_EVENTS", "EventBus", "IngestResult", "SignalPipeline"]
