"""
Services
Source client, poller, event bus and the service container.
"""

from .events import EventBus, EVENT_NAMES
from .source import FileMakerClient, RecordSource
from .poller import Poller, PollerStats
from .container import PipelineServices, build_services

__all__ = [
    "EventBus",
    "EVENT_NAMES",
    "FileMakerClient",
    "RecordSource",
    "Poller",
    "PollerStats",
    "PipelineServices",
    "build_services",
]
