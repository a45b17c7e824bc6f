# trigger.py
from __future__ import annotations

from typing import Any, List, Mapping, Union

from .errors import InvalidEvent
from .model import Event, PipelineDefinition


def parse_event(data: Union[Event, Mapping[str, Any]]) -> Event:
    """Accept an Event or its dict form; raise InvalidEvent when malformed."""
    if isinstance(data, Event):
        if data.kind is None:
            raise InvalidEvent("event is missing 'kind'")
        return data
    return Event.from_dict(data)


def matching_jobs(pipeline: PipelineDefinition, event: Event) -> List[str]:
    """Names of the jobs whose trigger filter contains the event kind."""
    event = parse_event(event)
    return [j.name for j in pipeline.jobs if event.kind in j.on]


def admit(pipeline: PipelineDefinition, event: Union[Event, Mapping[str, Any]]) -> bool:
    """True if the event should start a run of this pipeline."""
    return bool(matching_jobs(pipeline, parse_event(event)))
