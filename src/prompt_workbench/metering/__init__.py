"""Usage metering: events, bus, meter and recorder."""

from prompt_workbench.metering.bus import EventBus
from prompt_workbench.metering.events import RunCreated, UsageMetered
from prompt_workbench.metering.meter import (
    EventUsageMeter,
    MeteringFailureLog,
    UsageMeter,
    UsageRecorder,
)
from prompt_workbench.metering.pipeline import MeteringPipeline, build_metering_pipeline

__all__ = [
    "EventBus",
    "EventUsageMeter",
    "MeteringFailureLog",
    "MeteringPipeline",
    "RunCreated",
    "UsageMeter",
    "UsageMetered",
    "UsageRecorder",
    "build_metering_pipeline",
]
