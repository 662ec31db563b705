"""Sensor Bridge -- serial telemetry fan-out service.

Reads ``toucher``/``voltage`` lines from a locally attached
microcontroller, turns them into ``SensorReading`` records and
republishes them, together with connection-health events, to any
number of subscribers.
"""

__version__ = "0.1.0"
