"""
Flume Water exporter package.

Polls the Flume Water cloud API for device status and water usage on two
independent schedules and republishes the latest observed state as
Prometheus metrics.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""
