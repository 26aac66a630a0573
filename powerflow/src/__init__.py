"""
Power-flow hub package.

Ingests batched device telemetry from the MQTT bus, rolls it up into
solar/grid/genset/load power-flow aggregates with carry-forward, persists
per-device time series in SQLite, and rebroadcasts data to WebSocket
clients subscribed to device or power-flow rooms.

CHANGELOG:
- 2026-10-06: Initial creation (STORY-101)

TODO:
- None
"""
