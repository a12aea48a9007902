"""
PlanetPlant server package.

Ingests ESP32 sensor telemetry over MQTT, keeps per-plant state in memory,
runs threshold-based watering automation, and drives the pump nodes with
single-shot watering commands. A FastAPI app exposes the state to the
dashboard.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-001)

TODO:
- None
"""
