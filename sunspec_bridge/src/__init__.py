"""
Bridge daemon package for SunSpec inverter telemetry.

Polls a SolarEdge inverter over Modbus TCP, decodes the SunSpec inverter
register window, derives power/energy metrics per channel, and fans the
results out to a live cache, a local history database, and an MQTT broker.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""
