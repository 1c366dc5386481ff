"""
IoT Telemetry Publisher: device-side MQTT publishing agent.

Authenticates to the MQTT bridge with a short-lived JWT, publishes a bounded
sequence of generator readings, and rotates the JWT before reconnecting when
it ages past its validity window.
"""
