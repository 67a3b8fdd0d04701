"""Craft Relay — realtime hub between dashboards and in-game computers.

  - messages:   envelope model, validation and sanitization
  - registry:   connection tracking, delivery and heartbeat
  - router:     per-kind dispatch of inbound envelopes
  - websocket:  the /ws endpoint
  - device_api: HTTP ingestion for devices without WebSocket support
  - config:     settings read from RELAY_* environment variables
  - server:     FastAPI app and entry point
"""
