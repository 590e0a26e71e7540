"""
Screen package for Kiosk Screen Agent.
Contains the registration state machine, heartbeat/poll loop,
assignment watcher, connection health monitor and process controls.
"""
