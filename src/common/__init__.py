"""
Shared infrastructure for Kiosk Screen Agent: configuration, logging,
device information and the identity store clients.
"""
