"""
Couch Signal - Signaling relay for peer-to-peer remote control

Introduces a mobile controller to a desktop host so the two can open a
direct WebRTC session (frames down, input events up). The relay only
brokers the introduction; no media passes through it.

Features:
- Presence registry with host roster broadcasts
- Offer/answer/ICE relay by endpoint id
- Ping sweep eviction of dead connections
- Controller and host session state machines on top of aiortc

Usage:
    couch-signal serve    # Start the signaling server
    couch-signal stop     # Stop the server
    couch-signal status   # Check server status
    couch-signal connect  # Run a headless controller
    couch-signal host     # Run a host that answers controllers
"""

__version__ = "1.0.0"
__author__ = "Couch Signal"
