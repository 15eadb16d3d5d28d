"""
callcoach - real-time sales call coaching backend.

Ingests live transcript segments over a WebSocket, drives a per-conversation
coaching state machine, and pushes AI-generated "next thing to say" tips back
to the agent.
"""

__version__ = "0.1.0"
