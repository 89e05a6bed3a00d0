"""
Realtime app for WebSocket communication with operators.

Key Components:
    - broadcast.py: Dispatch outcome events sent to the operators group
    - consumers/: WebSocket consumers (operators' delivery feed)
    - middleware.py: JWT/Cookie authentication middleware for WebSocket connections

Usage:
    from realtime.broadcast import notify_operators_event
    from realtime.consumers import DeliveryOpsConsumer
"""
