"""
Services package - Business logic layer.

This package contains the business logic that operates on Django models
but is decoupled from the HTTP/WebSocket layer.

Modules:
    - dispatch: Sequential rider offers, timers, retries and phone mappings
    - messaging: Outbound rider notifications (uChat)
    - delivery_management: Delivery lifecycle operations used by the views

Sub-packages are imported explicitly (``from services.dispatch import ...``)
because ``delivery_management`` needs the app registry to be ready.
"""
