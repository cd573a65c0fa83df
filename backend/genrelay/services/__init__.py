"""Services module.

This module provides the service layer:
- exceptions: Error taxonomy shared by server and client
- tokens: JWT verification and expiry inspection
- realtime: Subscription registry, control messages and event publishing
"""
