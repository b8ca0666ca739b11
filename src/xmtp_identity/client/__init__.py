"""
XMTP Identity Client Module

This module contains the client side of the identity lifecycle:
- Keystore provider chain
- Identity manager state machine
- Client facade
"""

__all__ = []
