"""
Key20 BLE door lock.

Shared wire protocol and cryptography of the Key20 client (key20.client)
and the lock simulator (key20.server).
"""

__version__ = "0.1.0"
