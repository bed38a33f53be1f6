"""
wagate: multi-tenant WhatsApp Web gateway.

Runs many independent WhatsApp Web device sessions behind one HTTP API,
handles QR pairing and reconnection, and lets tenants send messages with
API keys.
"""

__version__ = "0.3.0"
