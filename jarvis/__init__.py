"""Jarvis Hub — home-automation assistant backend.

Routes spoken or typed commands to device-control skills behind a
policy-gated PIN/TOTP authorization handshake, and keeps a live inventory
of the local network through concurrent multi-protocol discovery.

Quickstart::

    from jarvis.hub import Hub

    hub = Hub.from_env()
    await hub.start()
    result = await hub.scanner.scan_network("192.168.1.0/24")
    await hub.stop()
"""

__version__ = "1.0.0"
