"""termlink -- Remote shell sessions over a rendezvous relay.

A host endpoint exposes a shell, a viewer endpoint drives it. Both meet
on a signaling server that pairs them and relays their traffic, and they
upgrade to a direct WebRTC data channel whenever the network allows,
falling back to the relay when it does not.
"""

__version__ = "0.1.0"
