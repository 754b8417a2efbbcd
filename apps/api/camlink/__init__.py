"""Camera room signaling service and peer negotiation client."""

__version__ = "0.1.0"
