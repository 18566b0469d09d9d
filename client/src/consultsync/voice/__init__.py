"""WebRTC signalling relay for voice and video consultations."""

from .signaling import (  # noqa: F401
    MediaCapability,
    SignalEnvelope,
    SignalingRelay,
    build_signal_envelope,
    normalise_signal_type,
)

__all__ = [
    "MediaCapability",
    "SignalEnvelope",
    "SignalingRelay",
    "build_signal_envelope",
    "normalise_signal_type",
]
