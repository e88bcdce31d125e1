"""WebRTC signalling helpers."""
