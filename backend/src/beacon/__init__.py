"""Beacon realtime coordination core."""
