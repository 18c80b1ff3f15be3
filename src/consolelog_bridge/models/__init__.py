"""Typed models shared by the codec, resolver and connection manager."""
