"""Measurement store: location registry and append-only measurements."""
