"""HTTP surface: routes and wire schemas for the local endpoint."""
