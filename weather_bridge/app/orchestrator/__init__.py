"""
Orchestrator package — batch worker that calls the local endpoint.

Modules:
    batch         — triggers, per-location units of work, fixed-rate schedule
    provisioning  — access grants, reference locations, /health probe
"""
