"""Pipeline orchestrator module.

Coordinates work units through their lifecycle with:
- Step records persisted per unit, with crash recovery on startup
- A tracked chain executor with resume past finished steps
- The ingestion and publication schedulers
- Manual step retries and scheduler start/stop
"""

__all__ = []
