"""
RiskAnalysis - Device Security Dashboard
=========================================

Backend for a mobile security-score dashboard:
- Bounded, fixed-cadence device security scans
- Recommendation rules derived from the final scan snapshot
- Default-data seeding for first use
- Live dashboard state fed by document store subscriptions
- Email/password identity with biometric unlock

Modules:
--------
- services.store: document store over SQLAlchemy async
- services.scan: scan orchestrator (Idle/Scanning state machine)
- services.recommendations: recommendation derivation rules
- services.seeding: default data seeding
- services.dashboard: dashboard state model
- services.identity: identity provider
- services.probe: device/network probes
"""

__version__ = "1.0.0"

__all__ = ["__version__"]
