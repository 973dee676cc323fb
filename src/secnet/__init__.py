"""
SecNet consent core.

Consent ledger, layered verification, commitment proofs, verifiable
credentials, encrypted content storage and anomaly monitoring.
Build everything with ``secnet.services.build_services``.
"""

__version__ = "0.1.0"
