"""
TesseraFaults - Structured fault types.

Errors in Tessera are typed fault signals with a stable code, a domain and a
severity, so the boundary layer can switch on them without string matching.

Core exports:
- Fault: Base fault class
- FaultDomain: Domain enumeration
- Severity: Severity levels
"""

from .core import (
    DOMAIN_DEFAULTS,
    Fault,
    FaultDomain,
    Severity,
)

__all__ = [
    "DOMAIN_DEFAULTS",
    "Fault",
    "FaultDomain",
    "Severity",
]
