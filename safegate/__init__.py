"""
SafeGate Clinical Safety Gate
=============================

A Python library that sits in front of every mutation of a subject's health
profile.  Proposed changes are checked against the subject's recorded
medications, allergies, dietary restrictions and biometrics; a single policy
decides whether the change is allowed, allowed with warnings, held for
clinical approval, or blocked.  Every decision and every access to protected
health data is written to a tenant-isolated, hash-chained audit ledger, and
time-boxed break-glass access is available for emergencies.

DISCLAIMER: SafeGate is decision support.  It is not a medical device and
does not replace the judgment of a licensed clinician.  Catalog matching is
normalized whole-word and synonym lookup, not a clinical ontology.
"""

__version__ = "0.1.0"
