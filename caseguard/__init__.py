"""
caseguard -- Authorization, Tenant Isolation & Workload Assignment
===================================================================

The engine every read and mutation of a multi-organization social-services
case-management platform passes through.  Provides a hierarchical
role/permission registry, strict per-organization data isolation with a
superadmin override, least-loaded assignment of clients and appointments to
eligible workers, and an append-only, tamper-evident audit trail.

The engine trusts an already-authenticated subject identifier; identity
verification, UI, reporting and notification delivery live elsewhere.
"""

__version__ = "0.1.0"
