"""Partner Admin Link tooling for Microsoft Entra tenants.

This package exposes helper classes for authentication, configuration loading,
Azure Management API calls, auditing, tenant discovery, and partner link
reconciliation.
"""
