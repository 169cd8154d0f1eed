"""Multi-tenant prompt workbench: tenancy, usage metering, entitlements."""

__version__ = "0.1.0"
