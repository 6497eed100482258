"""SIM profile storefront: order-to-provisioning reconciliation engine."""

__version__ = "1.0.0"
