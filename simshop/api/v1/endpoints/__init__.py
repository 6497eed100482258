from simshop.api.v1.endpoints import orders, payments, esim, admin

__all__ = ["orders", "payments", "esim", "admin"]
