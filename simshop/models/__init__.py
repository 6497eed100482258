from simshop.models.user import User
from simshop.models.order import (
    Order,
    OrderAdjustment,
    OrderStatus,
    PaymentMethod,
    RefundMethod,
    RETRYABLE_STATUSES,
    PROVISIONABLE_STATUSES,
)
from simshop.models.esim_profile import EsimProfile, UsageHistory
from simshop.models.commission import Affiliate, Referral, Commission, CommissionStatus
from simshop.models.balance import BalanceAccount, BalanceTransaction, BalanceTransactionType
from simshop.models.admin_settings import AdminSettings, SETTINGS_ROW_ID

__all__ = [
    "User",
    "Order",
    "OrderAdjustment",
    "OrderStatus",
    "PaymentMethod",
    "RefundMethod",
    "RETRYABLE_STATUSES",
    "PROVISIONABLE_STATUSES",
    "EsimProfile",
    "UsageHistory",
    "Affiliate",
    "Referral",
    "Commission",
    "CommissionStatus",
    "BalanceAccount",
    "BalanceTransaction",
    "BalanceTransactionType",
    "AdminSettings",
    "SETTINGS_ROW_ID",
]
