# Services module
from simshop.services.checkout_service import CheckoutService
from simshop.services.reconciliation_service import PaymentReconciler
from simshop.services.provisioning_service import ProvisioningOrchestrator
from simshop.services.side_effect_service import SideEffectPipeline
from simshop.services.refund_service import RefundService
from simshop.services.profile_service import ProfileService
from simshop.services.context import EngineContext, get_engine_context

__all__ = [
    "CheckoutService",
    "PaymentReconciler",
    "ProvisioningOrchestrator",
    "SideEffectPipeline",
    "RefundService",
    "ProfileService",
    "EngineContext",
    "get_engine_context",
]
