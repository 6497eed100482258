"""
Order notifications: builds template variables from an order and hands them
to the notification dispatcher. Delivery failures are logged and reported
back, never raised.
"""

import logging
import uuid
from typing import Any, Dict, Optional, TYPE_CHECKING

from sqlalchemy import select

from simshop.models.esim_profile import EsimProfile
from simshop.models.order import Order
from simshop.models.user import User
from simshop.services.email_service import DeliveryResult

if TYPE_CHECKING:
    from simshop.services.context import EngineContext

logger = logging.getLogger(__name__)


def format_money(cents: int, currency: str) -> str:
    return f"{cents / 100:,.2f} {currency}"


class OrderNotifier:
    def __init__(self, context: "EngineContext"):
        self.context = context

    async def build_variables(self, order_id: uuid.UUID) -> Optional[tuple[str, Dict[str, Any]]]:
        """(recipient, variables) for an order, or None if it does not exist."""
        async with self.context.session_factory() as db:
            row = (await db.execute(
                select(Order, User).join(User, User.id == Order.user_id).where(Order.id == order_id)
            )).first()
            if row is None:
                return None
            order, user = row
            profile = (await db.execute(
                select(EsimProfile)
                .where(EsimProfile.order_id == order_id)
                .order_by(EsimProfile.created_at)
                .limit(1)
            )).scalar_one_or_none()

        web_url = self.context.config.WEB_URL.rstrip("/")
        variables: Dict[str, Any] = {
            "order_ref": str(order.id)[:8].upper(),
            "order_id": str(order.id),
            "plan_name": order.plan_id,
            "amount": format_money(order.display_amount_cents, order.display_currency),
            "order_url": f"{web_url}/orders/{order.id}",
            "receipt_url": f"{web_url}/orders/{order.id}/receipt",
            "customer_name": user.name or "",
        }
        if order.refund_amount_cents is not None:
            variables["amount"] = format_money(order.refund_amount_cents, "USD")
            variables["refund_method"] = "card" if order.refund_method == "card" else "account balance"
        if profile is not None:
            variables.update({
                "iccid": profile.iccid or "",
                "qr_code_url": profile.qr_code_url or "",
                "activation_code": profile.activation_code or "",
            })
        return user.email, variables

    async def send_for_order(self, order_id: uuid.UUID, template: str) -> DeliveryResult:
        built = await self.build_variables(order_id)
        if built is None:
            logger.warning(f"[EMAIL] Order {order_id} not found for {template}")
            return DeliveryResult.SKIPPED

        recipient, variables = built
        try:
            outcome = await self.context.dispatcher.send(template, recipient, variables)
        except Exception as e:
            logger.error(f"[EMAIL] {template} for order {order_id} failed: {e}")
            return DeliveryResult.FAILED

        if outcome == DeliveryResult.FAILED:
            logger.error(f"[EMAIL] {template} for order {order_id} was not delivered")
        else:
            logger.info(f"[EMAIL] {template} for order {order_id}: {outcome.value}")
        return outcome
