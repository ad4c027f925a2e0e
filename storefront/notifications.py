import logging
from typing import List, Optional

import httpx
from fastapi import Request

from shared.utils import settings

logger = logging.getLogger("storefront.email")


class EmailService:
    """Transactional email through an HTTP mail relay.

    Every send is best-effort: transport and HTTP errors are logged and
    reported as ``False``, never raised into the calling business flow.
    """

    def __init__(
        self,
        api_url: Optional[str] = settings.EMAIL_API_URL,
        api_key: Optional[str] = settings.EMAIL_API_KEY,
        sender: str = settings.EMAIL_FROM,
        timeout: float = settings.EMAIL_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_url)

    async def send(self, to: str, subject: str, text: str, html: Optional[str] = None) -> bool:
        if not self.configured:
            logger.warning(f"Email relay not configured, skipping '{subject}'", extra={"email_to": to})
            return False

        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {"from": self.sender, "to": to, "subject": subject, "text": text}
        if html:
            payload["html"] = html

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.api_url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError:
            logger.warning(f"Failed to send email '{subject}'", extra={"email_to": to}, exc_info=True)
            return False

        logger.info(f"Email sent: {subject}", extra={"email_to": to})
        return True

    async def send_welcome(self, to: str, first_name: Optional[str] = None) -> bool:
        name = first_name or "there"
        text = (
            f"Hi {name}!\n\n"
            "Thanks for signing up. Browse our catalog and enjoy your shopping.\n\n"
            f"{settings.FRONTEND_URL}"
        )
        return await self.send(to, "Welcome to the store!", text)

    async def send_password_reset(self, to: str, reset_url: str) -> bool:
        minutes = settings.PASSWORD_RESET_EXPIRE_MINUTES
        text = (
            "We received a request to reset your password.\n\n"
            f"Open this link within {minutes} minutes to choose a new one:\n{reset_url}\n\n"
            "If you did not ask for this, you can ignore this email."
        )
        return await self.send(to, "Reset your password", text)

    async def send_order_confirmation(self, to: str, order: dict) -> bool:
        lines = "\n".join(
            f"  - {item['product_name']}"
            + (f" ({item['variant_name']})" if item.get("variant_name") else "")
            + f" x{item['quantity']} @ ${float(item['price']):.2f}"
            for item in order.get("items", [])
        )
        text = (
            f"Your order {order['order_number']} has been confirmed.\n\n"
            f"{lines}\n\n"
            f"Subtotal: ${float(order['subtotal']):.2f}\n"
            f"Discount: ${float(order.get('discount', 0)):.2f}\n"
            f"Shipping: ${float(order['shipping']):.2f}\n"
            f"Total: ${float(order['total']):.2f}\n"
        )
        return await self.send(to, f"Order confirmation {order['order_number']}", text)

    async def send_order_status_update(self, to: str, order_number: str, status: str) -> bool:
        text = f"The status of your order {order_number} is now {status}."
        return await self.send(to, f"Order {order_number} updated", text)

    async def send_low_stock_alert(self, to: str, products: List[dict], threshold: int) -> bool:
        body = []
        for product in products:
            body.append(f"- {product['name']} ({product.get('category') or 'N/A'}): {product['stock']} units")
            for variant in product.get("variants", []):
                body.append(f"    * {variant['name']}: {variant['stock']} units")
        text = (
            f"{len(products)} products are at or below the stock threshold of {threshold} units:\n\n"
            + "\n".join(body)
        )
        return await self.send(to, f"Low stock alert ({len(products)} products)", text)


def get_email_service(request: Request) -> EmailService:
    return request.app.state.email_service
