from decimal import Decimal

from common.config import Settings

from .models import Order


def format_price(amount: Decimal, symbol: str = "₦") -> str:
    return f"{symbol}{Decimal(amount):,.2f}"


def payment_approved(order: Order) -> str:
    return (
        f"The finance department has received your payment for order #{order.reference} "
        f"and has sent it to the marketing department to deliver it to {order.shipment_details.address}."
    )


def order_rejected(order: Order, reason: str, refunded: Decimal, settings: Settings) -> str:
    refund_note = ""
    if refunded > 0:
        refund_note = (
            f" and {format_price(refunded, settings.CURRENCY_SYMBOL)} has been credited to your cashback balance"
        )
    return (
        f"Your order request - #{order.reference} has been rejected{refund_note}. Reason: {reason}. "
        f"If you feel there was an error, contact admin at {settings.SUPPORT_WHATSAPP} on WhatsApp."
    )


def order_shipped(order: Order, settings: Settings) -> str:
    return (
        f"Your product is on its way to {order.shipment_details.address}. "
        f"Contact us for more info at {settings.SUPPORT_WHATSAPP}."
    )


def shipment_delayed(settings: Settings) -> str:
    return (
        "Your product shipment has been delayed. "
        f"For more information, please contact us on WhatsApp {settings.SUPPORT_WHATSAPP}."
    )
