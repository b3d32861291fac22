"""Messaging gateway adapters."""
from channels.base import (
    GatewayMetrics,
    GatewayStatus,
    MessagingGateway,
    normalize_phone,
)
from channels.whatsapp_adapter import WhatsAppBridgeGateway

__all__ = [
    "GatewayMetrics", "GatewayStatus", "MessagingGateway", "normalize_phone",
    "WhatsAppBridgeGateway",
]
