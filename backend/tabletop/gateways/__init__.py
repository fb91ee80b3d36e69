from tabletop.gateways.base import GatewayClient, GatewayCredentials
from tabletop.gateways.paytm import PaytmGateway
from tabletop.gateways.phonepe import PhonePeGateway
from tabletop.gateways.razorpay import RazorpayGateway
from tabletop.gateways.registry import GatewayRegistry, default_credentials
from tabletop.gateways.stripe_gateway import StripeGateway

__all__ = [
    "GatewayClient",
    "GatewayCredentials",
    "GatewayRegistry",
    "PaytmGateway",
    "PhonePeGateway",
    "RazorpayGateway",
    "StripeGateway",
    "default_credentials",
]
