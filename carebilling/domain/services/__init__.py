"""
Domain Services
"""
from carebilling.domain.services.wallet_service import WalletService
from carebilling.domain.services.refund_service import RefundService
from carebilling.domain.services.checkout_service import CheckoutService
from carebilling.domain.services.subscription_service import SubscriptionService
from carebilling.domain.services.promo_expiry_service import PromoExpiryService

__all__ = [
    "WalletService",
    "RefundService",
    "CheckoutService",
    "SubscriptionService",
    "PromoExpiryService",
]
