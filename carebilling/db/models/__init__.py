"""
Database Models
"""
from carebilling.db.models.user import User
from carebilling.db.models.wallet import Wallet
from carebilling.db.models.wallet_transaction import WalletTransaction
from carebilling.db.models.wallet_credit_lot import WalletCreditLot
from carebilling.db.models.payment import Payment
from carebilling.db.models.refund import Refund
from carebilling.db.models.subscription import SubscriptionPlan, Subscription
from carebilling.db.models.fulfillment import Prescription, Order

__all__ = [
    "User",
    "Wallet",
    "WalletTransaction",
    "WalletCreditLot",
    "Payment",
    "Refund",
    "SubscriptionPlan",
    "Subscription",
    "Prescription",
    "Order",
]
