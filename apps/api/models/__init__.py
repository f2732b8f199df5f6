"""Models package."""

from .user import User
from .wallet import Wallet
from .transaction import LedgerTransaction, TransactionType
from .catalog import Plan, Software, StoreItem
from .coupon import Coupon, CouponRedemption
from .daily_claim import DailyClaim
from .server import Server
from .store_purchase import StorePurchase
from .app_config import AppConfig
