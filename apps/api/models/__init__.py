"""Models package."""

from .user_ledger import UserLedger
from .redemption_code import RedemptionCode
from .payment_attempt import PaymentAttempt
