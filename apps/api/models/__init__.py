"""Models package."""

from .profile import Profile
from .credit_ledger import CreditLedger
from .generation import Generation
from .payment_event import ProcessedPaymentEvent
