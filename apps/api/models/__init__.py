"""Models package."""

from .account import Account
from .credit_consumption import CreditConsumption
from .credit_grant import CreditGrant
from .billing_event import BillingEvent
from .billing_subscription import BillingSubscription
from .billing_reconciliation import BillingReconciliation
from .generation import Generation
from .mobile_upload import MobileUploadSession, MobileUpload
