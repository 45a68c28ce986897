"""SQLAlchemy models for FixItFlow.

All models are imported here so that ``Base.metadata`` sees every table when
the schema is created. If you add a new model, import it in this file.
"""

from fixitflow.models.payment_record import PaymentRecord
from fixitflow.models.subscription import Subscription
from fixitflow.models.user import User
from fixitflow.models.webhook_event import ProcessedWebhookEvent

__all__ = [
    "PaymentRecord",
    "ProcessedWebhookEvent",
    "Subscription",
    "User",
]
