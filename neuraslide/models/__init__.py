from neuraslide.models.account import InstagramAccount, User  # noqa: F401
from neuraslide.models.automation import (  # noqa: F401
    Automation,
    AutomationPriority,
    AutomationStatus,
)
from neuraslide.models.billing import (  # noqa: F401
    Invoice,
    InvoiceStatus,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    UsageRecord,
)
from neuraslide.models.conversation import (  # noqa: F401
    Conversation,
    ConversationStatus,
    Message,
    MessageDirection,
    MessageStatus,
    SenderType,
)
from neuraslide.models.webhook import ProcessedEvent, WebhookProvider  # noqa: F401
