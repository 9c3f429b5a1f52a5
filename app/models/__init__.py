from app.models.billing import (  # noqa: F401
    Commission,
    CommissionKind,
    CommissionStatus,
    ConsolidatedInvoice,
    ConsolidatedInvoiceItem,
    ConsolidatedInvoiceStatus,
    EntityHistory,
    GatewayEnvironment,
    Invoice,
    InvoiceStatus,
    LedgerEntry,
    LedgerReferenceType,
    LedgerSource,
    PaymentEvent,
    PaymentEventOutcome,
)
from app.models.integration import IntegrationConfig  # noqa: F401
from app.models.side_effect import (  # noqa: F401
    SideEffectKind,
    SideEffectStatus,
    SideEffectTask,
)
from app.models.subscriber import (  # noqa: F401
    BillingMode,
    ConsumerUnit,
    Originator,
    Subscriber,
    SubscriberStatus,
)
