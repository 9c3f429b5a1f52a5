"""Billing services package.

Charge issuance and mutation, webhook reconciliation, commissions, the
ledger and payouts.

    from app.services import billing as billing_service
    billing_service.charges.issue_charge(db, payload)
"""

from app.services.billing.charges import ChargeIssuer
from app.services.billing.invoices import Invoices
from app.services.billing.ledger import LedgerEntries
from app.services.billing.mutations import ChargeMutator
from app.services.billing.payouts import CommissionPayouts
from app.services.billing.webhooks import WebhookReconciler, WebhookResult

# Registers the commission and ledger side-effect handlers.
from app.services.billing import commissions  # noqa: E402

# Singleton instances for service access
charges = ChargeIssuer()
mutations = ChargeMutator()
invoices = Invoices()
ledger_entries = LedgerEntries()
payouts = CommissionPayouts()
webhooks = WebhookReconciler()

__all__ = [
    # Classes
    "ChargeIssuer",
    "ChargeMutator",
    "CommissionPayouts",
    "Invoices",
    "LedgerEntries",
    "WebhookReconciler",
    "WebhookResult",
    # Modules
    "commissions",
    # Singletons
    "charges",
    "mutations",
    "invoices",
    "ledger_entries",
    "payouts",
    "webhooks",
]
