from gigescrow.models.escrow import EscrowMilestone, EscrowTransaction
from gigescrow.models.wallet import Wallet
from gigescrow.models.dispute import Dispute, DisputeEvidence, DisputeMessage
from gigescrow.models.case_counter import CaseCounter
from gigescrow.models.notification import Notification
from gigescrow.models.audit_log import AuditLog

__all__ = [
    "EscrowTransaction",
    "EscrowMilestone",
    "Wallet",
    "Dispute",
    "DisputeMessage",
    "DisputeEvidence",
    "CaseCounter",
    "Notification",
    "AuditLog",
]
