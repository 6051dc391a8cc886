from nphies_poll.models.poll_db import (
    Base,
    JSONType,
    PollStatus,
    TriggerType,
    ProcessingStatus,
    PollLogDB,
    PollMessageDB,
    PollLeaseDB,
)
from nphies_poll.models.authorization_db import (
    PriorAuthorizationDB,
    PriorAuthorizationItemDB,
    PriorAuthorizationResponseDB,
    ClaimSubmissionDB,
    ClaimSubmissionItemDB,
    ClaimSubmissionResponseDB,
    AdvancedAuthorizationDB,
)
from nphies_poll.models.communication_db import CommunicationRequestDB, CommunicationDB
from nphies_poll.models.provider_db import ProviderDB

__all__ = [
    "Base",
    "JSONType",
    "PollStatus",
    "TriggerType",
    "ProcessingStatus",
    "PollLogDB",
    "PollMessageDB",
    "PollLeaseDB",
    "PriorAuthorizationDB",
    "PriorAuthorizationItemDB",
    "PriorAuthorizationResponseDB",
    "ClaimSubmissionDB",
    "ClaimSubmissionItemDB",
    "ClaimSubmissionResponseDB",
    "AdvancedAuthorizationDB",
    "CommunicationRequestDB",
    "CommunicationDB",
    "ProviderDB",
]
