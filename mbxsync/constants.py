"""
Constants for Mailbox Delegation Sync.

This module defines all magic strings and numbers used across the codebase
to prevent typos, ensure consistency, and make maintenance easier.
"""

# =============================================================================
# Access Rights
# =============================================================================

# Mailbox permissions (Get-MailboxPermission / Add-MailboxPermission)
ACCESS_FULL_ACCESS = "FullAccess"
ACCESS_READ_PERMISSION = "ReadPermission"

# Recipient permissions (Get-RecipientPermission / Add-RecipientPermission)
ACCESS_SEND_AS = "SendAs"

# Inheritance scope used when granting FullAccess
INHERITANCE_ALL = "All"

# Trustee Exchange reports for the mailbox's own permission entry
SELF_PRINCIPALS = frozenset({
    "nt authority\\self",
    "self",
})

# =============================================================================
# Recipient Types (RecipientTypeDetails)
# =============================================================================

RECIPIENT_USER_MAILBOX = "UserMailbox"
RECIPIENT_SHARED_MAILBOX = "SharedMailbox"
RECIPIENT_ROOM_MAILBOX = "RoomMailbox"
RECIPIENT_EQUIPMENT_MAILBOX = "EquipmentMailbox"
RECIPIENT_MAIL_SECURITY_GROUP = "MailUniversalSecurityGroup"
RECIPIENT_NON_MAIL_SECURITY_GROUP = "UniversalSecurityGroup"

MAILBOX_RECIPIENT_TYPES = frozenset({
    RECIPIENT_USER_MAILBOX,
    RECIPIENT_SHARED_MAILBOX,
    RECIPIENT_ROOM_MAILBOX,
    RECIPIENT_EQUIPMENT_MAILBOX,
})

SECURITY_GROUP_RECIPIENT_TYPES = frozenset({
    RECIPIENT_MAIL_SECURITY_GROUP,
    RECIPIENT_NON_MAIL_SECURITY_GROUP,
})

# =============================================================================
# Reconciliation Operations (used in failure records and reports)
# =============================================================================

OP_GRANT = "grant"
OP_REVOKE = "revoke"
OP_SEND_AS = "send_as"

# =============================================================================
# Membership Sources
# =============================================================================

SOURCE_EXCHANGE = "exchange"
SOURCE_GRAPH = "graph"
MEMBERSHIP_SOURCES = (SOURCE_EXCHANGE, SOURCE_GRAPH)

# =============================================================================
# Exchange Online / Graph Defaults
# =============================================================================

DEFAULT_POWERSHELL = "pwsh"
DEFAULT_POWERSHELL_TIMEOUT = 300  # seconds per pwsh invocation
EXO_MODULE_NAME = "ExchangeOnlineManagement"

GRAPH_SCOPES = ["https://graph.microsoft.com/.default"]
GRAPH_USER_ODATA_TYPE = "#microsoft.graph.user"

# =============================================================================
# Environment Variables
# =============================================================================

ENV_EXO_CERTIFICATE_PASSWORD = "EXO_CERTIFICATE_PASSWORD"
ENV_MS365_CLIENT_SECRET = "MS365_CLIENT_SECRET"

# =============================================================================
# Output
# =============================================================================

DEFAULT_OUTPUT_DIR = "./mbxsync_output"
RUN_REPORT_PREFIX = "mbxsync_run"
LOG_FILE_PREFIX = "mbxsync_log"

# =============================================================================
# Exit Codes
# =============================================================================

EXIT_OK = 0
EXIT_FAILURE = 1
