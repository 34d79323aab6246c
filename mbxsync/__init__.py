"""
Mailbox Delegation Sync shared library.
"""
from . import constants
from .models import (
    Mailbox,
    MailboxPermissionGrant,
    PrincipalFailure,
    ReconcilePlan,
    ReconcileResult,
    SecurityGroup,
    dedupe_principals,
    normalize_principal,
)
from .reconciler import (
    ChangeSink,
    GroupMembershipSource,
    MailboxPermissionStore,
    PermissionReconciler,
)
from .utils import (
    ChangeReporter,
    ConfigError,
    ConversionRejected,
    DirectoryUnavailable,
    GrantRejected,
    GroupNotFound,
    MailboxNotFound,
    MailboxSyncError,
    PreconditionError,
    PrincipalOperationError,
    RevokeRejected,
    generate_run_id,
    get_timestamp,
    setup_logging,
    write_json,
)

__all__ = [
    'constants',
    # Models
    'Mailbox',
    'MailboxPermissionGrant',
    'PrincipalFailure',
    'ReconcilePlan',
    'ReconcileResult',
    'SecurityGroup',
    'dedupe_principals',
    'normalize_principal',
    # Reconciler
    'ChangeSink',
    'GroupMembershipSource',
    'MailboxPermissionStore',
    'PermissionReconciler',
    # Errors
    'MailboxSyncError',
    'PreconditionError',
    'GroupNotFound',
    'MailboxNotFound',
    'DirectoryUnavailable',
    'PrincipalOperationError',
    'GrantRejected',
    'RevokeRejected',
    'ConversionRejected',
    'ConfigError',
    # Utils
    'ChangeReporter',
    'generate_run_id',
    'get_timestamp',
    'setup_logging',
    'write_json',
]
