"""
Shared fixtures and in-memory collaborators for the mailbox sync tests.
"""
import logging
import os
import sys
from typing import Dict, FrozenSet, Iterable, List, Optional, Set

import pytest
from unittest.mock import patch

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from mbxsync.constants import ACCESS_FULL_ACCESS, ACCESS_SEND_AS, RECIPIENT_SHARED_MAILBOX
from mbxsync.models import MailboxPermissionGrant, normalize_principal
from mbxsync.utils import DirectoryUnavailable, GrantRejected, GroupNotFound, RevokeRejected


# =============================================================================
# Fake Collaborators
# =============================================================================

class FakeMembershipSource:
    """Group membership held in memory; unknown groups raise GroupNotFound."""

    def __init__(self, groups: Optional[Dict[str, Iterable[str]]] = None):
        self.groups = {name: set(members) for name, members in (groups or {}).items()}
        self.calls: List[tuple] = []

    def list_members(self, group_id: str) -> Set[str]:
        self.calls.append(("list_members", group_id))
        if group_id not in self.groups:
            raise GroupNotFound(f"Group '{group_id}' was not found", identity=group_id)
        return set(self.groups[group_id])


class FakeMailboxStore:
    """
    Mailbox permission store held in memory.

    Every call is appended to `calls` as (operation, *args) so tests can
    assert on order and count. `fail_grant` / `fail_revoke` name principals
    whose calls are rejected; `fail_send_on_behalf` rejects the clear and
    `fail_set_send_on_behalf` the set; `unavailable_on` names an operation
    that raises DirectoryUnavailable.
    """

    def __init__(
        self,
        grants: Optional[List[MailboxPermissionGrant]] = None,
        send_as: Optional[Dict[str, FrozenSet[str]]] = None,
        recipient_type: str = "UserMailbox",
        send_on_behalf: Optional[List[str]] = None,
    ):
        self.grants: List[MailboxPermissionGrant] = list(grants or [])
        self.send_as = {normalize_principal(k): v for k, v in (send_as or {}).items()}
        self.recipient_type = recipient_type
        self.send_on_behalf: List[str] = list(send_on_behalf or [])
        self.calls: List[tuple] = []
        self.fail_grant: Set[str] = set()
        self.fail_revoke: Set[str] = set()
        self.fail_send_on_behalf = False
        self.fail_set_send_on_behalf = False
        self.unavailable_on: Optional[str] = None

    def _record(self, operation: str, *args):
        self.calls.append((operation,) + args)
        if self.unavailable_on == operation:
            raise DirectoryUnavailable(f"{operation}: service unavailable")

    # Helpers for assertions

    def operations(self, *names: str) -> List[tuple]:
        return [call for call in self.calls if call[0] in names]

    def full_access_holders(self) -> Set[str]:
        return {
            normalize_principal(g.principal)
            for g in self.grants
            if g.reconcilable and ACCESS_FULL_ACCESS in g.access_rights
        }

    # MailboxPermissionStore

    def list_full_access_grants(self, mailbox_id: str) -> List[MailboxPermissionGrant]:
        self._record("list_full_access_grants", mailbox_id)
        return list(self.grants)

    def grant_full_access(self, mailbox_id: str, principal_id: str, auto_map: bool = True) -> None:
        self._record("grant_full_access", mailbox_id, principal_id, auto_map)
        if principal_id in self.fail_grant:
            raise GrantRejected("user not found", principal=principal_id)
        self.grants.append(MailboxPermissionGrant(
            mailbox=mailbox_id,
            principal=principal_id,
            access_rights=frozenset({ACCESS_FULL_ACCESS}),
        ))

    def revoke_full_access(self, mailbox_id: str, principal_id: str, access_rights=None) -> bool:
        self._record("revoke_full_access", mailbox_id, principal_id)
        if principal_id in self.fail_revoke:
            raise RevokeRejected("access denied", principal=principal_id)
        key = normalize_principal(principal_id)
        before = len(self.grants)
        self.grants = [
            g for g in self.grants
            if not (g.reconcilable and normalize_principal(g.principal) == key)
        ]
        return len(self.grants) != before

    def get_send_as_rights(self, mailbox_id: str, trustee_id: str) -> FrozenSet[str]:
        self._record("get_send_as_rights", mailbox_id, trustee_id)
        return self.send_as.get(normalize_principal(trustee_id), frozenset())

    def grant_send_as(self, mailbox_id: str, trustee_id: str) -> None:
        self._record("grant_send_as", mailbox_id, trustee_id)
        if trustee_id in self.fail_grant:
            raise GrantRejected("trustee not found", principal=trustee_id)
        key = normalize_principal(trustee_id)
        self.send_as[key] = self.send_as.get(key, frozenset()) | {ACCESS_SEND_AS}

    def clear_send_on_behalf(self, mailbox_id: str) -> None:
        self._record("clear_send_on_behalf", mailbox_id)
        if self.fail_send_on_behalf:
            raise RevokeRejected("GrantSendOnBehalfTo cannot be cleared", principal=mailbox_id)
        self.send_on_behalf = []

    def set_send_on_behalf(self, mailbox_id: str, principal_id: str) -> None:
        self._record("set_send_on_behalf", mailbox_id, principal_id)
        if self.fail_set_send_on_behalf:
            raise GrantRejected("delegate not accepted", principal=principal_id)
        self.send_on_behalf = [principal_id]

    def get_recipient_type_details(self, mailbox_id: str) -> str:
        self._record("get_recipient_type_details", mailbox_id)
        return self.recipient_type

    def convert_to_shared(self, mailbox_id: str) -> None:
        self._record("convert_to_shared", mailbox_id)
        self.recipient_type = RECIPIENT_SHARED_MAILBOX


class RecordingReporter:
    """ChangeSink that keeps changes and warnings in lists."""

    def __init__(self):
        self.changes: List[tuple] = []
        self.warnings: List[str] = []

    def change(self, action: str, target: str, detail: str = "") -> None:
        self.changes.append((action, target, detail))

    def warn(self, message: str) -> None:
        self.warnings.append(message)


# =============================================================================
# Helper Functions
# =============================================================================

def create_grant(
    principal: str,
    rights: Iterable[str] = (ACCESS_FULL_ACCESS,),
    is_inherited: bool = False,
    is_self: bool = False,
    deny: bool = False,
    mailbox: str = "shared@contoso.com",
) -> MailboxPermissionGrant:
    """Create a mailbox permission entry."""
    return MailboxPermissionGrant(
        mailbox=mailbox,
        principal=principal,
        access_rights=frozenset(rights),
        is_inherited=is_inherited,
        is_self=is_self,
        deny=deny,
    )


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def group():
    return "delegates@contoso.com"


@pytest.fixture
def mailbox():
    return "shared@contoso.com"


@pytest.fixture
def reporter():
    return RecordingReporter()


@pytest.fixture
def restore_root_logger():
    """setup_logging replaces root handlers; keep pytest's out of its reach."""
    root = logging.getLogger()
    level = root.level
    with patch.object(root, 'handlers', []):
        yield
        for handler in root.handlers:
            handler.close()
    root.setLevel(level)
