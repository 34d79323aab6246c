"""
Data models for Mailbox Delegation Sync.

Everything here is transient: read from the directory at the start of a run,
mutated through explicit grant/revoke calls, and discarded afterwards.
"""
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from .constants import SELF_PRINCIPALS


def normalize_principal(principal: str) -> str:
    """Canonical form used to compare principal identifiers across views."""
    return (principal or "").strip().casefold()


def dedupe_principals(principals: Iterable[str]) -> List[str]:
    """Deduplicate principals on their normalized form, keeping first-seen order."""
    seen = set()
    result = []
    for principal in principals:
        key = normalize_principal(principal)
        if not key or key in seen:
            continue
        seen.add(key)
        result.append(key)
    return result


@dataclass
class SecurityGroup:
    """Resolved security group."""
    identity: str
    display_name: str = ""
    primary_smtp_address: str = ""
    recipient_type_details: str = ""
    exists: bool = True
    members: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


@dataclass
class Mailbox:
    """Resolved mailbox."""
    identity: str
    display_name: str = ""
    primary_smtp_address: str = ""
    recipient_type_details: str = ""  # e.g., "UserMailbox", "SharedMailbox"
    exists: bool = True
    send_on_behalf: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


@dataclass(frozen=True)
class MailboxPermissionGrant:
    """
    One mailbox permission entry as reported by the store.

    Only explicit (non-inherited), non-self, non-deny entries take part in
    reconciliation.
    """
    mailbox: str
    principal: str
    access_rights: FrozenSet[str] = frozenset()
    is_inherited: bool = False
    is_self: bool = False
    deny: bool = False

    @property
    def reconcilable(self) -> bool:
        if self.is_inherited or self.is_self or self.deny:
            return False
        return normalize_principal(self.principal) not in SELF_PRINCIPALS

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['access_rights'] = sorted(self.access_rights)
        return data


@dataclass
class ReconcilePlan:
    """Computed difference between current grants and group membership."""
    group: str
    mailbox: str
    members: List[str] = field(default_factory=list)
    stale: List[str] = field(default_factory=list)  # FullAccess holders no longer in the group
    missing: List[str] = field(default_factory=list)  # members lacking FullAccess
    replace: List[str] = field(default_factory=list)  # members holding an explicit grant without FullAccess
    unchanged: List[str] = field(default_factory=list)
    send_as_required: Optional[bool] = None  # None when fixed-target grants are not evaluated

    @property
    def is_converged(self) -> bool:
        return not self.stale and not self.missing and not self.send_as_required

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization."""
        return asdict(self)


@dataclass
class PrincipalFailure:
    """A single grant/revoke call that was rejected."""
    principal: str
    operation: str  # "grant", "revoke", "send_as"
    message: str

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class ReconcileResult:
    """
    Outcome of one reconciliation run.

    Per-principal failures and soft failures are recorded here but do not
    make the run fail; only `aborted` does.
    """
    group: str
    mailbox: str
    dry_run: bool = False
    update_only: bool = False
    converted_to_shared: bool = False
    revoked: List[str] = field(default_factory=list)
    granted: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    send_as_granted: bool = False
    send_on_behalf_set: bool = False
    failures: List[PrincipalFailure] = field(default_factory=list)
    soft_failures: List[str] = field(default_factory=list)
    aborted: bool = False
    abort_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return not self.aborted

    @property
    def call_count(self) -> int:
        """Number of grant/revoke calls that changed state."""
        return len(self.revoked) + len(self.granted)

    def add_failure(self, principal: str, operation: str, message: str) -> None:
        self.failures.append(PrincipalFailure(principal, operation, message))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data['succeeded'] = self.succeeded
        data['call_count'] = self.call_count
        return data
