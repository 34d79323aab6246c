"""
Mailbox delegation reconciliation.

Makes a mailbox's delegation state match a security group's membership:

- every current member holds an explicit FullAccess grant (with automapping)
- no one outside the group holds an explicit FullAccess grant
- the group itself holds SendAs and is the only send-on-behalf delegate

Only the symmetric difference between current grants and membership is
touched, so re-running against an unchanged group issues no grant or revoke
calls. Inherited, self and deny entries are never modified.

Callers are responsible for serializing runs against the same mailbox: two
concurrent runs race on the read-then-write of the grant set.
"""
import logging
from typing import Dict, FrozenSet, Iterable, List, Optional, Protocol, Set

from .constants import (
    ACCESS_FULL_ACCESS,
    ACCESS_SEND_AS,
    OP_GRANT,
    OP_REVOKE,
    OP_SEND_AS,
    RECIPIENT_SHARED_MAILBOX,
)
from .models import (
    MailboxPermissionGrant,
    ReconcilePlan,
    ReconcileResult,
    dedupe_principals,
    normalize_principal,
)
from .utils import (
    GrantRejected,
    MailboxSyncError,
    PreconditionError,
    RevokeRejected,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Collaborator Interfaces
# =============================================================================

class GroupMembershipSource(Protocol):
    """Reads the current membership of a security group."""

    def list_members(self, group_id: str) -> Set[str]:
        """Return member principals. Raises GroupNotFound."""
        ...


class MailboxPermissionStore(Protocol):
    """Reads and mutates delegation permissions on a mailbox."""

    def list_full_access_grants(self, mailbox_id: str) -> List[MailboxPermissionGrant]:
        ...

    def grant_full_access(self, mailbox_id: str, principal_id: str, auto_map: bool = True) -> None:
        ...

    def revoke_full_access(
        self,
        mailbox_id: str,
        principal_id: str,
        access_rights: Optional[Iterable[str]] = None,
    ) -> bool:
        """Return False when there was no grant to remove."""
        ...

    def get_send_as_rights(self, mailbox_id: str, trustee_id: str) -> FrozenSet[str]:
        ...

    def grant_send_as(self, mailbox_id: str, trustee_id: str) -> None:
        ...

    def clear_send_on_behalf(self, mailbox_id: str) -> None:
        ...

    def set_send_on_behalf(self, mailbox_id: str, principal_id: str) -> None:
        ...

    def get_recipient_type_details(self, mailbox_id: str) -> str:
        ...

    def convert_to_shared(self, mailbox_id: str) -> None:
        ...


class ChangeSink(Protocol):
    """Receives each change as it is applied (see utils.ChangeReporter)."""

    def change(self, action: str, target: str, detail: str = "") -> None:
        ...

    def warn(self, message: str) -> None:
        ...


# =============================================================================
# Reconciler
# =============================================================================

class PermissionReconciler:
    """Computes and applies the minimal delegation changes for one group/mailbox pair."""

    def __init__(
        self,
        source: GroupMembershipSource,
        store: MailboxPermissionStore,
        reporter: Optional[ChangeSink] = None,
    ):
        self.source = source
        self.store = store
        self.reporter = reporter

    def _report(self, action: str, target: str, detail: str = "") -> None:
        if self.reporter is not None:
            self.reporter.change(action, target, detail)

    def _warn(self, message: str) -> None:
        logger.warning(message)
        if self.reporter is not None:
            self.reporter.warn(message)

    def _soft_failure(self, result: ReconcileResult, message: str) -> None:
        result.soft_failures.append(message)
        self._warn(message)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def _list_members(self, group: str) -> List[str]:
        members = dedupe_principals(self.source.list_members(group))
        logger.info(f"Group {group} has {len(members)} members")
        return members

    def _explicit_rights(self, mailbox: str) -> Dict[str, FrozenSet[str]]:
        """Map each principal with an explicit grant to the union of its rights."""
        rights: Dict[str, FrozenSet[str]] = {}
        grants = self.store.list_full_access_grants(mailbox)
        for grant in grants:
            if not grant.reconcilable:
                logger.debug(f"Ignoring protected grant for {grant.principal} "
                             f"(inherited={grant.is_inherited}, self={grant.is_self}, deny={grant.deny})")
                continue
            key = normalize_principal(grant.principal)
            rights[key] = rights.get(key, frozenset()) | grant.access_rights
        logger.info(f"Mailbox {mailbox} has {len(rights)} explicit delegates")
        return rights

    def _build_plan(
        self,
        group: str,
        mailbox: str,
        members: List[str],
        rights: Dict[str, FrozenSet[str]],
    ) -> ReconcilePlan:
        member_set = set(members)
        holders = {p for p, r in rights.items() if ACCESS_FULL_ACCESS in r}
        missing = sorted(member_set - holders)
        return ReconcilePlan(
            group=group,
            mailbox=mailbox,
            members=list(members),
            stale=sorted(holders - member_set),
            missing=missing,
            replace=[p for p in missing if p in rights],
            unchanged=sorted(member_set & holders),
        )

    def _send_as_required(self, mailbox: str, group: str) -> bool:
        return ACCESS_SEND_AS not in self.store.get_send_as_rights(mailbox, group)

    def plan(self, group: str, mailbox: str, update_only: bool = False) -> ReconcilePlan:
        """Compute the changes a reconcile would make, without mutating anything."""
        members = self._list_members(group)
        plan = self._build_plan(group, mailbox, members, self._explicit_rights(mailbox))
        if not update_only:
            plan.send_as_required = self._send_as_required(mailbox, group)
        return plan

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def _convert_to_shared(self, mailbox: str, result: ReconcileResult) -> None:
        current = self.store.get_recipient_type_details(mailbox)
        if current == RECIPIENT_SHARED_MAILBOX:
            logger.info(f"Mailbox {mailbox} is already a shared mailbox")
            return
        if result.dry_run:
            self._report("would convert", mailbox, f"{current} -> {RECIPIENT_SHARED_MAILBOX}")
            return
        self.store.convert_to_shared(mailbox)
        result.converted_to_shared = True
        logger.info(f"Converted {mailbox} from {current} to {RECIPIENT_SHARED_MAILBOX}")
        self._report("converted", mailbox, f"{current} -> {RECIPIENT_SHARED_MAILBOX}")

    def _revoke(
        self,
        mailbox: str,
        principal: str,
        result: ReconcileResult,
        access_rights: Optional[FrozenSet[str]] = None,
    ) -> bool:
        detail = ", ".join(sorted(access_rights)) if access_rights else ACCESS_FULL_ACCESS
        try:
            removed = self.store.revoke_full_access(mailbox, principal, access_rights=access_rights)
        except RevokeRejected as e:
            result.add_failure(principal, OP_REVOKE, str(e))
            self._warn(f"Failed to revoke {detail} on {mailbox} from {principal}: {e}")
            return False

        if removed:
            logger.info(f"Revoked {detail} on {mailbox} from {principal}")
        else:
            logger.info(f"No {detail} grant on {mailbox} for {principal}; nothing to revoke")
        self._report("revoked", principal, detail)
        return True

    def _grant(self, mailbox: str, principal: str, result: ReconcileResult) -> None:
        try:
            self.store.grant_full_access(mailbox, principal, auto_map=True)
        except GrantRejected as e:
            result.add_failure(principal, OP_GRANT, str(e))
            self._warn(f"Failed to grant FullAccess on {mailbox} to {principal}: {e}")
            return
        result.granted.append(principal)
        logger.info(f"Granted FullAccess on {mailbox} to {principal} (automapping)")
        self._report("granted", principal, ACCESS_FULL_ACCESS)

    def _apply_membership(self, plan: ReconcilePlan, rights: Dict[str, FrozenSet[str]],
                          result: ReconcileResult) -> None:
        mailbox = plan.mailbox
        result.unchanged.extend(plan.unchanged)

        if result.dry_run:
            for principal in plan.stale:
                result.revoked.append(principal)
                self._report("would revoke", principal, ACCESS_FULL_ACCESS)
            for principal in plan.replace:
                self._report("would revoke", principal, ", ".join(sorted(rights[principal])))
            for principal in plan.missing:
                result.granted.append(principal)
                self._report("would grant", principal, ACCESS_FULL_ACCESS)
            return

        # All revocations precede all additions
        for principal in plan.stale:
            if self._revoke(mailbox, principal, result):
                result.revoked.append(principal)

        for principal in plan.replace:
            self._revoke(mailbox, principal, result, access_rights=rights[principal])

        for principal in plan.missing:
            self._grant(mailbox, principal, result)

    def _apply_fixed_targets(self, plan: ReconcilePlan, result: ReconcileResult) -> None:
        group, mailbox = plan.group, plan.mailbox

        if plan.send_as_required:
            if result.dry_run:
                self._report("would grant", group, ACCESS_SEND_AS)
            else:
                try:
                    self.store.grant_send_as(mailbox, group)
                except GrantRejected as e:
                    result.add_failure(group, OP_SEND_AS, str(e))
                    self._warn(f"Failed to grant SendAs on {mailbox} to {group}: {e}")
                else:
                    result.send_as_granted = True
                    logger.info(f"Granted SendAs on {mailbox} to {group}")
                    self._report("granted", group, ACCESS_SEND_AS)
        else:
            logger.info(f"{group} already holds SendAs on {mailbox}")

        if result.dry_run:
            self._report("would reset", mailbox, f"send on behalf -> {group}")
            return

        # Clear first so the store never sees a duplicate delegate entry.
        # The set is attempted even when the clear is rejected.
        try:
            self.store.clear_send_on_behalf(mailbox)
        except MailboxSyncError as e:
            self._soft_failure(result, f"Could not clear send-on-behalf on {mailbox}: {e}")

        try:
            self.store.set_send_on_behalf(mailbox, group)
        except MailboxSyncError as e:
            self._soft_failure(result, f"Could not set send-on-behalf on {mailbox} to {group}: {e}")
            return
        result.send_on_behalf_set = True
        logger.info(f"Send on behalf for {mailbox} set to {group}")
        self._report("set send on behalf", group)

    def reconcile(
        self,
        group: str,
        mailbox: str,
        convert_to_shared: bool = False,
        update_only: bool = False,
        dry_run: bool = False,
    ) -> ReconcileResult:
        """
        Reconcile the mailbox's delegation state with the group's membership.

        Args:
            group: Security group identity (name, alias or address)
            mailbox: Mailbox identity (address or alias)
            convert_to_shared: Convert the mailbox to a shared mailbox first
            update_only: Only reconcile per-member FullAccess; leave SendAs,
                send-on-behalf and the mailbox type untouched
            dry_run: Compute and report the changes without applying them

        Returns:
            ReconcileResult; per-principal failures are listed in `failures`

        Raises:
            PreconditionError: group or mailbox does not resolve (no work done)
            MailboxSyncError: directory unavailable or conversion rejected;
                `e.result` holds the partial result, applied work stands
        """
        result = ReconcileResult(group=group, mailbox=mailbox, dry_run=dry_run, update_only=update_only)

        members = self._list_members(group)

        try:
            if convert_to_shared:
                if update_only:
                    self._warn("Shared mailbox conversion is skipped in update-only mode")
                else:
                    self._convert_to_shared(mailbox, result)

            rights = self._explicit_rights(mailbox)
            plan = self._build_plan(group, mailbox, members, rights)
            logger.info(f"Plan: {len(plan.stale)} stale, {len(plan.missing)} missing, "
                        f"{len(plan.unchanged)} unchanged")

            self._apply_membership(plan, rights, result)

            if not update_only:
                plan.send_as_required = self._send_as_required(mailbox, group)
                self._apply_fixed_targets(plan, result)
        except PreconditionError:
            raise
        except MailboxSyncError as e:
            result.aborted = True
            result.abort_reason = str(e)
            e.result = result
            logger.error(f"Reconciliation of {mailbox} aborted: {e}")
            raise

        if result.failures:
            logger.warning(f"Completed with {len(result.failures)} per-principal failures")
        else:
            logger.info(f"Reconciliation of {mailbox} complete")
        return result
