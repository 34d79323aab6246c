"""
Exchange Online PowerShell client.

Executes Exchange Online cmdlets via a `pwsh` subprocess to read and mutate
mailbox delegation. Implements both the mailbox permission store and the
group membership source used by the reconciler, plus recipient resolution.

Prerequisites:
1. PowerShell 7+ and the Exchange Online Management module:
   Install-Module -Name ExchangeOnlineManagement

2. For app-only (unattended) authentication:
   - Entra ID App Registration with the Exchange.ManageAsApp permission
   - A certificate uploaded to the app, available locally as a .pfx file
     (cross-platform) or installed in the certificate store (Windows)
   - The app assigned the "Exchange Recipient Administrator" role

Every call runs one script: import module, connect, run cmdlets, disconnect.
A failure to import or connect exits with CONNECT_FAILED_EXIT_CODE so it can
be told apart from a cmdlet error.
"""
import json
import logging
import os
import re
import subprocess
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set, Union

from .constants import (
    ACCESS_FULL_ACCESS,
    ACCESS_SEND_AS,
    DEFAULT_POWERSHELL,
    DEFAULT_POWERSHELL_TIMEOUT,
    ENV_EXO_CERTIFICATE_PASSWORD,
    EXO_MODULE_NAME,
    INHERITANCE_ALL,
    MAILBOX_RECIPIENT_TYPES,
    SECURITY_GROUP_RECIPIENT_TYPES,
    SELF_PRINCIPALS,
)
from .models import Mailbox, MailboxPermissionGrant, SecurityGroup, dedupe_principals, normalize_principal
from .utils import (
    ConfigError,
    ConversionRejected,
    DirectoryUnavailable,
    GrantRejected,
    GroupNotFound,
    MailboxNotFound,
    RevokeRejected,
    escape_ps_string,
    redact_log_message,
)

logger = logging.getLogger(__name__)

CONNECT_FAILED_EXIT_CODE = 2
CONNECT_FAILED_MARKER = "MBXSYNC_CONNECT_FAILED"
SUCCESS_MARKER = "MBXSYNC_OK"
NOT_PRESENT_MARKER = "MBXSYNC_NOT_PRESENT"

NOT_FOUND_PATTERNS = [
    r"couldn't be found",
    r"could not be found",
    r"ManagementObjectNotFoundException",
    r"isn't a mailbox",
]

# Remove-MailboxPermission reports a missing ACE as a warning or an error
# depending on module version
ACE_NOT_PRESENT_PATTERNS = [
    r"ACE doesn't exist",
    r"isn't present",
    r"Can't remove the access control entry",
]


def is_not_found_error(error_msg: str) -> bool:
    """Check if an error message means the identity does not resolve."""
    return any(re.search(pattern, error_msg, re.IGNORECASE) for pattern in NOT_FOUND_PATTERNS)


def is_ace_not_present(error_msg: str) -> bool:
    """Check if an error message means there was no permission entry to remove."""
    return any(re.search(pattern, error_msg, re.IGNORECASE) for pattern in ACE_NOT_PRESENT_PATTERNS)


def parse_access_rights(value: Any) -> FrozenSet[str]:
    """
    Parse AccessRights as emitted by ConvertTo-Json.

    Depending on the select expression this is a comma-joined string
    ("FullAccess, ReadPermission"), a list of names, or a single name.
    """
    if not value:
        return frozenset()
    if isinstance(value, str):
        parts = value.split(',')
    elif isinstance(value, list):
        parts = [str(v) for v in value]
    else:
        parts = [str(value)]
    return frozenset(p.strip() for p in parts if p.strip())


def as_list(data: Any) -> List[Dict[str, Any]]:
    """ConvertTo-Json emits a single object for one result and an array for many."""
    if not data:
        return []
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]
    return []


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('true', '1', 'yes')


class CmdletError(Exception):
    """A cmdlet failed; translated by callers into the mailbox sync taxonomy."""

    def __init__(self, message: str, returncode: int = 1):
        self.returncode = returncode
        super().__init__(message)


class ExchangeOnlineClient:
    """Client for Exchange Online PowerShell operations.

    Executes Exchange cmdlets via subprocess using the official
    ExchangeOnlineManagement PowerShell module.
    """

    def __init__(
        self,
        organization: str,
        app_id: str,
        certificate_path: Optional[Union[Path, str]] = None,
        certificate_thumbprint: Optional[str] = None,
        certificate_password: Optional[str] = None,
        powershell: str = DEFAULT_POWERSHELL,
        timeout: int = DEFAULT_POWERSHELL_TIMEOUT,
    ) -> None:
        """Initialize the Exchange Online client.

        Args:
            organization: Tenant's initial domain (contoso.onmicrosoft.com)
            app_id: Application (client) ID of the app registration
            certificate_path: Path to .pfx certificate file (cross-platform)
            certificate_thumbprint: Thumbprint of installed certificate (Windows)
            certificate_password: Password for the .pfx file
            powershell: PowerShell executable
            timeout: Seconds allowed for each PowerShell invocation
        """
        if not certificate_path and not certificate_thumbprint:
            raise ConfigError("Either certificate_path or certificate_thumbprint must be provided")
        self.organization = organization
        self.app_id = app_id
        self.certificate_path = certificate_path
        self.certificate_thumbprint = certificate_thumbprint
        self.certificate_password = certificate_password
        self.powershell = powershell
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ExchangeOnlineClient":
        """Build a client from the merged config; the certificate password is env-only."""
        exo = config.get('exchange', {})
        return cls(
            organization=exo.get('organization', ''),
            app_id=exo.get('app_id', ''),
            certificate_path=exo.get('certificate_path'),
            certificate_thumbprint=exo.get('certificate_thumbprint'),
            certificate_password=os.environ.get(ENV_EXO_CERTIFICATE_PASSWORD),
            powershell=exo.get('powershell') or DEFAULT_POWERSHELL,
            timeout=int(exo.get('timeout') or DEFAULT_POWERSHELL_TIMEOUT),
        )

    # -------------------------------------------------------------------------
    # PowerShell plumbing
    # -------------------------------------------------------------------------

    def _build_connect_command(self) -> str:
        """Build the Connect-ExchangeOnline command."""
        # Prefer certificate_path over thumbprint (thumbprint is Windows-only)
        if self.certificate_path:
            if self.certificate_password:
                secure_str = (
                    f"-CertificatePassword (ConvertTo-SecureString "
                    f"-String '{escape_ps_string(self.certificate_password)}' -AsPlainText -Force) "
                )
            else:
                secure_str = ""
            return (
                f"Connect-ExchangeOnline "
                f"-AppId '{escape_ps_string(self.app_id)}' "
                f"-CertificateFilePath '{escape_ps_string(str(self.certificate_path))}' "
                f"{secure_str}"
                f"-Organization '{escape_ps_string(self.organization)}' "
                f"-ShowBanner:$false -ErrorAction Stop"
            )
        return (
            f"Connect-ExchangeOnline "
            f"-AppId '{escape_ps_string(self.app_id)}' "
            f"-CertificateThumbprint '{escape_ps_string(self.certificate_thumbprint or '')}' "
            f"-Organization '{escape_ps_string(self.organization)}' "
            f"-ShowBanner:$false -ErrorAction Stop"
        )

    def _build_script(self, commands: List[str]) -> str:
        return "\n".join([
            "$ErrorActionPreference = 'Stop'",
            "try {",
            f"    Import-Module {EXO_MODULE_NAME} -ErrorAction Stop",
            f"    {self._build_connect_command()}",
            "} catch {",
            f"    [Console]::Error.WriteLine('{CONNECT_FAILED_MARKER}: ' + $_.Exception.Message)",
            f"    exit {CONNECT_FAILED_EXIT_CODE}",
            "}",
            "try {",
            *[f"    {command}" for command in commands],
            "} finally {",
            "    Disconnect-ExchangeOnline -Confirm:$false *>$null",
            "}",
        ])

    def _run_powershell(self, commands: List[str], parse_json: bool = True) -> Any:
        """Run PowerShell commands and return the result.

        Args:
            commands: PowerShell statements to run after connecting
            parse_json: If True, parse output as JSON

        Returns:
            Parsed JSON (dict/list/None when empty) or raw string output

        Raises:
            DirectoryUnavailable: pwsh missing, timed out, or could not connect
            CmdletError: a cmdlet failed
        """
        script = self._build_script(commands)
        logger.debug(f"Running PowerShell: {redact_log_message('; '.join(commands))}")

        try:
            result = subprocess.run(
                [self.powershell, "-NoProfile", "-NonInteractive", "-Command", script],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise DirectoryUnavailable(
                f"PowerShell command timed out after {self.timeout} seconds", original_error=e
            ) from e
        except FileNotFoundError as e:
            raise DirectoryUnavailable(
                f"PowerShell ({self.powershell}) not found. Install PowerShell 7+.", original_error=e
            ) from e
        except OSError as e:
            raise DirectoryUnavailable(f"Failed to run PowerShell: {e}", original_error=e) from e

        stdout = (result.stdout or "").strip()
        stderr = (result.stderr or "").strip()

        if result.returncode == CONNECT_FAILED_EXIT_CODE or CONNECT_FAILED_MARKER in stderr:
            message = stderr.replace(f"{CONNECT_FAILED_MARKER}: ", "") or "connection failed"
            logger.debug(f"Connect-ExchangeOnline failed: {redact_log_message(message)}")
            raise DirectoryUnavailable(f"Could not connect to Exchange Online: {message}")

        if result.returncode != 0:
            logger.debug(f"PowerShell error (returncode={result.returncode}): {stderr}")
            raise CmdletError(stderr or stdout or "PowerShell command failed", result.returncode)

        if stdout:
            logger.debug(f"PowerShell output: {stdout[:500]}{'...' if len(stdout) > 500 else ''}")

        if not parse_json:
            return stdout
        if not stdout:
            return None

        try:
            return json.loads(stdout)
        except json.JSONDecodeError:
            # Module warnings may precede the JSON document
            starts = [i for i in (stdout.find("{"), stdout.find("[")) if i != -1]
            if starts:
                try:
                    return json.loads(stdout[min(starts):])
                except json.JSONDecodeError:
                    pass
            raise DirectoryUnavailable(f"Unexpected PowerShell output: {stdout[:200]}")

    # -------------------------------------------------------------------------
    # Recipient resolution
    # -------------------------------------------------------------------------

    def resolve_group(self, identity: str) -> SecurityGroup:
        """Resolve a group and verify it is a security group recipient.

        Raises:
            GroupNotFound: the identity does not resolve to a security group
        """
        commands = [
            f"Get-Recipient -Identity '{escape_ps_string(identity)}' "
            "| Select-Object Identity, DisplayName, PrimarySmtpAddress, RecipientTypeDetails "
            "| ConvertTo-Json",
        ]
        try:
            data = self._run_powershell(commands)
        except CmdletError as e:
            if is_not_found_error(str(e)):
                raise GroupNotFound(f"Group '{identity}' was not found", identity=identity) from e
            raise DirectoryUnavailable(f"Failed to look up group '{identity}': {e}", original_error=e) from e

        records = as_list(data)
        if not records:
            raise GroupNotFound(f"Group '{identity}' was not found", identity=identity)
        if len(records) > 1:
            raise GroupNotFound(f"Group '{identity}' is ambiguous ({len(records)} recipients match)",
                                identity=identity)

        record = records[0]
        recipient_type = record.get("RecipientTypeDetails", "")
        if recipient_type not in SECURITY_GROUP_RECIPIENT_TYPES:
            raise GroupNotFound(
                f"'{identity}' is a {recipient_type or 'recipient'}, not a security group",
                identity=identity,
            )

        return SecurityGroup(
            identity=record.get("Identity") or identity,
            display_name=record.get("DisplayName", ""),
            primary_smtp_address=record.get("PrimarySmtpAddress", "") or "",
            recipient_type_details=recipient_type,
        )

    def resolve_mailbox(self, identity: str) -> Mailbox:
        """Resolve a mailbox and verify it is a mailbox recipient.

        Raises:
            MailboxNotFound: the identity does not resolve to a mailbox
        """
        commands = [
            f"Get-Mailbox -Identity '{escape_ps_string(identity)}' "
            "| Select-Object Identity, DisplayName, PrimarySmtpAddress, RecipientTypeDetails, "
            "@{n='GrantSendOnBehalfTo';e={@($_.GrantSendOnBehalfTo | ForEach-Object { \"$_\" })}} "
            "| ConvertTo-Json -Depth 3",
        ]
        try:
            data = self._run_powershell(commands)
        except CmdletError as e:
            if is_not_found_error(str(e)):
                raise MailboxNotFound(f"Mailbox '{identity}' was not found", identity=identity) from e
            raise DirectoryUnavailable(f"Failed to look up mailbox '{identity}': {e}", original_error=e) from e

        records = as_list(data)
        if not records:
            raise MailboxNotFound(f"Mailbox '{identity}' was not found", identity=identity)

        record = records[0]
        recipient_type = record.get("RecipientTypeDetails", "")
        if recipient_type not in MAILBOX_RECIPIENT_TYPES:
            raise MailboxNotFound(
                f"'{identity}' is a {recipient_type or 'recipient'}, not a mailbox",
                identity=identity,
            )

        send_on_behalf = record.get("GrantSendOnBehalfTo") or []
        if isinstance(send_on_behalf, str):
            send_on_behalf = [send_on_behalf]

        return Mailbox(
            identity=record.get("Identity") or identity,
            display_name=record.get("DisplayName", ""),
            primary_smtp_address=record.get("PrimarySmtpAddress", "") or "",
            recipient_type_details=recipient_type,
            send_on_behalf=list(send_on_behalf),
        )

    # -------------------------------------------------------------------------
    # Group membership
    # -------------------------------------------------------------------------

    def list_members(self, group_id: str) -> Set[str]:
        """List direct user members of a group by user principal name.

        Nested groups are skipped: automapping only applies to users.
        """
        commands = [
            f"Get-DistributionGroupMember -Identity '{escape_ps_string(group_id)}' -ResultSize Unlimited "
            "| Select-Object Name, WindowsLiveID, PrimarySmtpAddress, RecipientType "
            "| ConvertTo-Json",
        ]
        try:
            data = self._run_powershell(commands)
        except CmdletError as e:
            if is_not_found_error(str(e)):
                raise GroupNotFound(f"Group '{group_id}' was not found", identity=group_id) from e
            raise DirectoryUnavailable(f"Failed to list members of '{group_id}': {e}", original_error=e) from e

        members = []
        for record in as_list(data):
            recipient_type = record.get("RecipientType", "") or ""
            if "group" in recipient_type.lower():
                logger.warning(f"Skipping nested group {record.get('Name')} in {group_id}")
                continue
            principal = record.get("WindowsLiveID") or record.get("PrimarySmtpAddress")
            if not principal:
                logger.debug(f"Skipping member without address: {record.get('Name')}")
                continue
            members.append(principal)

        return set(dedupe_principals(members))

    # -------------------------------------------------------------------------
    # FullAccess
    # -------------------------------------------------------------------------

    def list_full_access_grants(self, mailbox_id: str) -> List[MailboxPermissionGrant]:
        """List every mailbox permission entry, flagged as inherited/self/deny."""
        commands = [
            f"Get-MailboxPermission -Identity '{escape_ps_string(mailbox_id)}' "
            "| Select-Object User, @{n='AccessRights';e={$_.AccessRights -join ','}}, IsInherited, Deny "
            "| ConvertTo-Json",
        ]
        try:
            data = self._run_powershell(commands)
        except CmdletError as e:
            if is_not_found_error(str(e)):
                raise MailboxNotFound(f"Mailbox '{mailbox_id}' was not found", identity=mailbox_id) from e
            raise DirectoryUnavailable(
                f"Failed to list permissions on '{mailbox_id}': {e}", original_error=e
            ) from e

        grants = []
        for record in as_list(data):
            user = str(record.get("User") or "")
            if not user:
                continue
            grants.append(MailboxPermissionGrant(
                mailbox=mailbox_id,
                principal=user,
                access_rights=parse_access_rights(record.get("AccessRights")),
                is_inherited=parse_bool(record.get("IsInherited", False)),
                is_self=normalize_principal(user) in SELF_PRINCIPALS,
                deny=parse_bool(record.get("Deny", False)),
            ))
        return grants

    def grant_full_access(self, mailbox_id: str, principal_id: str, auto_map: bool = True) -> None:
        automapping = "$true" if auto_map else "$false"
        commands = [
            f"Add-MailboxPermission -Identity '{escape_ps_string(mailbox_id)}' "
            f"-User '{escape_ps_string(principal_id)}' -AccessRights {ACCESS_FULL_ACCESS} "
            f"-InheritanceType {INHERITANCE_ALL} -AutoMapping {automapping} -Confirm:$false | Out-Null",
            f"Write-Output '{SUCCESS_MARKER}'",
        ]
        try:
            self._run_powershell(commands, parse_json=False)
        except CmdletError as e:
            raise GrantRejected(str(e), principal=principal_id) from e

    def revoke_full_access(
        self,
        mailbox_id: str,
        principal_id: str,
        access_rights: Optional[Iterable[str]] = None,
    ) -> bool:
        """Remove a permission entry. Returns False when there was nothing to remove."""
        rights = ",".join(sorted(access_rights)) if access_rights else ACCESS_FULL_ACCESS
        commands = [
            f"Remove-MailboxPermission -Identity '{escape_ps_string(mailbox_id)}' "
            f"-User '{escape_ps_string(principal_id)}' -AccessRights {rights} "
            f"-InheritanceType {INHERITANCE_ALL} -Confirm:$false "
            "-WarningVariable removeWarnings -WarningAction SilentlyContinue",
            f"if ($removeWarnings) {{ Write-Output ('{NOT_PRESENT_MARKER}: ' + ($removeWarnings -join ' ')) }} "
            f"else {{ Write-Output '{SUCCESS_MARKER}' }}",
        ]
        try:
            output = self._run_powershell(commands, parse_json=False)
        except CmdletError as e:
            if is_ace_not_present(str(e)):
                return False
            raise RevokeRejected(str(e), principal=principal_id) from e

        if NOT_PRESENT_MARKER in output:
            if is_ace_not_present(output):
                return False
            logger.warning(f"Remove-MailboxPermission warning for {principal_id}: {output}")
        return True

    # -------------------------------------------------------------------------
    # SendAs / SendOnBehalf
    # -------------------------------------------------------------------------

    def get_send_as_rights(self, mailbox_id: str, trustee_id: str) -> FrozenSet[str]:
        commands = [
            f"Get-RecipientPermission -Identity '{escape_ps_string(mailbox_id)}' "
            f"-Trustee '{escape_ps_string(trustee_id)}' "
            "| Select-Object Trustee, @{n='AccessRights';e={$_.AccessRights -join ','}}, IsInherited "
            "| ConvertTo-Json",
        ]
        try:
            data = self._run_powershell(commands)
        except CmdletError as e:
            if is_not_found_error(str(e)):
                raise MailboxNotFound(f"Mailbox '{mailbox_id}' was not found", identity=mailbox_id) from e
            raise DirectoryUnavailable(
                f"Failed to read SendAs rights on '{mailbox_id}': {e}", original_error=e
            ) from e

        rights: FrozenSet[str] = frozenset()
        for record in as_list(data):
            rights = rights | parse_access_rights(record.get("AccessRights"))
        return rights

    def grant_send_as(self, mailbox_id: str, trustee_id: str) -> None:
        commands = [
            f"Add-RecipientPermission -Identity '{escape_ps_string(mailbox_id)}' "
            f"-Trustee '{escape_ps_string(trustee_id)}' -AccessRights {ACCESS_SEND_AS} "
            "-Confirm:$false | Out-Null",
            f"Write-Output '{SUCCESS_MARKER}'",
        ]
        try:
            self._run_powershell(commands, parse_json=False)
        except CmdletError as e:
            raise GrantRejected(str(e), principal=trustee_id) from e

    def clear_send_on_behalf(self, mailbox_id: str) -> None:
        commands = [
            f"Set-Mailbox -Identity '{escape_ps_string(mailbox_id)}' -GrantSendOnBehalfTo $null",
            f"Write-Output '{SUCCESS_MARKER}'",
        ]
        try:
            self._run_powershell(commands, parse_json=False)
        except CmdletError as e:
            raise RevokeRejected(str(e), principal=mailbox_id) from e

    def set_send_on_behalf(self, mailbox_id: str, principal_id: str) -> None:
        commands = [
            f"Set-Mailbox -Identity '{escape_ps_string(mailbox_id)}' "
            f"-GrantSendOnBehalfTo '{escape_ps_string(principal_id)}'",
            f"Write-Output '{SUCCESS_MARKER}'",
        ]
        try:
            self._run_powershell(commands, parse_json=False)
        except CmdletError as e:
            raise GrantRejected(str(e), principal=principal_id) from e

    # -------------------------------------------------------------------------
    # Mailbox type
    # -------------------------------------------------------------------------

    def get_recipient_type_details(self, mailbox_id: str) -> str:
        commands = [
            f"(Get-Mailbox -Identity '{escape_ps_string(mailbox_id)}').RecipientTypeDetails.ToString()",
        ]
        try:
            return self._run_powershell(commands, parse_json=False)
        except CmdletError as e:
            if is_not_found_error(str(e)):
                raise MailboxNotFound(f"Mailbox '{mailbox_id}' was not found", identity=mailbox_id) from e
            raise DirectoryUnavailable(
                f"Failed to read mailbox type of '{mailbox_id}': {e}", original_error=e
            ) from e

    def convert_to_shared(self, mailbox_id: str) -> None:
        commands = [
            f"Set-Mailbox -Identity '{escape_ps_string(mailbox_id)}' -Type Shared",
            f"Write-Output '{SUCCESS_MARKER}'",
        ]
        try:
            self._run_powershell(commands, parse_json=False)
        except CmdletError as e:
            raise ConversionRejected(f"Failed to convert '{mailbox_id}' to a shared mailbox: {e}") from e
