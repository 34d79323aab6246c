#!/usr/bin/env python3
"""
Mailbox Delegation Sync
Keeps a mailbox's delegation permissions in step with a security group.

Every member of the group gets FullAccess (with automapping) on the mailbox,
anyone no longer in the group loses it, and the group itself is granted
SendAs and made the mailbox's only send-on-behalf delegate. Optionally the
mailbox is converted to a shared mailbox first.

Requirements:
- PowerShell 7+ with the ExchangeOnlineManagement module
- App Registration with Exchange.ManageAsApp and a certificate
- For --membership-source graph: GroupMember.Read.All (Application type)

Usage:
    # Certificate password (if any) MUST be an env var
    export EXO_CERTIFICATE_PASSWORD="..."

    python mailbox_sync.py --group sales-delegates@contoso.com --mailbox sales@contoso.com \\
        --organization contoso.onmicrosoft.com --app-id xxx --certificate-path ./exo.pfx

    # Preview changes without applying them
    python mailbox_sync.py --group ... --mailbox ... --dry-run

    # Convert to shared and skip the confirmation prompt (scheduled runs)
    python mailbox_sync.py --group ... --mailbox ... --convert-to-shared --yes

Two runs against the same mailbox must not overlap; nothing here locks the
mailbox, so scheduling is left to the caller.
"""

import os
import sys
import logging
import argparse
from typing import Any, Dict, List, Optional, Tuple

from mbxsync.config import generate_sample_config, load_config, validate_config
from mbxsync.constants import (
    ENV_MS365_CLIENT_SECRET,
    EXIT_FAILURE,
    EXIT_OK,
    MEMBERSHIP_SOURCES,
    RUN_REPORT_PREFIX,
    SOURCE_GRAPH,
)
from mbxsync.exchange import ExchangeOnlineClient
from mbxsync.graph import GraphMembershipSource
from mbxsync.models import Mailbox, SecurityGroup
from mbxsync.reconciler import GroupMembershipSource, PermissionReconciler
from mbxsync.utils import (
    ChangeReporter,
    ConfigError,
    MailboxSyncError,
    PreconditionError,
    generate_run_id,
    get_timestamp,
    mask_identifier,
    setup_logging,
    write_json,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Session Bootstrap
# =============================================================================

def build_collaborators(config: Dict[str, Any]) -> Tuple[ExchangeOnlineClient, GroupMembershipSource]:
    """
    Build the mailbox store and membership source from the merged config.

    Returns:
        (exchange client, membership source); the exchange client is also
        the membership source unless the graph source is selected
    """
    exchange = ExchangeOnlineClient.from_config(config)

    if config.get('membership_source') == SOURCE_GRAPH:
        graph = config.get('graph', {})
        client_secret = os.environ.get(ENV_MS365_CLIENT_SECRET)
        if not client_secret:
            raise ConfigError(f"{ENV_MS365_CLIENT_SECRET} environment variable is required")
        logger.info(f"Reading membership from Microsoft Graph (tenant {mask_identifier(graph.get('tenant_id', ''))})")
        source = GraphMembershipSource.from_credentials(
            graph.get('tenant_id', ''),
            graph.get('client_id', ''),
            client_secret,
        )
        return exchange, source

    return exchange, exchange


def check_preconditions(exchange: ExchangeOnlineClient, group: str, mailbox: str) -> Tuple[SecurityGroup, Mailbox]:
    """
    Verify the group is a security group and the mailbox is a mailbox.

    Raises:
        GroupNotFound, MailboxNotFound: nothing has been changed
        DirectoryUnavailable: Exchange Online could not be reached
    """
    resolved_group = exchange.resolve_group(group)
    logger.info(f"Group: {resolved_group.display_name or group} ({resolved_group.recipient_type_details})")

    resolved_mailbox = exchange.resolve_mailbox(mailbox)
    logger.info(f"Mailbox: {resolved_mailbox.display_name or mailbox} "
                f"({resolved_mailbox.recipient_type_details})")

    return resolved_group, resolved_mailbox


def confirm_updates(group: SecurityGroup, mailbox: Mailbox, convert_to_shared: bool, update_only: bool) -> bool:
    """Ask the operator to confirm before any permission is changed."""
    print(f"\nAbout to reconcile delegation on {mailbox.primary_smtp_address or mailbox.identity}")
    print(f"  Group:               {group.primary_smtp_address or group.identity}")
    if update_only:
        print("  Mode:                update only (member FullAccess)")
    else:
        print("  Mode:                full (FullAccess, SendAs, send on behalf)")
    if convert_to_shared and not update_only:
        print(f"  Convert to shared:   yes (currently {mailbox.recipient_type_details})")

    try:
        answer = input("\nProceed? [y/N]: ")
    except EOFError:
        return False
    return answer.strip().lower() in ('y', 'yes')


def write_run_report(output_dir: Optional[str], run_id: str, group: SecurityGroup,
                     mailbox: Mailbox, result) -> Optional[str]:
    """Write the run report to the output directory."""
    if not output_dir:
        return None
    os.makedirs(output_dir, exist_ok=True)
    report = {
        'run_id': run_id,
        'timestamp': get_timestamp(),
        'group': group.to_dict(),
        'mailbox': mailbox.to_dict(),
        'result': result.to_dict(),
    }
    filepath = os.path.join(output_dir, f"{RUN_REPORT_PREFIX}_{run_id}.json")
    write_json(report, filepath)
    return filepath


# =============================================================================
# Main Entry Point
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Mailbox Delegation Sync - align mailbox permissions with a security group',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Using environment variables
    export EXO_ORGANIZATION="contoso.onmicrosoft.com"
    export EXO_APP_ID="your-app-id"
    export EXO_CERTIFICATE_PATH="./exo-app.pfx"
    export EXO_CERTIFICATE_PASSWORD="..."
    python mailbox_sync.py --group sales-delegates@contoso.com --mailbox sales@contoso.com

    # Preview only
    python mailbox_sync.py --group ... --mailbox ... --dry-run

    # Member FullAccess only, read membership from Microsoft Graph
    export MS365_CLIENT_SECRET="..."
    python mailbox_sync.py --group ... --mailbox ... --update-only \\
        --membership-source graph --tenant-id xxx --client-id xxx

Security Note:
    The certificate password and Graph client secret must be provided via
    EXO_CERTIFICATE_PASSWORD / MS365_CLIENT_SECRET environment variables to
    avoid exposing secrets in shell history or process listings.

Concurrency:
    Runs against the same mailbox are not coordinated. Schedule at most one
    run per mailbox at a time.
        """
    )

    # Basic options
    parser.add_argument('--config', '-c', help='Path to YAML config file')
    parser.add_argument('--generate-config', action='store_true',
                        help='Generate a sample config file and exit')
    parser.add_argument('--group', '-g', help='Security group (name, alias or address)')
    parser.add_argument('--mailbox', '-m', help='Target mailbox (address or alias)')
    parser.add_argument('--output', '-o', help='Output directory for run reports and logs '
                                               '(default: ./mbxsync_output)')
    parser.add_argument('--log-level', help='Logging level (default: INFO)')

    # Behaviour
    parser.add_argument('--convert-to-shared', action='store_true',
                        help='Convert the mailbox to a shared mailbox before reconciling')
    parser.add_argument('--update-only', action='store_true',
                        help='Only reconcile member FullAccess (skip SendAs, send on behalf, conversion)')
    parser.add_argument('--dry-run', action='store_true',
                        help='Show the changes that would be made without applying them')
    parser.add_argument('--yes', '-y', action='store_true',
                        help='Do not prompt for confirmation')
    parser.add_argument('--membership-source', choices=MEMBERSHIP_SOURCES,
                        help='Where group membership is read from (default: exchange)')

    # Exchange Online
    parser.add_argument('--organization', help='Tenant initial domain (or set EXO_ORGANIZATION)')
    parser.add_argument('--app-id', help='App registration client ID (or set EXO_APP_ID)')
    cert = parser.add_mutually_exclusive_group()
    cert.add_argument('--certificate-path', help='Path to .pfx certificate (or set EXO_CERTIFICATE_PATH)')
    cert.add_argument('--certificate-thumbprint',
                      help='Installed certificate thumbprint, Windows only (or set EXO_CERTIFICATE_THUMBPRINT)')

    # Microsoft Graph
    parser.add_argument('--tenant-id', help='Entra ID tenant ID (or set MS365_TENANT_ID)')
    parser.add_argument('--client-id', help='Graph application (client) ID (or set MS365_CLIENT_ID)')
    # Secrets are env-var only (no CLI arg to avoid shell history exposure)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Handle --generate-config
    if args.generate_config:
        print(generate_sample_config())
        return EXIT_OK

    setup_logging(args.log_level or 'INFO')

    # Load configuration from file/env/args
    try:
        config = load_config(args)
        logger.debug(f"Loaded configuration: {list(config.keys())}")
    except (FileNotFoundError, ConfigError) as e:
        logger.error(str(e))
        return EXIT_FAILURE

    problems = validate_config(config)
    if problems:
        print("ERROR: Incomplete configuration:")
        for problem in problems:
            print(f"  - {problem}")
        print("\nRun with --help for more information, or --generate-config for a sample config.")
        return EXIT_FAILURE

    # Re-initialise logging now that the output directory and level are known
    setup_logging(config.get('log_level', 'INFO'), output_dir=config.get('output'))

    run_id = generate_run_id()
    convert_to_shared = bool(config.get('convert_to_shared'))
    update_only = bool(config.get('update_only'))

    print(f"Organization: {config['exchange']['organization']}")
    print(f"App ID: {mask_identifier(config['exchange']['app_id'])}")
    print(f"Run ID: {run_id}\n")

    try:
        exchange, source = build_collaborators(config)
        group, mailbox = check_preconditions(exchange, config['group'], config['mailbox'])
    except PreconditionError as e:
        logger.error(f"Precondition failed: {e}")
        return EXIT_FAILURE
    except MailboxSyncError as e:
        logger.error(f"Could not start: {e}")
        return EXIT_FAILURE

    group_id = group.primary_smtp_address or group.identity
    mailbox_id = mailbox.primary_smtp_address or mailbox.identity

    if not args.dry_run and not args.yes:
        if not confirm_updates(group, mailbox, convert_to_shared, update_only):
            print("Aborted. No changes were made.")
            return EXIT_FAILURE

    exit_code = EXIT_OK
    with ChangeReporter(group_id, mailbox_id) as reporter:
        reconciler = PermissionReconciler(source, exchange, reporter=reporter)
        try:
            result = reconciler.reconcile(
                group_id,
                mailbox_id,
                convert_to_shared=convert_to_shared,
                update_only=update_only,
                dry_run=args.dry_run,
            )
        except PreconditionError as e:
            logger.error(f"Precondition failed: {e}")
            return EXIT_FAILURE
        except MailboxSyncError as e:
            if e.result is None:
                logger.error(f"Reconciliation failed: {e}")
                return EXIT_FAILURE
            result = e.result
            exit_code = EXIT_FAILURE
        reporter.set_result(result)

    write_run_report(config.get('output'), run_id, group, mailbox, result)

    if result.failures:
        print(f"\n{len(result.failures)} principal(s) could not be updated; see the summary above.")
    return exit_code


if __name__ == '__main__':
    sys.exit(main())
