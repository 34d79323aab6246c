"""
Tests for the mailbox_sync command line entry point.

Covers:
- Exit codes for success, declined confirmation, preconditions and aborts
- Confirmation prompt, --yes and --dry-run
- Run report output
- Collaborator bootstrap and precondition checks
"""
import glob
import json
import os

import pytest
from unittest.mock import Mock, patch

from conftest import FakeMailboxStore, FakeMembershipSource, create_grant

import mailbox_sync
from mbxsync.config import ENV_VAR_MAPPING
from mbxsync.constants import ACCESS_SEND_AS
from mbxsync.exchange import ExchangeOnlineClient
from mbxsync.graph import GraphMembershipSource
from mbxsync.models import Mailbox, SecurityGroup
from mbxsync.utils import ConfigError, DirectoryUnavailable, MailboxNotFound

GROUP = "delegates@contoso.com"
MAILBOX = "shared@contoso.com"
ALICE = "alice@contoso.com"
BOB = "bob@contoso.com"
CAROL = "carol@contoso.com"


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path, restore_root_logger):
    for env_var in list(ENV_VAR_MAPPING.values()) + ["EXO_CERTIFICATE_PASSWORD", "MS365_CLIENT_SECRET"]:
        monkeypatch.delenv(env_var, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def output_dir(tmp_path):
    return str(tmp_path / "out")


@pytest.fixture
def argv(output_dir):
    return [
        "--group", GROUP,
        "--mailbox", MAILBOX,
        "--organization", "contoso.onmicrosoft.com",
        "--app-id", "app",
        "--certificate-path", "/secure/exo.pfx",
        "--output", output_dir,
    ]


@pytest.fixture
def store():
    return FakeMailboxStore(
        grants=[create_grant(ALICE), create_grant(CAROL)],
        send_as={GROUP: frozenset({ACCESS_SEND_AS})},
    )


@pytest.fixture
def collaborators(store):
    """Patch bootstrap and precondition checks to use in-memory collaborators."""
    source = FakeMembershipSource({GROUP: [ALICE, BOB]})
    group = SecurityGroup(identity="Delegates", primary_smtp_address=GROUP,
                          recipient_type_details="MailUniversalSecurityGroup")
    mailbox = Mailbox(identity="Shared", primary_smtp_address=MAILBOX, recipient_type_details="UserMailbox")
    with patch.object(mailbox_sync, "build_collaborators", return_value=(store, source)), \
            patch.object(mailbox_sync, "check_preconditions", return_value=(group, mailbox)) as preconditions:
        yield preconditions


# =============================================================================
# Helper Functions
# =============================================================================

def read_run_report(output_dir):
    reports = glob.glob(os.path.join(output_dir, "mbxsync_run_*.json"))
    assert len(reports) == 1
    with open(reports[0]) as f:
        return json.load(f)


def mutations(store):
    return store.operations("grant_full_access", "revoke_full_access", "grant_send_as",
                            "clear_send_on_behalf", "set_send_on_behalf", "convert_to_shared")


# =============================================================================
# Entry Point
# =============================================================================

class TestMain:

    def test_generate_config(self, capsys):
        assert mailbox_sync.main(["--generate-config"]) == 0

        assert "exchange:" in capsys.readouterr().out

    def test_incomplete_configuration(self, capsys):
        assert mailbox_sync.main(["--group", GROUP]) == 1

        out = capsys.readouterr().out
        assert "Incomplete configuration" in out
        assert "mailbox is required" in out

    def test_successful_run_with_yes(self, argv, output_dir, store, collaborators):
        assert mailbox_sync.main(argv + ["--yes"]) == 0

        assert store.full_access_holders() == {ALICE, BOB}
        report = read_run_report(output_dir)
        assert report["result"]["granted"] == [BOB]
        assert report["result"]["revoked"] == [CAROL]
        assert report["result"]["succeeded"] is True
        assert report["mailbox"]["primary_smtp_address"] == MAILBOX

    def test_confirmation_accepted(self, argv, store, collaborators):
        with patch("builtins.input", return_value="y") as mock_input:
            assert mailbox_sync.main(argv) == 0

        mock_input.assert_called_once()
        assert store.operations("grant_full_access")

    def test_confirmation_declined(self, argv, output_dir, store, collaborators, capsys):
        with patch("builtins.input", return_value="n"):
            assert mailbox_sync.main(argv) == 1

        assert mutations(store) == []
        assert store.calls == []
        assert "No changes were made" in capsys.readouterr().out
        assert glob.glob(os.path.join(output_dir, "mbxsync_run_*.json")) == []

    def test_confirmation_without_terminal(self, argv, store, collaborators):
        with patch("builtins.input", side_effect=EOFError):
            assert mailbox_sync.main(argv) == 1

        assert store.calls == []

    def test_dry_run_skips_prompt_and_changes(self, argv, output_dir, store, collaborators):
        with patch("builtins.input") as mock_input:
            assert mailbox_sync.main(argv + ["--dry-run", "--convert-to-shared"]) == 0

        mock_input.assert_not_called()
        assert mutations(store) == []
        report = read_run_report(output_dir)
        assert report["result"]["dry_run"] is True
        assert report["result"]["granted"] == [BOB]

    def test_precondition_failure(self, argv, store, collaborators):
        collaborators.side_effect = MailboxNotFound("Mailbox 'shared@contoso.com' was not found",
                                                    identity=MAILBOX)

        assert mailbox_sync.main(argv + ["--yes"]) == 1
        assert store.calls == []

    def test_directory_unavailable_mid_run(self, argv, output_dir, store, collaborators):
        store.unavailable_on = "get_send_as_rights"

        assert mailbox_sync.main(argv + ["--yes"]) == 1

        report = read_run_report(output_dir)
        assert report["result"]["aborted"] is True
        assert report["result"]["granted"] == [BOB]

    def test_per_principal_failure_still_succeeds(self, argv, output_dir, store, collaborators, capsys):
        store.fail_grant = {BOB}

        assert mailbox_sync.main(argv + ["--yes"]) == 0

        assert "1 principal(s) could not be updated" in capsys.readouterr().out
        report = read_run_report(output_dir)
        assert report["result"]["failures"] == [
            {"principal": BOB, "operation": "grant", "message": "user not found"}
        ]

    def test_update_only_flag_reaches_reconciler(self, argv, output_dir, store, collaborators):
        assert mailbox_sync.main(argv + ["--yes", "--update-only"]) == 0

        assert store.operations("get_send_as_rights", "set_send_on_behalf") == []
        assert read_run_report(output_dir)["result"]["update_only"] is True


# =============================================================================
# Bootstrap and Preconditions
# =============================================================================

class TestBuildCollaborators:

    @pytest.fixture
    def config(self):
        return {
            'membership_source': 'exchange',
            'exchange': {
                'organization': 'contoso.onmicrosoft.com',
                'app_id': 'app',
                'certificate_path': '/secure/exo.pfx',
            },
            'graph': {'tenant_id': 'tenant', 'client_id': 'client'},
        }

    def test_exchange_is_membership_source_by_default(self, config):
        exchange, source = mailbox_sync.build_collaborators(config)

        assert isinstance(exchange, ExchangeOnlineClient)
        assert source is exchange

    @patch("mbxsync.graph.get_graph_client")
    def test_graph_source(self, mock_get_client, config, monkeypatch):
        monkeypatch.setenv("MS365_CLIENT_SECRET", "secret")
        config['membership_source'] = 'graph'

        exchange, source = mailbox_sync.build_collaborators(config)

        assert isinstance(source, GraphMembershipSource)
        mock_get_client.assert_called_once_with('tenant', 'client', 'secret')

    def test_graph_source_requires_secret(self, config):
        config['membership_source'] = 'graph'

        with pytest.raises(ConfigError):
            mailbox_sync.build_collaborators(config)


class TestCheckPreconditions:

    def test_resolves_group_and_mailbox(self):
        exchange = Mock()
        exchange.resolve_group.return_value = SecurityGroup(identity="Delegates", primary_smtp_address=GROUP)
        exchange.resolve_mailbox.return_value = Mailbox(identity="Shared", primary_smtp_address=MAILBOX)

        group, mailbox = mailbox_sync.check_preconditions(exchange, GROUP, MAILBOX)

        assert group.primary_smtp_address == GROUP
        assert mailbox.primary_smtp_address == MAILBOX
        exchange.resolve_group.assert_called_once_with(GROUP)
        exchange.resolve_mailbox.assert_called_once_with(MAILBOX)

    def test_unreachable_directory_propagates(self):
        exchange = Mock()
        exchange.resolve_group.side_effect = DirectoryUnavailable("pwsh not found")

        with pytest.raises(DirectoryUnavailable):
            mailbox_sync.check_preconditions(exchange, GROUP, MAILBOX)

        exchange.resolve_mailbox.assert_not_called()


class TestConfirmUpdates:

    def test_yes_accepts(self):
        group = SecurityGroup(identity="Delegates", primary_smtp_address=GROUP)
        mailbox = Mailbox(identity="Shared", primary_smtp_address=MAILBOX, recipient_type_details="UserMailbox")

        with patch("builtins.input", return_value=" YES "):
            assert mailbox_sync.confirm_updates(group, mailbox, convert_to_shared=True, update_only=False)

    def test_default_declines(self, capsys):
        group = SecurityGroup(identity="Delegates")
        mailbox = Mailbox(identity="Shared")

        with patch("builtins.input", return_value=""):
            assert not mailbox_sync.confirm_updates(group, mailbox, convert_to_shared=False, update_only=True)

        assert "update only" in capsys.readouterr().out
