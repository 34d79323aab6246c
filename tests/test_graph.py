"""
Tests for the Microsoft Graph membership source using unittest.mock.

Covers:
- Graph client construction
- Group resolution by object ID, address and display name
- Member paging and filtering of non-user members
- Mapping of Graph errors onto the mailbox sync taxonomy
"""
import asyncio

import pytest
from unittest.mock import AsyncMock, Mock, patch

from azure.core.exceptions import ClientAuthenticationError
from msgraph.generated.models.o_data_errors.o_data_error import ODataError

from mbxsync.graph import GraphMembershipSource, collect_all_pages, get_graph_client
from mbxsync.utils import DirectoryUnavailable, GroupNotFound

GROUP_ID = "0f9a1c2e-1111-2222-3333-444455556666"


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def mock_graph_client():
    """Create a mock Microsoft Graph client."""
    return Mock()


# =============================================================================
# Helper Functions
# =============================================================================

def create_mock_group(group_id=GROUP_ID, display_name="Sales Delegates",
                      mail="sales-delegates@contoso.com", security_enabled=True):
    """Create a mock Entra ID group object."""
    group = Mock()
    group.id = group_id
    group.display_name = display_name
    group.mail = mail
    group.security_enabled = security_enabled
    return group


def create_mock_member(upn, odata_type="#microsoft.graph.user"):
    """Create a mock directory object as returned by /groups/{id}/members."""
    member = Mock()
    member.id = upn
    member.odata_type = odata_type
    member.user_principal_name = upn
    member.mail = upn
    return member


def create_page(items, next_link=None):
    page = Mock()
    page.value = items
    page.odata_next_link = next_link
    return page


def create_odata_error(status_code, code="Request_ResourceNotFound"):
    error = ODataError()
    error.response_status_code = status_code
    error.error = Mock(code=code, message="Resource does not exist")
    return error


def setup_group_lookup(client, groups):
    client.groups.get = AsyncMock(return_value=create_page(groups))


def setup_members(client, *pages):
    builder = client.groups.by_group_id.return_value.members
    builder.get = AsyncMock(return_value=pages[0])
    builder.with_url.return_value.get = AsyncMock(side_effect=list(pages[1:]))
    return builder


# =============================================================================
# Graph Client
# =============================================================================

class TestGetGraphClient:

    @patch("mbxsync.graph.GraphServiceClient")
    @patch("mbxsync.graph.ClientSecretCredential")
    def test_builds_client_with_default_scope(self, mock_credential, mock_client):
        get_graph_client("tenant", "client", "secret")

        mock_credential.assert_called_once_with(tenant_id="tenant", client_id="client", client_secret="secret")
        mock_client.assert_called_once_with(
            credentials=mock_credential.return_value,
            scopes=["https://graph.microsoft.com/.default"],
        )


# =============================================================================
# Paging
# =============================================================================

class TestCollectAllPages:

    def test_follows_next_links(self):
        first = create_page([1, 2], next_link="https://graph.microsoft.com/next")
        second = create_page([3])
        next_page = AsyncMock(return_value=second)

        items = asyncio.run(collect_all_pages(first, next_page))

        assert items == [1, 2, 3]
        next_page.assert_awaited_once_with("https://graph.microsoft.com/next")

    def test_page_failure_propagates(self):
        first = create_page([1], next_link="https://graph.microsoft.com/next")
        next_page = AsyncMock(side_effect=create_odata_error(503, code="serviceNotAvailable"))

        with pytest.raises(ODataError):
            asyncio.run(collect_all_pages(first, next_page))


# =============================================================================
# Group Resolution
# =============================================================================

class TestResolveGroup:

    def test_resolve_by_address(self, mock_graph_client):
        setup_group_lookup(mock_graph_client, [create_mock_group()])
        source = GraphMembershipSource(mock_graph_client)

        group = source.resolve_group("sales-delegates@contoso.com")

        assert group.identity == GROUP_ID
        assert group.primary_smtp_address == "sales-delegates@contoso.com"
        config = mock_graph_client.groups.get.call_args[1]["request_configuration"]
        assert "mail eq 'sales-delegates@contoso.com'" in config.query_parameters.filter

    def test_resolve_by_object_id(self, mock_graph_client):
        mock_graph_client.groups.by_group_id.return_value.get = AsyncMock(return_value=create_mock_group())
        source = GraphMembershipSource(mock_graph_client)

        group = source.resolve_group(GROUP_ID)

        assert group.display_name == "Sales Delegates"
        mock_graph_client.groups.by_group_id.assert_called_with(GROUP_ID)

    def test_no_match(self, mock_graph_client):
        setup_group_lookup(mock_graph_client, [])
        source = GraphMembershipSource(mock_graph_client)

        with pytest.raises(GroupNotFound):
            source.resolve_group("ghost")

    def test_ambiguous_name(self, mock_graph_client):
        setup_group_lookup(mock_graph_client, [create_mock_group(), create_mock_group(group_id="other")])
        source = GraphMembershipSource(mock_graph_client)

        with pytest.raises(GroupNotFound, match="ambiguous"):
            source.resolve_group("Sales Delegates")

    def test_not_security_enabled(self, mock_graph_client):
        setup_group_lookup(mock_graph_client, [create_mock_group(security_enabled=False)])
        source = GraphMembershipSource(mock_graph_client)

        with pytest.raises(GroupNotFound, match="not a security group"):
            source.resolve_group("Sales Delegates")


# =============================================================================
# Membership
# =============================================================================

class TestListMembers:

    def test_collects_user_members_across_pages(self, mock_graph_client):
        setup_group_lookup(mock_graph_client, [create_mock_group()])
        builder = setup_members(
            mock_graph_client,
            create_page(
                [create_mock_member("Alice@contoso.com"),
                 create_mock_member("nested", odata_type="#microsoft.graph.group")],
                next_link="https://graph.microsoft.com/v1.0/groups/x/members?$skiptoken=abc",
            ),
            create_page([create_mock_member("bob@contoso.com")]),
        )
        source = GraphMembershipSource(mock_graph_client)

        members = source.list_members("sales-delegates@contoso.com")

        assert members == {"alice@contoso.com", "bob@contoso.com"}
        builder.with_url.assert_called_once_with(
            "https://graph.microsoft.com/v1.0/groups/x/members?$skiptoken=abc"
        )

    def test_each_listing_reads_graph_again(self, mock_graph_client):
        setup_group_lookup(mock_graph_client, [create_mock_group()])
        builder = setup_members(mock_graph_client, create_page([create_mock_member("alice@contoso.com")]))
        source = GraphMembershipSource(mock_graph_client)

        first = source.list_members("sales-delegates@contoso.com")
        builder.get.return_value = create_page([create_mock_member("bob@contoso.com")])
        second = source.list_members("sales-delegates@contoso.com")

        assert first == {"alice@contoso.com"}
        assert second == {"bob@contoso.com"}
        assert mock_graph_client.groups.get.await_count == 2

    def test_group_not_found_from_graph(self, mock_graph_client):
        mock_graph_client.groups.by_group_id.return_value.get = AsyncMock(side_effect=create_odata_error(404))
        source = GraphMembershipSource(mock_graph_client)

        with pytest.raises(GroupNotFound):
            source.list_members(GROUP_ID)

    def test_other_graph_errors_are_unavailable(self, mock_graph_client):
        setup_group_lookup(mock_graph_client, [create_mock_group()])
        setup_members(mock_graph_client, create_page([]))
        mock_graph_client.groups.by_group_id.return_value.members.get = AsyncMock(
            side_effect=create_odata_error(403, code="Authorization_RequestDenied")
        )
        source = GraphMembershipSource(mock_graph_client)

        with pytest.raises(DirectoryUnavailable, match="Authorization_RequestDenied"):
            source.list_members("sales-delegates@contoso.com")

    def test_authentication_failure(self, mock_graph_client):
        mock_graph_client.groups.get = AsyncMock(side_effect=ClientAuthenticationError("invalid client secret"))
        source = GraphMembershipSource(mock_graph_client)

        with pytest.raises(DirectoryUnavailable, match="authentication"):
            source.list_members("sales-delegates@contoso.com")
